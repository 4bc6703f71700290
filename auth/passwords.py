"""
auth/passwords.py -- Password strength policy.

Rules (applied on register and on reset):
  - at least 8 characters
  - both upper- and lower-case letters
  - at least one digit
  - at least one symbol
  - not present in the Have I Been Pwned corpus

The compromised check uses the k-anonymity range API: only the first five hex
chars of the SHA-1 digest leave the process, and the suffix match happens
locally. A network failure fails OPEN (the password is accepted, a warning is
logged) so an outage of a third-party service cannot block sign-ups.
PASSWORD_PWNED_CHECK=false disables the lookup entirely.

Violations are reported as a list of messages, one per failed rule, so the
API can return itemized field errors rather than a single opaque failure.
"""

from __future__ import annotations

import hashlib
import logging

import requests

from core.config import get_settings
from core.errors import PasswordPolicyError

logger = logging.getLogger("molunzaka.passwords")

MIN_LENGTH = 8

MSG_MIN_LENGTH = f"Password must be at least {MIN_LENGTH} characters long."
MSG_MIXED_CASE = "Password must contain both uppercase and lowercase letters."
MSG_NUMBERS = "Password must contain at least one number."
MSG_SYMBOLS = "Password must contain at least one special character."
MSG_COMPROMISED = "This password has been compromised. Please choose a different password."

# Module-level session shared across lookups for connection pooling.
_session = requests.Session()
_session.max_redirects = 3


def is_pwned(password: str) -> bool:
    """Return True if the password appears in the HIBP breach corpus.

    Returns False when the service cannot be reached.
    """
    digest = hashlib.sha1(password.encode("utf-8")).hexdigest().upper()  # noqa: S324 -- protocol-mandated
    prefix, suffix = digest[:5], digest[5:]
    try:
        resp = _session.get(
            f"{get_settings().pwned_api_url}{prefix}",
            headers={"Add-Padding": "true"},
            timeout=5,
        )
        resp.raise_for_status()
    except requests.RequestException as e:
        logger.warning("Pwned-password lookup failed, accepting password: %s", e)
        return False
    for line in resp.text.splitlines():
        candidate, _, count = line.partition(":")
        if candidate.strip() == suffix and count.strip() not in ("", "0"):
            return True
    return False


def password_policy_errors(password: str) -> list[str]:
    """Return one message per violated rule. An empty list means the password is acceptable."""
    errors: list[str] = []
    if len(password) < MIN_LENGTH:
        errors.append(MSG_MIN_LENGTH)
    if not (any(c.islower() for c in password) and any(c.isupper() for c in password)):
        errors.append(MSG_MIXED_CASE)
    if not any(c.isdigit() for c in password):
        errors.append(MSG_NUMBERS)
    if not any(not c.isalnum() and not c.isspace() for c in password):
        errors.append(MSG_SYMBOLS)
    # Only spend a network round-trip on passwords that pass the local rules.
    if not errors and get_settings().password_pwned_check and is_pwned(password):
        errors.append(MSG_COMPROMISED)
    return errors


def enforce_password_policy(password: str) -> None:
    """Raise PasswordPolicyError listing every violated rule."""
    errors = password_policy_errors(password)
    if errors:
        raise PasswordPolicyError(errors)
