"""
tests/test_passwords.py -- Tests for auth/passwords.py.

The HIBP range API is never contacted: auth.passwords._session.get is patched
for every test that enables the compromised-password check.
"""

from __future__ import annotations

import hashlib
from unittest.mock import MagicMock, patch

import pytest
import requests

from auth import passwords
from auth.passwords import (
    MSG_COMPROMISED,
    MSG_MIN_LENGTH,
    MSG_MIXED_CASE,
    MSG_NUMBERS,
    MSG_SYMBOLS,
    enforce_password_policy,
    is_pwned,
    password_policy_errors,
)
from core.config import get_settings
from core.errors import PasswordPolicyError


def _range_response(password: str, count: int) -> MagicMock:
    """Build a fake range-API response that lists password's suffix with count hits."""
    digest = hashlib.sha1(password.encode("utf-8")).hexdigest().upper()
    resp = MagicMock()
    resp.raise_for_status.return_value = None
    resp.text = f"0000000000000000000000000000000000A:3\r\n{digest[5:]}:{count}\r\n"
    return resp


@pytest.fixture
def pwned_check_on(monkeypatch):
    monkeypatch.setattr(get_settings(), "password_pwned_check", True)


class TestLocalRules:
    def test_strong_password_passes(self) -> None:
        """A password meeting every rule has no errors."""
        assert password_policy_errors("Str0ng!Pass") == []

    def test_every_violation_is_itemized(self) -> None:
        """Each failed rule contributes its own message, in order."""
        errors = password_policy_errors("abc")
        assert errors == [MSG_MIN_LENGTH, MSG_MIXED_CASE, MSG_NUMBERS, MSG_SYMBOLS], errors

    @pytest.mark.parametrize(
        "password,expected",
        [
            ("Sh0rt!", MSG_MIN_LENGTH),
            ("alllower1!", MSG_MIXED_CASE),
            ("ALLUPPER1!", MSG_MIXED_CASE),
            ("NoDigits!!", MSG_NUMBERS),
            ("NoSymbol12", MSG_SYMBOLS),
        ],
    )
    def test_single_rule(self, password: str, expected: str) -> None:
        """Each rule can fail on its own."""
        assert password_policy_errors(password) == [expected]

    def test_whitespace_is_not_a_symbol(self) -> None:
        """A space does not satisfy the symbol rule."""
        assert MSG_SYMBOLS in password_policy_errors("No Symbol12")

    def test_enforce_raises_with_field_errors(self) -> None:
        """enforce_password_policy raises a 422 with errors under password."""
        with pytest.raises(PasswordPolicyError) as excinfo:
            enforce_password_policy("abc")
        assert excinfo.value.status_code == 422
        assert excinfo.value.errors["password"][0] == MSG_MIN_LENGTH


class TestPwnedCheck:
    def test_disabled_makes_no_request(self) -> None:
        """With the check disabled the range API is never called."""
        with patch.object(passwords._session, "get") as mock_get:
            assert password_policy_errors("Str0ng!Pass") == []
        mock_get.assert_not_called()

    def test_compromised_password_rejected(self, pwned_check_on) -> None:
        """A password listed by the range API is rejected."""
        with patch.object(passwords._session, "get", return_value=_range_response("Str0ng!Pass", 42)):
            assert password_policy_errors("Str0ng!Pass") == [MSG_COMPROMISED]

    def test_zero_count_padding_row_ignored(self, pwned_check_on) -> None:
        """Add-Padding rows carry a count of 0 and must not match."""
        with patch.object(passwords._session, "get", return_value=_range_response("Str0ng!Pass", 0)):
            assert not is_pwned("Str0ng!Pass")

    def test_only_prefix_leaves_the_process(self, pwned_check_on) -> None:
        """Only the five-character hash prefix is sent."""
        digest = hashlib.sha1(b"Str0ng!Pass").hexdigest().upper()
        with patch.object(passwords._session, "get", return_value=_range_response("other", 1)) as mock_get:
            assert not is_pwned("Str0ng!Pass")
        url = mock_get.call_args.args[0]
        assert url.endswith(digest[:5])
        assert digest[5:] not in url

    def test_network_failure_fails_open(self, pwned_check_on) -> None:
        """A connection error lets the password through."""
        with patch.object(passwords._session, "get", side_effect=requests.ConnectionError("down")):
            assert password_policy_errors("Str0ng!Pass") == []

    def test_http_error_fails_open(self, pwned_check_on) -> None:
        """An HTTP error status lets the password through."""
        resp = MagicMock()
        resp.raise_for_status.side_effect = requests.HTTPError("503")
        with patch.object(passwords._session, "get", return_value=resp):
            assert not is_pwned("Str0ng!Pass")

    def test_weak_password_skips_lookup(self, pwned_check_on) -> None:
        """A locally weak password is never looked up."""
        with patch.object(passwords._session, "get") as mock_get:
            password_policy_errors("weak")
        mock_get.assert_not_called()
