"""
auth/tokens.py -- Password hashing, bearer tokens, reset tokens, verification proofs.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). Bcrypt's cost factor makes
       brute-force of low-entropy secrets expensive. The _DUMMY_HASH constant
       enables timing equalization in authenticate_user() so response time
       does not reveal whether an email is registered.

  Access tokens: "mlz_" + secrets.token_hex(32) -- 256 bits of entropy. We
       store HMAC-SHA256(SECRET_KEY, raw) so lookup is an indexed equality
       match; the fetched hash is then compared with hmac.compare_digest.
       The raw value is returned once by issue_access_token() and never stored.

  Reset tokens: 64 random URL-safe chars, stored as the same HMAC. Expiry is
       enforced at verification time against the row's created_at.

  Verification proofs: HMAC-SHA256(SECRET_KEY, user id). Deterministic and
       stateless, so nothing is stored, but a proof cannot be computed from
       the public user id alone.

Layer rule: no imports from api/ or profiles/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt

from auth.models import AccessToken
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import PasswordResetToken, User
    from auth.store import UserStore

logger = logging.getLogger("molunzaka.auth")

_settings = get_settings()

ACCESS_TOKEN_PREFIX = "mlz_"
_ACCESS_TOKEN_RE = re.compile(r"^mlz_[0-9a-f]{64}$")

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

_BCRYPT_MAX_BYTES = 72


def _bcrypt_input(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Only the first 72 bytes are hashed (bcrypt's input limit). The API layer caps
    passwords at 255 chars; 72 bytes still carry far more entropy than the policy asks for.
    """
    return bcrypt.hashpw(_bcrypt_input(plain), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(_bcrypt_input(plain), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("molunzaka_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Check an email/password pair with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as a real check)
    - Wrong password: bcrypt runs against the real hash

    Returns the User on a password match, None otherwise. Email verification
    is NOT checked here; the caller decides what an unverified match means.
    """
    user = store.get_by_email(email)
    if user is None or not user.hashed_password:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


# ---------------------------------------------------------------------------
# Keyed hashing
# ---------------------------------------------------------------------------


def _hmac_hex(value: str) -> str:
    return hmac.new(_settings.secret_key.encode(), value.encode(), hashlib.sha256).hexdigest()


def hash_token(raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string.

    An attacker holding a DB dump cannot replay stored hashes as bearer tokens,
    and cannot brute-force them offline without also knowing SECRET_KEY.
    """
    return _hmac_hex(raw_token)


# ---------------------------------------------------------------------------
# Access tokens (Credential Store operations)
# ---------------------------------------------------------------------------


def generate_access_token() -> str:
    """Generate a new bearer token in the format: mlz_<64 hex chars>."""
    return f"{ACCESS_TOKEN_PREFIX}{secrets.token_hex(32)}"


def issue_access_token(store: UserStore, user_id: int, label: str) -> tuple[int, str]:
    """Create a token for user_id and return (token_id, raw_token).

    The raw token exists only in this return value.
    """
    raw = generate_access_token()
    token_id = store.create_token(
        AccessToken(
            user_id=user_id,
            name=(label or "web")[:255],
            token_hash=hash_token(raw),
            token_prefix=raw[:12],
        )
    )
    return token_id, raw


def resolve_access_token(store: UserStore, raw_token: str) -> tuple[User, AccessToken] | None:
    """Resolve a presented bearer token to its owner.

    Returns None for malformed, unknown, revoked, watermark-expired tokens and
    for tokens of soft-deleted users. Never raises on bad input.
    """
    if not raw_token or not _ACCESS_TOKEN_RE.match(raw_token):
        return None
    token_hash = hash_token(raw_token)
    token = store.get_live_token_by_hash(token_hash)
    if token is None or not hmac.compare_digest(token.token_hash, token_hash):
        return None
    user = store.get_by_id(token.user_id)
    if user is None:
        return None
    store.touch_token(token.id)
    return user, token


def revoke_access_token(store: UserStore, token_id: int) -> None:
    """Revoke one token. Unknown or already-revoked ids are a silent no-op."""
    store.revoke_token(token_id)


def revoke_all_access_tokens(store: UserStore, user_id: int) -> int:
    """Revoke every token of user_id. Returns how many live tokens were revoked."""
    count = store.revoke_all_tokens(user_id)
    logger.info("Revoked %d token(s) for user %s", count, user_id)
    return count


# ---------------------------------------------------------------------------
# Password reset tokens
# ---------------------------------------------------------------------------


def generate_reset_token() -> str:
    """Return a 64-char URL-safe random reset token."""
    return secrets.token_urlsafe(48)


def reset_token_matches(reset: PasswordResetToken, raw_token: str, now: datetime | None = None) -> bool:
    """True iff raw_token hashes to the stored value and the row is inside the expiry window."""
    if not hmac.compare_digest(reset.token_hash, hash_token(raw_token)):
        return False
    created = datetime.fromisoformat(reset.created_at)
    now = now or datetime.now(timezone.utc)
    return now - created <= timedelta(seconds=_settings.reset_token_expire_seconds)


# ---------------------------------------------------------------------------
# Email verification proofs
# ---------------------------------------------------------------------------


def compute_verification_proof(user_id: int) -> str:
    """Return the verification proof for user_id.

    Pure function of (SECRET_KEY, user_id): recomputed on demand, never stored.
    """
    return _hmac_hex(f"email-verification:{user_id}")


def verification_proof_matches(user_id: int, proof: str) -> bool:
    # bytes, not str: compare_digest rejects non-ASCII str input with TypeError
    return hmac.compare_digest(compute_verification_proof(user_id).encode(), (proof or "").encode("utf-8"))
