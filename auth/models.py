"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services
do the work; these only own the domain shape.

Layer rule: no imports from api/ or profiles/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class User:
    """An account holder.

    email is stored lower-cased and stripped; the store normalizes it on every
    write and lookup so uniqueness is case-insensitive.

    email_verified_at moves from None to a timestamp exactly once.
    deleted_at marks a soft-deleted account: it cannot authenticate, but its
    tokens, roles, and profiles stay in place so restore_user() brings it back
    intact.

    tokens_invalid_before is the revoke-all watermark: tokens created at or
    before this instant never resolve, even if their own row was missed.
    """

    email: str
    first_name: str
    last_name: str
    id: int | None = None
    hashed_password: str | None = None
    phone: str | None = None
    date_of_birth: str | None = None  # YYYY-MM-DD
    email_verified_at: str | None = None
    created_at: str | None = None
    last_login: str | None = None
    deleted_at: str | None = None
    tokens_invalid_before: str | None = None

    @property
    def is_verified(self) -> bool:
        return self.email_verified_at is not None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


@dataclass
class AccessToken:
    """One authenticated device/session.

    Security design:
    - token_hash is HMAC-SHA256(SECRET_KEY, raw_token). The deterministic hash
      gives an indexed lookup; the raw token carries 256 bits of entropy so
      bcrypt-style slowness is unnecessary.
    - token_prefix (first 12 chars) is kept for display in the device list.
    - The raw token is returned ONCE by issue_access_token() and never stored.
    - revoked_at is permanent; there is no un-revoke.
    """

    user_id: int
    name: str
    token_hash: str
    token_prefix: str
    id: int | None = None
    created_at: str | None = None
    last_used_at: str | None = None
    revoked_at: str | None = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass
class PasswordResetToken:
    """Pending password reset for one email. A new request replaces the old row."""

    email: str
    token_hash: str
    created_at: str


@dataclass
class Role:
    """A named capability bundle in the "web" guard namespace."""

    name: str
    guard_name: str = "web"
    id: int | None = None
    permissions: frozenset[str] = field(default_factory=frozenset)
