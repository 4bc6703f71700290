"""
auth/service.py -- Registration, login, logout, password reset, email verification.

AuthService is framework-free: it takes a UserStore and a Notifier, raises
core.errors exceptions, and returns domain objects. api/routes/v1/auth.py is
a thin HTTP adapter around it.

Enumeration resistance:
  - login: unknown email and wrong password raise the same InvalidCredentials
    after the same bcrypt work (authenticate_user).
  - request_password_reset: returns None whether or not the email exists.
  - reset_password: an unknown email is reported as InvalidOrExpiredToken.
EmailNotVerified is only raised after the password has matched, so it leaks
nothing an attacker without the password could not already learn.

Layer rule: no imports from api/ or profiles/.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

from sqlalchemy.exc import IntegrityError

from auth.models import AccessToken, User
from auth.notifications import NotificationEvent, Notifier, dispatch, redact_email
from auth.passwords import enforce_password_policy
from auth.roles import assign_default_role
from auth.store import UserStore, normalize_email
from auth.tokens import (
    authenticate_user,
    compute_verification_proof,
    generate_reset_token,
    hash_password,
    hash_token,
    issue_access_token,
    reset_token_matches,
    revoke_access_token,
    revoke_all_access_tokens,
    verification_proof_matches,
)
from core.config import Settings, get_settings
from core.errors import (
    DuplicateEmail,
    EmailNotVerified,
    InvalidCredentials,
    InvalidOrExpiredToken,
    InvalidProof,
    UserNotFound,
)

logger = logging.getLogger("molunzaka.auth")


class AuthService:
    def __init__(self, store: UserStore, notifier: Notifier | None = None, settings: Settings | None = None) -> None:
        self.store = store
        self.notifier = notifier
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Registration and sessions
    # ------------------------------------------------------------------

    def register(
        self,
        *,
        first_name: str,
        last_name: str,
        email: str,
        password: str,
        phone: str | None = None,
        date_of_birth: str | None = None,
        device_label: str = "web",
    ) -> tuple[User, str]:
        """Create an account and log it in. Returns (user, raw_token).

        The UNIQUE index on users.email is the duplicate guard; the pre-check
        only spares a bcrypt round for the common case.
        """
        email = normalize_email(email)
        if self.store.get_by_email(email, include_deleted=True) is not None:
            raise DuplicateEmail()
        enforce_password_policy(password)

        try:
            user_id = self.store.create_user(
                User(
                    email=email,
                    first_name=first_name,
                    last_name=last_name,
                    hashed_password=hash_password(password),
                    phone=phone,
                    date_of_birth=date_of_birth,
                )
            )
        except IntegrityError as exc:
            raise DuplicateEmail() from exc

        user = self.store.get_by_id(user_id)
        assign_default_role(self.store, user, self.settings.default_role)
        self._send_verification(user)
        _, raw_token = issue_access_token(self.store, user.id, device_label)
        logger.info("Registered user %s (%s)", user.id, redact_email(user.email))
        return user, raw_token

    def login(self, email: str, password: str, device_label: str = "web") -> tuple[User, str]:
        """Issue a token iff the password matches AND the email is verified."""
        user = authenticate_user(self.store, email, password)
        if user is None:
            raise InvalidCredentials()
        if not user.is_verified:
            raise EmailNotVerified(detail={"requires_verification": True, "user_id": user.id})
        self.store.update_last_login(user.id)
        _, raw_token = issue_access_token(self.store, user.id, device_label)
        logger.info("User %s logged in from %r", user.id, device_label)
        return user, raw_token

    def logout(self, token: AccessToken) -> None:
        """Revoke exactly the presented token."""
        revoke_access_token(self.store, token.id)

    def logout_all(self, user: User) -> int:
        return revoke_all_access_tokens(self.store, user.id)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> None:
        """Issue and send a reset token. Unknown emails are a silent no-op."""
        user = self.store.get_by_email(email)
        if user is None:
            logger.info("Password reset requested for unknown email %s", redact_email(email))
            return
        raw = generate_reset_token()
        self.store.save_reset_token(user.email, hash_token(raw))
        query = urlencode({"token": raw, "email": user.email})
        dispatch(
            self.notifier,
            NotificationEvent.PASSWORD_RESET,
            user,
            {
                "token": raw,
                "email": user.email,
                "reset_url": f"{self.settings.app_base_url}/reset-password?{query}",
                "expires_in_minutes": self.settings.reset_token_expire_seconds // 60,
            },
        )

    def reset_password(self, email: str, token: str, new_password: str) -> None:
        """Set a new password with a single-use reset token, then log out everywhere."""
        enforce_password_policy(new_password)
        user = self.store.get_by_email(email)
        reset = self.store.get_reset_token(email)
        if user is None or reset is None or not reset_token_matches(reset, token):
            raise InvalidOrExpiredToken()
        if not self.store.consume_reset_token_and_set_password(user.id, reset, hash_password(new_password)):
            # Consumed by a concurrent request between our read and our delete.
            raise InvalidOrExpiredToken()
        logger.info("Password reset for user %s; all sessions revoked", user.id)

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def verification_proof(self, user: User) -> str:
        return compute_verification_proof(user.id)

    def verify_email(self, user_id: int, proof: str) -> User:
        """Mark the user's email verified. Already-verified users succeed unchanged."""
        user = self.store.get_by_id(user_id)
        if user is None:
            raise UserNotFound()
        if user.is_verified:
            return user
        if not verification_proof_matches(user.id, proof):
            raise InvalidProof()
        self.store.mark_email_verified(user.id)
        return self.store.get_by_id(user.id)

    def resend_verification(self, user: User) -> bool:
        """Send a fresh verification notification. Returns False if already verified."""
        if user.is_verified:
            return False
        self._send_verification(user)
        return True

    def _send_verification(self, user: User) -> None:
        proof = compute_verification_proof(user.id)
        dispatch(
            self.notifier,
            NotificationEvent.EMAIL_VERIFICATION,
            user,
            {
                "user_id": user.id,
                "proof": proof,
                "verification_url": f"{self.settings.app_base_url}/verify-email/{user.id}/{proof}",
            },
        )

    # ------------------------------------------------------------------
    # Account administration
    # ------------------------------------------------------------------

    def deactivate_user(self, user_id: int) -> None:
        """Soft-delete an account and revoke its tokens."""
        if not self.store.soft_delete_user(user_id):
            raise UserNotFound()
        logger.info("Soft-deleted user %s", user_id)

    def restore_user(self, user_id: int) -> User:
        if not self.store.restore_user(user_id):
            raise UserNotFound()
        logger.info("Restored user %s", user_id)
        return self.store.get_by_id(user_id)
