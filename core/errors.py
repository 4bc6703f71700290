"""
core/errors.py -- Domain error taxonomy shared by auth/ and profiles/.

Every failure a caller is allowed to see is an AppError subclass carrying its
own HTTP status and a stable machine-readable code. Services raise these;
api/main.py renders them with one exception handler, so route handlers never
build error bodies by hand.

Families (status in parentheses):
  ValidationFailed       (422)  malformed input, password policy
  Unauthenticated        (401)  no identity, bad credentials
  Forbidden              (403)  identity resolved, guard failed
  Conflict               (422)  uniqueness violations
  PolicyViolation        (422)  profile cap, last-profile delete (400)
  NotFound               (404)
  TokenExpiredOrInvalid  (422)  reset tokens, verification proofs

Layer rule: core/ is the kernel. No imports from api/, auth/, or profiles/.
"""

from __future__ import annotations

from typing import Any


class AppError(Exception):
    """Base class for every error that crosses the service boundary."""

    status_code: int = 400
    code: str = "bad_request"
    default_message: str = "The request could not be processed."

    def __init__(
        self,
        message: str | None = None,
        *,
        detail: dict[str, Any] | None = None,
        errors: dict[str, list[str]] | None = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        self.detail = detail or {}
        self.errors = errors or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.detail:
            body["detail"] = self.detail
        if self.errors:
            body["errors"] = self.errors
        return body


# ---------------------------------------------------------------------------
# Families
# ---------------------------------------------------------------------------


class ValidationFailed(AppError):
    status_code = 422
    code = "validation_error"
    default_message = "Validation failed."


class Unauthenticated(AppError):
    status_code = 401
    code = "unauthenticated"
    default_message = "Unauthenticated."


class Forbidden(AppError):
    status_code = 403
    code = "forbidden"
    default_message = "You are not allowed to perform this action."


class Conflict(AppError):
    status_code = 422
    code = "conflict"
    default_message = "The resource already exists."


class PolicyViolation(AppError):
    status_code = 422
    code = "policy_violation"
    default_message = "The request violates a business rule."


class NotFound(AppError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found."


class TokenExpiredOrInvalid(AppError):
    status_code = 422
    code = "invalid_token"
    default_message = "The token is invalid or has expired."


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class InvalidCredentials(Unauthenticated):
    code = "invalid_credentials"
    default_message = "Invalid credentials."


class EmailNotVerified(Forbidden):
    code = "email_not_verified"
    default_message = "Please verify your email address before logging in."


class DuplicateEmail(Conflict):
    code = "duplicate_email"
    default_message = "This email address is already registered."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message, errors={"email": [message or self.default_message]})


class PasswordPolicyError(ValidationFailed):
    def __init__(self, messages: list[str]) -> None:
        super().__init__("The password does not meet the password policy.", errors={"password": messages})


class InvalidOrExpiredToken(TokenExpiredOrInvalid):
    code = "invalid_or_expired_token"
    default_message = "Invalid or expired reset token."


class InvalidProof(TokenExpiredOrInvalid):
    code = "invalid_verification_proof"
    default_message = "Invalid verification link."


class UserNotFound(NotFound):
    code = "user_not_found"
    default_message = "User not found."


class RoleNotFound(NotFound):
    code = "role_not_found"
    default_message = "Role not found."


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


class NotProfileOwner(Forbidden):
    code = "not_profile_owner"
    default_message = "You are not authorized to access this profile."


class ProfileNotFound(NotFound):
    code = "profile_not_found"
    default_message = "Profile not found."


class NoProfileFound(NotFound):
    code = "no_profile_found"
    default_message = "No profile found for this user."


class ProfileLimitExceeded(PolicyViolation):
    code = "profile_limit_exceeded"

    def __init__(self, current_count: int, max_allowed: int) -> None:
        super().__init__(
            f"Maximum profile limit ({max_allowed}) reached",
            detail={"current_count": current_count, "max_allowed": max_allowed},
        )


class DuplicateProfileName(Conflict):
    code = "duplicate_profile_name"
    default_message = "You already have a profile with this name."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message, errors={"name": [message or self.default_message]})


class CannotDeleteOnlyProfile(PolicyViolation):
    status_code = 400
    code = "cannot_delete_only_profile"
    default_message = "You cannot delete your only profile."
