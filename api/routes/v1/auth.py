"""
api/routes/v1/auth.py -- Authentication, device token and user administration endpoints.

Routes:
  POST   /api/v1/auth/register                      -- create account, auto-login (201)
  POST   /api/v1/auth/login                         -- password login; verified accounts only
  POST   /api/v1/auth/logout                        -- revoke the presented token
  POST   /api/v1/auth/logout-all                    -- revoke every token of the caller
  POST   /api/v1/auth/forgot-password               -- uniform response, emails a reset token
  POST   /api/v1/auth/reset-password                -- single-use token; revokes all sessions
  POST   /api/v1/auth/email/verify/{id}/{proof}     -- public verification link target
  POST   /api/v1/auth/email/resend-verification     -- requires auth; no-op when verified
  GET    /api/v1/auth/me                            -- current user
  GET    /api/v1/auth/tokens                        -- caller's live device tokens
  DELETE /api/v1/auth/tokens/{id}                   -- revoke one of the caller's tokens
  GET    /api/v1/auth/users/{id}/roles              -- permission manage_users
  PUT    /api/v1/auth/users/{id}/roles              -- role Super Admin
  DELETE /api/v1/auth/users/{id}                    -- soft delete; permission manage_users
  POST   /api/v1/auth/users/{id}/restore            -- permission manage_users

Security:
  POST /login is limited by LOGIN_RATE_LIMIT per IP; the other public routes
  by AUTH_RATE_LIMIT.
  AuthService.login() runs authenticate_user(), which equalizes bcrypt timing
  between unknown emails and wrong passwords. Never inline the lookup here.
  Cache-Control: no-store on every response that carries a raw token.
  IDOR guard: DELETE /tokens/{id} passes user_id to the store; the WHERE
  clause requires both to match.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import AUTH_LIMIT, LOGIN_LIMIT, limiter
from api.models import (
    AccessTokenResponse,
    AuthPayload,
    DataResponse,
    ForgotPasswordRequest,
    LoginPayload,
    LoginRequest,
    LogoutAllPayload,
    RegisterRequest,
    ResetPasswordRequest,
    RoleResponse,
    RolesUpdate,
    UserPayload,
    UserResponse,
    UserRolesPayload,
    VerificationPayload,
)
from auth.authorization import permissions_of
from auth.dependencies import get_current_token, get_current_user, require_permissions, require_roles
from auth.models import AccessToken, User
from auth.roles import sync_roles
from auth.service import AuthService
from auth.store import UserStore
from core.errors import UserNotFound

# Auth policy:
# - register, login, forgot-password, reset-password, email/verify: public (rate limited)
# - logout, logout-all, resend-verification, me, tokens:             get_current_user
# - GET/PUT users/{id}/roles, DELETE users/{id}, users/{id}/restore: role/permission guards
router = APIRouter()

_FORGOT_MESSAGE = "If an account exists with this email, you will receive a password reset link."


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _store(request: Request) -> UserStore:
    return request.app.state.user_store


def _device_label(request: Request, explicit: str | None = None) -> str:
    return explicit or request.headers.get("User-Agent") or "web"


def _user_response(store: UserStore, user: User) -> UserResponse:
    return UserResponse.from_user(user, store.get_user_roles(user.id))


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(AUTH_LIMIT)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=DataResponse[AuthPayload], status_code=201)
def register(request: Request, response: Response, body: RegisterRequest) -> DataResponse[AuthPayload]:
    """Create an account, send the verification email and return a first token.

    The token authenticates immediately, but /auth/login stays closed until
    the email is verified.
    """
    user, token = _service(request).register(
        first_name=body.first_name,
        last_name=body.last_name,
        email=body.email,
        password=body.password,
        phone=body.phone,
        date_of_birth=body.date_of_birth.isoformat() if body.date_of_birth else None,
        device_label=_device_label(request),
    )
    _no_store(response)
    return DataResponse[AuthPayload](
        message="User registered successfully. Please check your email to verify your account.",
        data=AuthPayload(user=_user_response(_store(request), user), token=token),
    )


@limiter.limit(LOGIN_LIMIT)  # brute-force mitigation
@router.post("/auth/login", response_model=DataResponse[LoginPayload])
def login(request: Request, response: Response, body: LoginRequest) -> DataResponse[LoginPayload]:
    """Authenticate with email and password.

    401 invalid_credentials covers both unknown email and wrong password.
    403 email_not_verified is only reachable with the correct password.
    """
    user, token = _service(request).login(body.email, body.password, _device_label(request, body.device_name))
    _no_store(response)
    return DataResponse[LoginPayload](
        message="Login successful.",
        data=LoginPayload(
            user=_user_response(_store(request), user),
            token=token,
            remember_me=body.remember_me,
        ),
    )


@limiter.limit(AUTH_LIMIT)
@router.post("/auth/forgot-password", response_model=DataResponse[None])
def forgot_password(request: Request, body: ForgotPasswordRequest) -> DataResponse[None]:
    """Same response whether or not the email is registered."""
    _service(request).request_password_reset(body.email)
    return DataResponse[None](message=_FORGOT_MESSAGE)


@limiter.limit(AUTH_LIMIT)
@router.post("/auth/reset-password", response_model=DataResponse[None])
def reset_password(request: Request, body: ResetPasswordRequest) -> DataResponse[None]:
    _service(request).reset_password(body.email, body.token, body.password)
    return DataResponse[None](message="Password reset successful. Please log in with your new password.")


@limiter.limit(AUTH_LIMIT)
@router.post("/auth/email/verify/{user_id}/{proof}", response_model=DataResponse[VerificationPayload])
def verify_email(request: Request, user_id: int, proof: str) -> DataResponse[VerificationPayload]:
    """Target of the link in the verification email. Idempotent once verified."""
    service = _service(request)
    existing = service.store.get_by_id(user_id)
    already = existing is not None and existing.is_verified
    user = service.verify_email(user_id, proof)
    return DataResponse[VerificationPayload](
        message="Email already verified." if already else "Email verified successfully!",
        data=VerificationPayload(user_id=user.id, verified=True, email=user.email),
    )


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=DataResponse[None])
def logout(request: Request, token: AccessToken = Depends(get_current_token)) -> DataResponse[None]:
    """Revoke only the token used for this request; other devices stay signed in."""
    _service(request).logout(token)
    return DataResponse[None](message="Logged out successfully.")


@router.post("/auth/logout-all", response_model=DataResponse[LogoutAllPayload])
def logout_all(request: Request, current_user: User = Depends(get_current_user)) -> DataResponse[LogoutAllPayload]:
    revoked = _service(request).logout_all(current_user)
    return DataResponse[LogoutAllPayload](
        message="Logged out from all devices successfully.",
        data=LogoutAllPayload(revoked=revoked),
    )


@router.post("/auth/email/resend-verification", response_model=DataResponse[None])
def resend_verification(request: Request, current_user: User = Depends(get_current_user)) -> DataResponse[None]:
    if not _service(request).resend_verification(current_user):
        return DataResponse[None](message="Email already verified.")
    return DataResponse[None](message="Verification email sent successfully.")


@router.get("/auth/me", response_model=DataResponse[UserPayload])
def me(request: Request, current_user: User = Depends(get_current_user)) -> DataResponse[UserPayload]:
    """Return the authenticated user with their current role names."""
    return DataResponse[UserPayload](
        message="User profile retrieved successfully.",
        data=UserPayload(user=_user_response(_store(request), current_user)),
    )


@router.get("/auth/tokens", response_model=DataResponse[list[AccessTokenResponse]])
def list_tokens(
    request: Request,
    token: AccessToken = Depends(get_current_token),
) -> DataResponse[list[AccessTokenResponse]]:
    """List the caller's live device tokens. Raw token values are never returned."""
    tokens = _store(request).list_tokens(token.user_id)
    return DataResponse[list[AccessTokenResponse]](
        message="Tokens retrieved successfully.",
        data=[AccessTokenResponse.from_token(t, current_id=token.id) for t in tokens],
    )


@router.delete("/auth/tokens/{token_id}", response_model=DataResponse[None])
def revoke_token(
    request: Request,
    token_id: int,
    current_user: User = Depends(get_current_user),
) -> DataResponse[None]:
    """Revoke one of the caller's tokens. Unknown, foreign or revoked ids are a no-op."""
    _store(request).revoke_token(token_id, current_user.id)
    return DataResponse[None](message="Token revoked.")


# ---------------------------------------------------------------------------
# User administration (role / permission guarded)
# ---------------------------------------------------------------------------


def _roles_payload(store: UserStore, user_id: int) -> UserRolesPayload:
    roles = store.get_user_roles(user_id)
    return UserRolesPayload(
        user_id=user_id,
        roles=[RoleResponse.from_role(r) for r in roles],
        permissions=sorted(permissions_of(roles)),
    )


def _require_user(store: UserStore, user_id: int) -> User:
    user = store.get_by_id(user_id, include_deleted=True)
    if user is None:
        raise UserNotFound()
    return user


@router.get(
    "/auth/users/{user_id}/roles",
    response_model=DataResponse[UserRolesPayload],
    dependencies=[Depends(require_permissions("manage_users"))],
)
def get_user_roles(request: Request, user_id: int) -> DataResponse[UserRolesPayload]:
    store = _store(request)
    _require_user(store, user_id)
    return DataResponse[UserRolesPayload](message="Roles retrieved successfully.", data=_roles_payload(store, user_id))


@router.put(
    "/auth/users/{user_id}/roles",
    response_model=DataResponse[UserRolesPayload],
    dependencies=[Depends(require_roles("Super Admin"))],
)
def put_user_roles(request: Request, user_id: int, body: RolesUpdate) -> DataResponse[UserRolesPayload]:
    """Replace the user's roles. An unknown role name changes nothing (404)."""
    store = _store(request)
    target = _require_user(store, user_id)
    sync_roles(store, target, body.roles)
    return DataResponse[UserRolesPayload](message="Roles updated successfully.", data=_roles_payload(store, user_id))


@router.delete(
    "/auth/users/{user_id}",
    response_model=DataResponse[None],
    dependencies=[Depends(require_permissions("manage_users"))],
)
def delete_user(request: Request, user_id: int) -> DataResponse[None]:
    """Soft delete: the account stops authenticating; its data is kept for restore."""
    _service(request).deactivate_user(user_id)
    return DataResponse[None](message="User deleted.")


@router.post(
    "/auth/users/{user_id}/restore",
    response_model=DataResponse[UserPayload],
    dependencies=[Depends(require_permissions("manage_users"))],
)
def restore_user(request: Request, user_id: int) -> DataResponse[UserPayload]:
    service = _service(request)
    user = service.restore_user(user_id)
    return DataResponse[UserPayload](
        message="User restored.",
        data=UserPayload(user=_user_response(service.store, user)),
    )
