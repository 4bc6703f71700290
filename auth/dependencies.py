"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and guards.

The middleware chain, in order:
  1. try_get_current_user()  -- resolve "Authorization: Bearer <token>" via the
                                credential store; stash the AccessToken on
                                request.state.access_token for logout.
  2. get_current_user()      -- 401 Unauthenticated if step 1 found nobody.
  3. require_roles(...) /
     require_permissions(...) -- 403 Forbidden if the identity fails the guard.
  4. profiles/dependencies.get_owned_profile -- ownership guard for /profiles/{id}.

401 and 403 are distinct states: a guard never runs without an identity, and
a resolved identity never produces a 401.

Layer rule: no imports from api/ or profiles/. fastapi is allowed because this
module is part of the dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request

from auth.authorization import has_all_permissions, has_all_roles, has_any_permission, has_any_role
from auth.models import AccessToken, User
from auth.store import UserStore
from auth.tokens import resolve_access_token
from core.errors import Forbidden, Unauthenticated


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, value = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request from its bearer token. Never raises."""
    if hasattr(request.state, "current_user"):
        return request.state.current_user
    user: User | None = None
    raw = _bearer_token(request)
    if raw:
        user_store: UserStore = request.app.state.user_store
        resolved = resolve_access_token(user_store, raw)
        if resolved is not None:
            user, token = resolved
            request.state.access_token = token
    request.state.current_user = user
    return user


def get_current_user(request: Request) -> User:
    """Require authentication. Raises Unauthenticated (401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise Unauthenticated()
    return user


def get_current_token(request: Request) -> AccessToken:
    """The AccessToken presented with this request (authentication required)."""
    get_current_user(request)
    return request.state.access_token


def require_roles(*roles: str, require_all: bool = False) -> Callable[[Request], User]:
    """Guard factory: the caller must hold any (or, with require_all, every) role.

        @router.put("/admin", dependencies=[Depends(require_roles("Super Admin"))])
    """
    check = has_all_roles if require_all else has_any_role

    def dependency(request: Request) -> User:
        user = get_current_user(request)
        if not check(request.app.state.user_store, user, roles):
            raise Forbidden(f"Unauthorized. Required role: {', '.join(roles)}")
        return user

    return dependency


def require_permissions(*permissions: str, require_all: bool = False) -> Callable[[Request], User]:
    """Guard factory: the caller must hold any (or, with require_all, every) permission."""
    check = has_all_permissions if require_all else has_any_permission

    def dependency(request: Request) -> User:
        user = get_current_user(request)
        if not check(request.app.state.user_store, user, permissions):
            raise Forbidden(f"Unauthorized. Required permission: {', '.join(permissions)}")
        return user

    return dependency
