"""
auth/roles.py -- Role assignment and the default role/permission catalogue.

seed_roles_and_permissions() is idempotent and runs on every startup (and from
`python main.py seed-roles`). The catalogue:

  Super Admin       every permission
  Production House  manage_content, upload_video, view_analytics
  Subscriber        stream_content

New accounts receive Settings.default_role ("Subscriber") at registration.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from core.errors import RoleNotFound

if TYPE_CHECKING:
    from auth.models import Role, User
    from auth.store import UserStore

logger = logging.getLogger("molunzaka.roles")

GUARD = "web"

PERMISSIONS: tuple[str, ...] = (
    "manage_users",
    "manage_content",
    "upload_video",
    "view_analytics",
    "stream_content",
)

ROLE_PERMISSIONS: dict[str, tuple[str, ...]] = {
    "Super Admin": PERMISSIONS,
    "Production House": ("manage_content", "upload_video", "view_analytics"),
    "Subscriber": ("stream_content",),
}


def seed_roles_and_permissions(store: UserStore) -> None:
    for name in PERMISSIONS:
        store.find_or_create_permission(name, GUARD)
    for role_name, perms in ROLE_PERMISSIONS.items():
        role = store.find_or_create_role(role_name, GUARD)
        store.sync_role_permissions(role.id, list(perms), GUARD)
    logger.info("Seeded %d roles and %d permissions", len(ROLE_PERMISSIONS), len(PERMISSIONS))


def _require_role(store: UserStore, role_name: str) -> Role:
    role = store.get_role(role_name, GUARD)
    if role is None:
        raise RoleNotFound(f"There is no role named '{role_name}'.")
    return role


def assign_default_role(store: UserStore, user: User, role_name: str = "Subscriber") -> None:
    """Give a new account its starting role, creating the role row if the DB is unseeded."""
    role = store.find_or_create_role(role_name, GUARD)
    store.add_user_role(user.id, role.id)


def assign_role(store: UserStore, user: User, role_name: str) -> None:
    store.add_user_role(user.id, _require_role(store, role_name).id)


def assign_roles(store: UserStore, user: User, role_names: list[str]) -> None:
    # Resolve every name first so an unknown one assigns nothing.
    roles = [_require_role(store, n) for n in role_names]
    for role in roles:
        store.add_user_role(user.id, role.id)


def remove_role(store: UserStore, user: User, role_name: str) -> bool:
    return store.remove_user_role(user.id, _require_role(store, role_name).id)


def sync_roles(store: UserStore, user: User, role_names: list[str]) -> None:
    """Replace the user's roles with exactly role_names."""
    roles = [_require_role(store, n) for n in role_names]
    store.replace_user_roles(user.id, [r.id for r in roles])
