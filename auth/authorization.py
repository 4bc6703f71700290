"""
auth/authorization.py -- Role and permission checks.

Model: user <-> role <-> permission, two join tables. A user's permissions
are the union of the permission sets of the roles they hold at the moment of
the check:

    permissions_of(roles) = union(role.permissions for role in roles)

Every has_* call re-reads the user's roles from the store. Nothing is cached
on the token or the request, so a role change takes effect on the very next
check.

The any/all variants give call sites OR-of-set and AND-of-set semantics.
Turning a failed check into 401/403 is auth/dependencies.py's job.

Layer rule: no imports from api/ or profiles/.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from auth.models import Role, User
    from auth.store import UserStore


def roles_of(store: UserStore, user: User) -> list[Role]:
    return store.get_user_roles(user.id)


def role_names_of(store: UserStore, user: User) -> frozenset[str]:
    return frozenset(r.name for r in roles_of(store, user))


def permissions_of(roles: Iterable[Role]) -> frozenset[str]:
    """Pure union of the permission sets of roles."""
    result: set[str] = set()
    for role in roles:
        result |= role.permissions
    return frozenset(result)


def has_any_role(store: UserStore, user: User, roles: Iterable[str]) -> bool:
    return not role_names_of(store, user).isdisjoint(roles)


def has_all_roles(store: UserStore, user: User, roles: Iterable[str]) -> bool:
    return role_names_of(store, user).issuperset(roles)


def has_any_permission(store: UserStore, user: User, permissions: Iterable[str]) -> bool:
    return not permissions_of(roles_of(store, user)).isdisjoint(permissions)


def has_all_permissions(store: UserStore, user: User, permissions: Iterable[str]) -> bool:
    return permissions_of(roles_of(store, user)).issuperset(permissions)
