#!/usr/bin/env python3
"""
Molunzaka -- role administration from the command line.

Usage:
  python main.py seed-roles
  python main.py assign-role admin@example.com "Super Admin"
  python main.py remove-role admin@example.com "Production House"
  python main.py list-roles admin@example.com

The commands talk to the same database as the API (AUTH_DATABASE_URL, or the
default SQLite file beside auth/store.py). Run seed-roles once on a fresh
database before assigning roles; the API also seeds on every startup.

Environment variables:
  SECRET_KEY          Required unless DEBUG=true (see core/config.py).
  AUTH_DATABASE_URL   Optional SQLAlchemy URL for the auth database.
"""

import argparse
import sys

from auth.authorization import permissions_of
from auth.roles import assign_role, remove_role, seed_roles_and_permissions
from auth.store import UserStore
from core.config import get_settings
from core.errors import AppError, UserNotFound


def _require_user(store: UserStore, email: str):
    user = store.get_by_email(email, include_deleted=True)
    if user is None:
        raise UserNotFound(f"No user with email '{email}'.")
    return user


def cmd_seed_roles(store: UserStore, args: argparse.Namespace) -> None:
    seed_roles_and_permissions(store)
    for role in store.list_roles():
        print(f"  {role.name:<18} {', '.join(sorted(role.permissions))}")


def cmd_assign_role(store: UserStore, args: argparse.Namespace) -> None:
    user = _require_user(store, args.email)
    assign_role(store, user, args.role)
    print(f"  Assigned '{args.role}' to {user.email}.")


def cmd_remove_role(store: UserStore, args: argparse.Namespace) -> None:
    user = _require_user(store, args.email)
    if remove_role(store, user, args.role):
        print(f"  Removed '{args.role}' from {user.email}.")
    else:
        print(f"  {user.email} did not have '{args.role}'.")


def cmd_list_roles(store: UserStore, args: argparse.Namespace) -> None:
    user = _require_user(store, args.email)
    roles = store.get_user_roles(user.id)
    if not roles:
        print(f"  {user.email} has no roles.")
        return
    print(f"  Roles:       {', '.join(r.name for r in roles)}")
    print(f"  Permissions: {', '.join(sorted(permissions_of(roles)))}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="molunzaka",
        description="Molunzaka role administration.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    seed = sub.add_parser("seed-roles", help="Create the default roles and permissions (idempotent).")
    seed.set_defaults(func=cmd_seed_roles)

    assign = sub.add_parser("assign-role", help="Give a user a role.")
    assign.add_argument("email")
    assign.add_argument("role")
    assign.set_defaults(func=cmd_assign_role)

    remove = sub.add_parser("remove-role", help="Take a role away from a user.")
    remove.add_argument("email")
    remove.add_argument("role")
    remove.set_defaults(func=cmd_remove_role)

    listing = sub.add_parser("list-roles", help="Show a user's roles and effective permissions.")
    listing.add_argument("email")
    listing.set_defaults(func=cmd_list_roles)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    store = UserStore(get_settings().auth_database_url)
    try:
        args.func(store, args)
    except AppError as exc:
        print(f"  [!] {exc.message}")
        return 1
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
