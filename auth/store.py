"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper (same as profiles/store.py).
UserStore is the repository; the _row_to_* functions are the mappers.
Service and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  users.email is UNIQUE at the storage level. Application-level pre-checks
  cannot survive two concurrent registrations; the IntegrityError from the
  second INSERT is the real guard and callers map it to DuplicateEmail.

  revoke_all_tokens() updates the token rows AND moves the user's
  tokens_invalid_before watermark inside one transaction. Resolution filters
  on both, so a token row created concurrently with the revoke is still dead
  once the revoke commits.

DB path: auth/molunzaka_auth.db unless AUTH_DATABASE_URL is set.

Layer rule: no imports from api/ or profiles/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.models import AccessToken, PasswordResetToken, Role, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'molunzaka_auth.db'}"

# Fixed-width UTC timestamps so lexical comparison in SQL equals time order.
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # lower-cased
    Column("hashed_password", Text, nullable=False),
    Column("first_name", String(255), nullable=False),
    Column("last_name", String(255), nullable=False),
    Column("phone", String(20)),
    Column("date_of_birth", String(10)),  # YYYY-MM-DD
    Column("email_verified_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
    Column("deleted_at", String(32)),  # soft delete
    Column("tokens_invalid_before", String(32)),  # revoke-all watermark
)

_access_tokens = Table(
    "access_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("name", String(255), nullable=False),  # device label
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("token_prefix", String(12), nullable=False),  # display only
    Column("created_at", String(32), nullable=False),
    Column("last_used_at", String(32)),
    Column("revoked_at", String(32)),
)

_password_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("email", String(255), primary_key=True),
    Column("token_hash", String(64), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("guard_name", String(30), nullable=False, server_default="web"),
    UniqueConstraint("name", "guard_name", name="uq_roles_name_guard"),
)

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("guard_name", String(30), nullable=False, server_default="web"),
    UniqueConstraint("name", "guard_name", name="uq_permissions_name_guard"),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", Integer, ForeignKey("roles.id"), primary_key=True),
    Column("permission_id", Integer, ForeignKey("permissions.id"), primary_key=True),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("role_id", Integer, ForeignKey("roles.id"), primary_key=True),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime(_TS_FORMAT)


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users, access tokens, reset tokens, roles and permissions.

    Usage:
        store = UserStore()
        uid = store.create_user(User(email="a@x.com", first_name="A", last_name="B", hashed_password=h))
        user = store.get_by_email("A@X.com")
        store.close()
    """

    def __init__(self, db_url: str = "") -> None:
        db_url = db_url or _DEFAULT_DB_URL
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        with self.engine.connect() as conn:
            return conn.execute(select(1)).scalar() == 1

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists
        (case-insensitive, soft-deleted rows included).
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=normalize_email(user.email),
                    hashed_password=user.hashed_password,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    phone=user.phone,
                    date_of_birth=user.date_of_birth,
                    email_verified_at=user.email_verified_at,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str, include_deleted: bool = False) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        stmt = _users.select().where(_users.c.email == normalize_email(email))
        if not include_deleted:
            stmt = stmt.where(_users.c.deleted_at.is_(None))
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int, include_deleted: bool = False) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        stmt = _users.select().where(_users.c.id == user_id)
        if not include_deleted:
            stmt = stmt.where(_users.c.deleted_at.is_(None))
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_user(row) if row is not None else None

    def mark_email_verified(self, user_id: int) -> bool:
        """Stamp email_verified_at if it is still NULL.

        The IS NULL guard makes the transition monotonic: a second call, or a
        concurrent one, updates zero rows and the original timestamp stays.
        Returns True only for the call that performed the transition.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.email_verified_at.is_(None)))
                .values(email_verified_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given user."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()

    def soft_delete_user(self, user_id: int) -> bool:
        """Mark a user deleted and revoke every token they hold.

        Profiles and role assignments are left untouched so restore_user()
        is lossless. Returns False if the user does not exist or is already deleted.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.deleted_at.is_(None)))
                .values(deleted_at=_now_iso())
            )
            if result.rowcount == 0:
                return False
            _revoke_all(conn, user_id)
        return True

    def restore_user(self, user_id: int) -> bool:
        """Clear deleted_at. Tokens revoked by the delete stay revoked."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.deleted_at.is_not(None)))
                .values(deleted_at=None)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def create_token(self, token: AccessToken) -> int:
        """Insert a new access token record and return its ID."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _access_tokens.insert().values(
                    user_id=token.user_id,
                    name=token.name,
                    token_hash=token.token_hash,
                    token_prefix=token.token_prefix,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_live_token_by_hash(self, token_hash: str) -> AccessToken | None:
        """Return the token with this hash if it is still usable.

        One statement checks every revocation path: the row's own revoked_at,
        the owner's revoke-all watermark, and the owner's soft-delete flag.
        """
        stmt = (
            select(_access_tokens)
            .join(_users, _users.c.id == _access_tokens.c.user_id)
            .where(
                and_(
                    _access_tokens.c.token_hash == token_hash,
                    _access_tokens.c.revoked_at.is_(None),
                    _users.c.deleted_at.is_(None),
                    or_(
                        _users.c.tokens_invalid_before.is_(None),
                        _access_tokens.c.created_at > _users.c.tokens_invalid_before,
                    ),
                )
            )
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_token(row) if row is not None else None

    def get_token(self, token_id: int) -> AccessToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_access_tokens.select().where(_access_tokens.c.id == token_id)).fetchone()
        return _row_to_token(row) if row is not None else None

    def list_tokens(self, user_id: int) -> list[AccessToken]:
        """Return the user's unrevoked tokens, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _access_tokens.select()
                .where((_access_tokens.c.user_id == user_id) & (_access_tokens.c.revoked_at.is_(None)))
                .order_by(_access_tokens.c.created_at.desc(), _access_tokens.c.id.desc())
            ).fetchall()
        return [_row_to_token(r) for r in rows]

    def touch_token(self, token_id: int) -> None:
        """Stamp last_used_at after each successful resolution."""
        with self.engine.connect() as conn:
            conn.execute(
                _access_tokens.update().where(_access_tokens.c.id == token_id).values(last_used_at=_now_iso())
            )
            conn.commit()

    def revoke_token(self, token_id: int, user_id: int | None = None) -> bool:
        """Revoke one token. Idempotent: unknown or already-revoked ids are a no-op.

        When user_id is given it joins the WHERE clause, so a caller can never
        revoke a token belonging to someone else (IDOR guard).

        Returns True only if this call changed a row.
        """
        stmt = _access_tokens.update().where(
            (_access_tokens.c.id == token_id) & (_access_tokens.c.revoked_at.is_(None))
        )
        if user_id is not None:
            stmt = stmt.where(_access_tokens.c.user_id == user_id)
        with self.engine.connect() as conn:
            result = conn.execute(stmt.values(revoked_at=_now_iso()))
            conn.commit()
        return result.rowcount > 0

    def revoke_all_tokens(self, user_id: int) -> int:
        """Revoke every token of a user atomically. Returns the number of rows revoked."""
        with self.engine.begin() as conn:
            return _revoke_all(conn, user_id)

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def save_reset_token(self, email: str, token_hash: str) -> None:
        """Store a reset token for email, replacing any previous one."""
        email = normalize_email(email)
        with self.engine.begin() as conn:
            conn.execute(_password_reset_tokens.delete().where(_password_reset_tokens.c.email == email))
            conn.execute(
                _password_reset_tokens.insert().values(email=email, token_hash=token_hash, created_at=_now_iso())
            )

    def get_reset_token(self, email: str) -> PasswordResetToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _password_reset_tokens.select().where(_password_reset_tokens.c.email == normalize_email(email))
            ).fetchone()
        if row is None:
            return None
        return PasswordResetToken(email=row.email, token_hash=row.token_hash, created_at=row.created_at)

    def consume_reset_token_and_set_password(
        self, user_id: int, reset: PasswordResetToken, hashed_password: str
    ) -> bool:
        """Consume a reset token, store the new password, and revoke all sessions.

        All three writes share one transaction. The DELETE must match the exact
        row the caller validated (email, hash, and created_at); if a concurrent
        reset already consumed it, zero rows match, nothing else is written,
        and False is returned.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _password_reset_tokens.delete().where(
                    (_password_reset_tokens.c.email == reset.email)
                    & (_password_reset_tokens.c.token_hash == reset.token_hash)
                    & (_password_reset_tokens.c.created_at == reset.created_at)
                )
            )
            if result.rowcount != 1:
                return False
            conn.execute(_users.update().where(_users.c.id == user_id).values(hashed_password=hashed_password))
            _revoke_all(conn, user_id)
        return True

    # ------------------------------------------------------------------
    # Roles and permissions
    # ------------------------------------------------------------------

    def find_or_create_permission(self, name: str, guard_name: str = "web") -> int:
        """Return the permission id for name, creating the row on first use."""
        where = (_permissions.c.name == name) & (_permissions.c.guard_name == guard_name)
        with self.engine.connect() as conn:
            existing = conn.execute(select(_permissions.c.id).where(where)).scalar()
            if existing is not None:
                return existing
            try:
                result = conn.execute(_permissions.insert().values(name=name, guard_name=guard_name))
                conn.commit()
                return result.inserted_primary_key[0]
            except IntegrityError:
                # A concurrent seeder created it first.
                conn.rollback()
                return conn.execute(select(_permissions.c.id).where(where)).scalar_one()

    def find_or_create_role(self, name: str, guard_name: str = "web") -> Role:
        role = self.get_role(name, guard_name)
        if role is not None:
            return role
        with self.engine.connect() as conn:
            try:
                conn.execute(_roles.insert().values(name=name, guard_name=guard_name))
                conn.commit()
            except IntegrityError:
                conn.rollback()
        role = self.get_role(name, guard_name)
        assert role is not None
        return role

    def get_role(self, name: str, guard_name: str = "web") -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _roles.select().where((_roles.c.name == name) & (_roles.c.guard_name == guard_name))
            ).fetchone()
            if row is None:
                return None
            perms = _permission_names_by_role(conn, [row.id])
        return Role(id=row.id, name=row.name, guard_name=row.guard_name, permissions=perms.get(row.id, frozenset()))

    def list_roles(self, guard_name: str = "web") -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _roles.select().where(_roles.c.guard_name == guard_name).order_by(_roles.c.name)
            ).fetchall()
            perms = _permission_names_by_role(conn, [r.id for r in rows])
        return [
            Role(id=r.id, name=r.name, guard_name=r.guard_name, permissions=perms.get(r.id, frozenset()))
            for r in rows
        ]

    def sync_role_permissions(self, role_id: int, permission_names: list[str], guard_name: str = "web") -> None:
        """Replace the permission set of a role. Unknown permission names are created."""
        permission_ids = [self.find_or_create_permission(n, guard_name) for n in permission_names]
        with self.engine.begin() as conn:
            conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
            for pid in sorted(set(permission_ids)):
                conn.execute(_role_permissions.insert().values(role_id=role_id, permission_id=pid))

    def get_user_roles(self, user_id: int) -> list[Role]:
        """Return the user's roles with their current permission sets.

        Always read fresh from the join tables; nothing is cached between calls.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_roles)
                .join(_user_roles, _user_roles.c.role_id == _roles.c.id)
                .where(_user_roles.c.user_id == user_id)
                .order_by(_roles.c.name)
            ).fetchall()
            perms = _permission_names_by_role(conn, [r.id for r in rows])
        return [
            Role(id=r.id, name=r.name, guard_name=r.guard_name, permissions=perms.get(r.id, frozenset()))
            for r in rows
        ]

    def add_user_role(self, user_id: int, role_id: int) -> None:
        """Attach a role to a user. Attaching an already-held role is a no-op."""
        with self.engine.connect() as conn:
            held = conn.execute(
                select(func.count())
                .select_from(_user_roles)
                .where((_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role_id))
            ).scalar()
            if held:
                return
            try:
                conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id))
                conn.commit()
            except IntegrityError:
                conn.rollback()

    def remove_user_role(self, user_id: int, role_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_roles.delete().where((_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role_id))
            )
            conn.commit()
        return result.rowcount > 0

    def replace_user_roles(self, user_id: int, role_ids: list[int]) -> None:
        """Make role_ids the user's exact role set, in one transaction."""
        with self.engine.begin() as conn:
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            for rid in sorted(set(role_ids)):
                conn.execute(_user_roles.insert().values(user_id=user_id, role_id=rid))

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Shared statements
# ---------------------------------------------------------------------------


def _revoke_all(conn: Connection, user_id: int) -> int:
    now = _now_iso()
    result = conn.execute(
        _access_tokens.update()
        .where((_access_tokens.c.user_id == user_id) & (_access_tokens.c.revoked_at.is_(None)))
        .values(revoked_at=now)
    )
    conn.execute(_users.update().where(_users.c.id == user_id).values(tokens_invalid_before=now))
    return result.rowcount


def _permission_names_by_role(conn: Connection, role_ids: list[int]) -> dict[int, frozenset[str]]:
    if not role_ids:
        return {}
    rows = conn.execute(
        select(_role_permissions.c.role_id, _permissions.c.name)
        .join(_permissions, _permissions.c.id == _role_permissions.c.permission_id)
        .where(_role_permissions.c.role_id.in_(role_ids))
    ).fetchall()
    grouped: dict[int, set[str]] = {}
    for role_id, name in rows:
        grouped.setdefault(role_id, set()).add(name)
    return {rid: frozenset(names) for rid, names in grouped.items()}


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        first_name=row.first_name,
        last_name=row.last_name,
        phone=row.phone,
        date_of_birth=row.date_of_birth,
        email_verified_at=row.email_verified_at,
        created_at=row.created_at,
        last_login=row.last_login,
        deleted_at=row.deleted_at,
        tokens_invalid_before=row.tokens_invalid_before,
    )


def _row_to_token(row) -> AccessToken:
    return AccessToken(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        token_hash=row.token_hash,
        token_prefix=row.token_prefix,
        created_at=row.created_at,
        last_used_at=row.last_used_at,
        revoked_at=row.revoked_at,
    )
