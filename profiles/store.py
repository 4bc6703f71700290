"""
profiles/store.py -- SQLAlchemy Core persistence for viewing profiles.

Pattern: Repository + Data Mapper (same as auth/store.py). ProfileStore is
the repository; _row_to_profile is the mapper. parental_controls and
preferences are JSON objects serialized as TEXT.

Concurrency:
  UNIQUE(user_id, name) is a storage-level constraint; duplicate names
  surface as IntegrityError and the service maps them to DuplicateProfileName.

  The profile cap and the last-profile floor are check-then-act rules, so
  each runs inside one transaction that FIRST writes the owner's row in
  profile_owners (a lock_version bump). That write serializes every
  cap/floor transaction for the same user: a row lock on PostgreSQL, the
  database write lock on SQLite (taken before the transaction's first read,
  so the count that follows is never stale). Two concurrent creates at 4
  profiles therefore cannot both pass the count.

DB path: profiles/molunzaka_profiles.db unless PROFILES_DATABASE_URL is set.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from core.errors import CannotDeleteOnlyProfile, ProfileLimitExceeded
from profiles.models import DEFAULT_PARENTAL_CONTROLS, DEFAULT_PREFERENCES, Profile

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'molunzaka_profiles.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_profiles = Table(
    "profiles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("avatar", String(500)),
    Column("kids_mode", Integer, nullable=False, server_default="0"),
    Column("parental_controls", Text),  # JSON object
    Column("preferences", Text),  # JSON object
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("user_id", "name", name="uq_profiles_user_name"),
)

# One row per profile owner; written first in every cap/floor transaction.
_profile_owners = Table(
    "profile_owners",
    metadata,
    Column("user_id", Integer, primary_key=True, autoincrement=False),
    Column("lock_version", Integer, nullable=False, server_default="0"),
)

_UPDATABLE = {"name", "avatar", "kids_mode", "parental_controls", "preferences"}


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode; set per-connection because PRAGMAs are not pooled."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _lock_owner(conn: Connection, user_id: int) -> None:
    conn.execute(
        _profile_owners.update()
        .where(_profile_owners.c.user_id == user_id)
        .values(lock_version=_profile_owners.c.lock_version + 1)
    )


def _count(conn: Connection, user_id: int) -> int:
    return conn.execute(select(func.count()).select_from(_profiles).where(_profiles.c.user_id == user_id)).scalar()


class ProfileStore:
    """Repository for Profile entities.

    Usage:
        store = ProfileStore("sqlite:///:memory:")
        pid = store.create_profile(Profile(user_id=1, name="Main"), limit=5)
        store.list_profiles(1)
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
        metadata.create_all(self.engine)

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            return conn.execute(select(1)).scalar() == 1

    def _ensure_owner(self, user_id: int) -> None:
        with self.engine.connect() as conn:
            if conn.execute(select(_profile_owners.c.user_id).where(_profile_owners.c.user_id == user_id)).first():
                return
            try:
                conn.execute(_profile_owners.insert().values(user_id=user_id, lock_version=0))
                conn.commit()
            except IntegrityError:
                # Another request created the owner row first; that is all we needed.
                conn.rollback()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_profile(self, profile: Profile, limit: int) -> int:
        """Insert a profile unless the owner already has `limit` of them.

        Raises ProfileLimitExceeded when the cap is reached and
        sqlalchemy.exc.IntegrityError when (user_id, name) already exists.
        Neither case writes anything.
        """
        self._ensure_owner(profile.user_id)
        now = _now_iso()
        with self.engine.begin() as conn:
            _lock_owner(conn, profile.user_id)
            count = _count(conn, profile.user_id)
            if count >= limit:
                raise ProfileLimitExceeded(current_count=count, max_allowed=limit)
            result = conn.execute(
                _profiles.insert().values(
                    user_id=profile.user_id,
                    name=profile.name,
                    avatar=profile.avatar,
                    kids_mode=1 if profile.kids_mode else 0,
                    parental_controls=json.dumps(profile.parental_controls),
                    preferences=json.dumps(profile.preferences),
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def update_profile(self, profile_id: int, **fields) -> bool:
        """Update mutable fields on an existing profile.

        Accepted fields: name, avatar, kids_mode, parental_controls, preferences.
        Dict fields are serialized to JSON here. Raises IntegrityError on a
        rename that collides with another profile of the same owner.

        Returns True if a row was updated, False if profile_id was not found.
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Unknown profile fields: {unknown!r}")
        values = dict(fields)
        if "kids_mode" in values:
            values["kids_mode"] = 1 if values["kids_mode"] else 0
        for key in ("parental_controls", "preferences"):
            if key in values:
                values[key] = json.dumps(values[key])
        values["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_profiles.update().where(_profiles.c.id == profile_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def delete_profile(self, profile_id: int, user_id: int) -> bool:
        """Delete a profile unless it is the owner's last one.

        Raises CannotDeleteOnlyProfile when the owner has a single profile.
        Returns False if no profile with this id belongs to user_id.
        """
        self._ensure_owner(user_id)
        with self.engine.begin() as conn:
            _lock_owner(conn, user_id)
            if _count(conn, user_id) <= 1:
                raise CannotDeleteOnlyProfile()
            result = conn.execute(
                _profiles.delete().where((_profiles.c.id == profile_id) & (_profiles.c.user_id == user_id))
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_profile(self, profile_id: int) -> Profile | None:
        with self.engine.connect() as conn:
            row = conn.execute(_profiles.select().where(_profiles.c.id == profile_id)).fetchone()
        return _row_to_profile(row) if row is not None else None

    def list_profiles(self, user_id: int) -> list[Profile]:
        """Return the user's profiles, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _profiles.select()
                .where(_profiles.c.user_id == user_id)
                .order_by(_profiles.c.created_at, _profiles.c.id)
            ).fetchall()
        return [_row_to_profile(r) for r in rows]

    def count_profiles(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            return _count(conn, user_id)

    def oldest_profile(self, user_id: int) -> Profile | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _profiles.select()
                .where(_profiles.c.user_id == user_id)
                .order_by(_profiles.c.created_at, _profiles.c.id)
                .limit(1)
            ).fetchone()
        return _row_to_profile(row) if row is not None else None

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_profile(row) -> Profile:
    # Rows written before a settings key existed still get its default.
    parental = {**DEFAULT_PARENTAL_CONTROLS, **json.loads(row.parental_controls or "{}")}
    preferences = {**DEFAULT_PREFERENCES, **json.loads(row.preferences or "{}")}
    return Profile(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        avatar=row.avatar,
        kids_mode=bool(row.kids_mode),
        parental_controls=parental,
        preferences=preferences,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
