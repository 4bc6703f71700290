"""
tests/conftest.py -- Shared test fixtures for Molunzaka tests.

This module provides:
  - RecordingNotifier: captures notifications instead of sending email
  - _make_test_stores(): isolated in-memory DBs for auth + profiles
  - _patch_lifespan(): wires test stores and services into app.state,
    bypassing real startup
  - api: module-scoped ApiHarness (TestClient + stores + user factory)
  - user_store / profile_store / notifier / auth_service / profile_manager:
    function-scoped unit fixtures on fresh databases

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The env vars below must be set before any core/auth import: get_settings()
is cached on first call and several modules read it at import time.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ["PASSWORD_PWNED_CHECK"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SMTP_HOST"] = ""

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import User
from auth.notifications import NotificationEvent
from auth.roles import assign_role, seed_roles_and_permissions
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import hash_password, issue_access_token
from core.config import get_settings
from profiles.pointer import ActiveProfileStore
from profiles.service import ProfileManager
from profiles.store import ProfileStore

STRONG_PASSWORD = "Str0ng!Pass"


# ---------------------------------------------------------------------------
# Notifier double
# ---------------------------------------------------------------------------


@dataclass
class SentNotification:
    event: NotificationEvent
    user: User
    payload: dict[str, Any]


@dataclass
class RecordingNotifier:
    """Synchronous notifier that keeps every notification in memory."""

    sent: list[SentNotification] = field(default_factory=list)
    fail: bool = False

    def notify(self, event: NotificationEvent, user: User, payload: dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("mail relay unreachable")
        self.sent.append(SentNotification(event, user, payload))

    def close(self) -> None:
        pass

    def last(self, event: NotificationEvent, email: str | None = None) -> SentNotification:
        for item in reversed(self.sent):
            if item.event == event and (email is None or item.user.email == email):
                return item
        raise AssertionError(f"No {event} notification recorded for {email}")


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _memory_url(name: str) -> str:
    return f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true"


def _make_test_stores(db_suffix: str) -> tuple[UserStore, ProfileStore]:
    """Create isolated named shared-memory SQLite stores for test isolation.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    user_store = UserStore(db_url=_memory_url(f"test_auth_{db_suffix}"))
    profile_store = ProfileStore(db_url=_memory_url(f"test_profiles_{db_suffix}"))
    return user_store, profile_store


def _patch_lifespan(user_store: UserStore, profile_store: ProfileStore, notifier: RecordingNotifier):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores, a recording notifier and fresh services
    into app.state so TestClient routes never touch the production databases
    or an SMTP relay.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        settings = get_settings()
        seed_roles_and_permissions(user_store)
        app.state.user_store = user_store
        app.state.profile_store = profile_store
        app.state.notifier = notifier
        app.state.auth_service = AuthService(user_store, notifier, settings)
        app.state.profile_manager = ProfileManager(profile_store, ActiveProfileStore(), settings)
        yield

    return test_lifespan


def unique_email(prefix: str = "user") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}@example.com"


def create_account(
    store: UserStore,
    *,
    email: str | None = None,
    password: str = STRONG_PASSWORD,
    verified: bool = True,
    roles: tuple[str, ...] = (),
) -> tuple[User, str]:
    """Insert a user directly and issue a bearer token. Returns (user, raw_token)."""
    user_id = store.create_user(
        User(
            email=email or unique_email(),
            first_name="Test",
            last_name="User",
            hashed_password=hash_password(password),
        )
    )
    if verified:
        store.mark_email_verified(user_id)
    user = store.get_by_id(user_id)
    for role in roles:
        assign_role(store, user, role)
    _, token = issue_access_token(store, user_id, "pytest")
    return user, token


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Module-scoped API harness -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    user_store: UserStore
    profile_store: ProfileStore
    notifier: RecordingNotifier

    def create_user(self, **kwargs) -> tuple[User, str]:
        return create_account(self.user_store, **kwargs)


@pytest.fixture(scope="module")
def api(request) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers and middleware but use isolated
    in-memory stores named after the test module.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    user_store, profile_store = _make_test_stores(suffix)
    notifier = RecordingNotifier()
    app.router.lifespan_context = _patch_lifespan(user_store, profile_store, notifier)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client, user_store, profile_store, notifier)

    user_store.close()
    profile_store.close()


# ---------------------------------------------------------------------------
# Function-scoped unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore(db_url=_memory_url(f"unit_auth_{uuid.uuid4().hex}"))
    seed_roles_and_permissions(store)
    yield store
    store.close()


@pytest.fixture
def profile_store() -> Generator[ProfileStore, None, None]:
    store = ProfileStore(db_url=_memory_url(f"unit_profiles_{uuid.uuid4().hex}"))
    yield store
    store.close()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def auth_service(user_store: UserStore, notifier: RecordingNotifier) -> AuthService:
    return AuthService(user_store, notifier, get_settings())


@pytest.fixture
def pointer() -> ActiveProfileStore:
    return ActiveProfileStore()


@pytest.fixture
def profile_manager(profile_store: ProfileStore, pointer: ActiveProfileStore) -> ProfileManager:
    return ProfileManager(profile_store, pointer, get_settings())
