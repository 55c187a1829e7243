"""
tests/conftest.py -- Shared test fixtures for the identity service tests.

This module provides:
  - MutableClock / clock: a settable clock injected into TokenService so token
    and staging expiry can be tested at exact boundaries
  - RecordingNotifier: notification fake that records every call
  - store / tokens / policy / resolver / accounts: unit-level wiring over an
    in-memory CredentialStore
  - _patch_lifespan(): wires a test store into app.state, bypassing real startup
  - api_client: TestClient with a registered user's JWT for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the API fixture because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to each
worker thread. Unit fixtures run on one thread and use plain :memory:.

DEBUG, LOGIN_RATE_LIMIT and ALLOWED_HOSTS must be set before any auth/api
import: get_settings() is cached at first call and the route decorators read
the rate limit at import time.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_services
from auth.accounts import AccountService
from auth.models import ACCOUNT_LINK, EMAIL_CONFIRM, PASSWORD_RESET, User
from auth.policy import PasswordPolicy
from auth.resolver import IdentityResolver, ResolverConfig
from auth.store import CredentialStore
from auth.token_service import TokenService
from auth.tokens import create_access_token, hash_password
from core.config import get_settings

START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

STRONG_PASSWORD = "Tr1cky!Harbor"
GOV_USER = "alice.smith@agency.gov"


class MutableClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingNotifier:
    """Notification fake: records (kind, recipient, payload) tuples."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple[str, str, object]] = []

    def _record(self, kind: str, recipient: str, payload: object) -> None:
        self.sent.append((kind, recipient, payload))
        if self.fail:
            raise ConnectionError("mail relay unreachable")

    def send_welcome(self, user: User) -> None:
        self._record("welcome", user.username, user)

    def send_password_reset(self, email: str, token) -> None:
        self._record("password_reset", email, token)

    def send_link_confirmation(self, email: str, token) -> None:
        self._record("link_confirmation", email, token)

    def of_kind(self, kind: str) -> list[tuple[str, str, object]]:
        return [entry for entry in self.sent if entry[0] == kind]


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def tokens(store: CredentialStore, clock: MutableClock) -> TokenService:
    windows = {
        PASSWORD_RESET: timedelta(hours=24),
        EMAIL_CONFIRM: timedelta(hours=24),
        ACCOUNT_LINK: timedelta(hours=1),
    }
    return TokenService(store, windows, clock=clock)


@pytest.fixture
def policy() -> PasswordPolicy:
    return PasswordPolicy()


@pytest.fixture
def resolver_config() -> ResolverConfig:
    return ResolverConfig(federated_login_enabled=True, max_failed_attempts=5, staging_ttl=timedelta(hours=24))


@pytest.fixture
def resolver(store: CredentialStore, tokens: TokenService, resolver_config: ResolverConfig) -> IdentityResolver:
    return IdentityResolver(store, tokens, resolver_config)


@pytest.fixture
def accounts(store: CredentialStore, tokens: TokenService, policy: PasswordPolicy) -> AccountService:
    return AccountService(store, tokens, policy)


@pytest.fixture
def alice(store: CredentialStore) -> User:
    """An active local account with STRONG_PASSWORD."""
    user_id = store.insert_user(User(username=GOV_USER, name="Alice Smith"), hash_password(STRONG_PASSWORD))
    return store.find_user_by_id(user_id)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> CredentialStore:
    """Create an isolated named shared-memory store.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    return CredentialStore(db_url=f"sqlite:///file:test_identity_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(store: CredentialStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and the real workflow objects into app.state, swaps
    the notifier for a RecordingNotifier, and starts a long-sleeping task in
    place of the expiry sweep (a real asyncio.Task is needed for .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, store, get_settings())
        app.state.notifier = RecordingNotifier()
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The user (GOV_USER / STRONG_PASSWORD) is created before the client starts;
    the JWT is for use in Authorization headers.
    """
    store = _make_test_store(uuid.uuid4().hex[:8])
    uid = store.insert_user(User(username=GOV_USER, name="Alice Smith"), hash_password(STRONG_PASSWORD))
    token = create_access_token(user_id=uid, username=GOV_USER, is_admin=False, expire_seconds=3600)

    app.router.lifespan_context = _patch_lifespan(store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, uid

    store.close()


@pytest.fixture
def make_notifier():
    """Factory for RecordingNotifier instances; pass fail=True for a notifier whose sends raise."""
    return RecordingNotifier
