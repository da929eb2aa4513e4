"""
tests/conftest.py -- Shared test fixtures for PawnDesk.

This module provides:
  - FrozenClock: a settable clock injected into AccountSecurityGuard and
    CounterCache so lockout and window expiry can be tested without sleeping
  - unit fixtures: user_store, counter_cache, guard, authz (function scoped)
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api: ApiContext with a TestClient, an administrator and a cashier

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import partial

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, wire_security
from auth.attempts import AttemptTracker
from auth.catalog import default_catalog
from auth.models import Role, User
from auth.permissions import AuthorizationService
from auth.security import AccountSecurityGuard
from auth.store import UserStore
from auth.tokens import SessionTokenIssuer, hash_password
from cache.store import CounterCache

ADMIN_PASSWORD = "Admin#2024pass"
CASHIER_PASSWORD = "Caja#2024pass"
TEST_SECRET = "x" * 64


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


def _memory_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_user(store: UserStore, username: str, role: Role = Role.CASHIER, password: str = CASHIER_PASSWORD, **extra) -> User:
    """Insert a user and return it as loaded back from the store."""
    uid = store.create_user(
        User(
            username=username,
            email=f"{username}@example.com",
            name=username.title(),
            role=role,
            hashed_password=hash_password(password),
            **extra,
        )
    )
    return store.get_by_id(uid)


# ---------------------------------------------------------------------------
# Unit fixtures -- fresh stores per test
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore(db_url=_memory_url("test_auth"))
    yield store
    store.close()


@pytest.fixture
def user_factory(user_store: UserStore):
    """Create users in the test store: user_factory("ana", role=Role.SELLER)."""
    return partial(make_user, user_store)


@pytest.fixture
def counter_cache(clock: FrozenClock) -> Generator[CounterCache, None, None]:
    cache = CounterCache(":memory:", clock=clock.timestamp)
    yield cache
    cache.close()


@pytest.fixture
def tokens(user_store: UserStore) -> SessionTokenIssuer:
    return SessionTokenIssuer(user_store, secret_key=TEST_SECRET, default_ttl=3600)


@pytest.fixture
def attempts(counter_cache: CounterCache) -> AttemptTracker:
    return AttemptTracker(counter_cache)


@pytest.fixture
def guard(user_store: UserStore, attempts: AttemptTracker, tokens: SessionTokenIssuer, clock: FrozenClock) -> AccountSecurityGuard:
    return AccountSecurityGuard(user_store, attempts, tokens, clock=clock)


@pytest.fixture
def authz(user_store: UserStore) -> AuthorizationService:
    service = AuthorizationService(user_store, default_catalog())
    service.seed_catalog()
    return service


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore, cache: CounterCache):
    """Return an async context manager that replaces the real lifespan.

    Runs the real wiring against pre-created test stores so TestClient routes
    see isolated in-memory DBs rather than the production databases.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_security(app, user_store, cache)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@dataclass
class ApiContext:
    client: TestClient
    user_store: UserStore
    admin: User
    admin_token: str
    cashier: User
    cashier_token: str
    admin_password: str = ADMIN_PASSWORD
    cashier_password: str = CASHIER_PASSWORD

    def headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    def reset_ip_counter(self, ip: str = "testclient") -> None:
        AttemptTracker(self.client.app.state.cache).clear(ip)

    def create_user(self, username: str, role: Role = Role.CASHIER, password: str = CASHIER_PASSWORD, **extra) -> User:
        return make_user(self.user_store, username, role=role, password=password, **extra)

    def token_for(self, user: User) -> str:
        return self.client.app.state.tokens.issue(user).token

    def login(self, username: str, password: str):
        return self.client.post("/api/v1/auth/login", json={"username": username, "password": password})


@pytest.fixture(scope="module")
def api() -> Generator[ApiContext, None, None]:
    """Yield an ApiContext for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use isolated in-memory stores. The
    administrator and the cashier (with cashier role defaults) are created
    before the client starts; their tokens are issued once it is up.

    The slowapi login limit is switched off: lockout behaviour is what these
    tests exercise, and one module makes more than ten login calls.
    """
    user_store = UserStore(db_url=_memory_url("test_api"))
    cache = CounterCache(":memory:")
    admin = make_user(user_store, "testadmin", role=Role.ADMINISTRATOR, password=ADMIN_PASSWORD)
    cashier = make_user(user_store, "testcajero", role=Role.CASHIER, password=CASHIER_PASSWORD)

    app.router.lifespan_context = _patch_lifespan(user_store, cache)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        state = client.app.state
        state.authz.assign_default_permissions(cashier)
        yield ApiContext(
            client=client,
            user_store=user_store,
            admin=admin,
            admin_token=state.tokens.issue(admin).token,
            cashier=cashier,
            cashier_token=state.tokens.issue(cashier).token,
        )

    limiter.enabled = True
    cache.close()
    user_store.close()
