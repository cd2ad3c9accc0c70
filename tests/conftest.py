"""
tests/conftest.py -- Shared test fixtures for TrustAuth unit and integration tests.

This module provides:
  - FakeClock / clock: a controllable clock injected into issuer and coordinators
  - engine, users, ledger, resets: per-test SQLite stores in tmp_path
  - issuer, auth, logout, password_reset: coordinators wired over those stores
  - make_user: factory fixture that inserts an active account directly
  - _patch_lifespan(): wires real services over a test DB into app.state
  - api_client: module-scoped TestClient over the real FastAPI app

Design: every test gets its own SQLite file under tmp_path. File databases
use a normal connection pool, so the coordinators' transactions and the
reads around them see one consistent database from any thread.

DEBUG and BCRYPT_ROUNDS must be set before any auth/core import so
get_settings() auto-generates SECRET_KEY instead of raising, and bcrypt runs
at its minimum work factor.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, build_services
from auth.ledger import ResetTokenLedger, TokenLedger
from auth.lockout import LockoutPolicy
from auth.models import User
from auth.password_reset import PasswordResetCoordinator
from auth.service import AuthenticationCoordinator, LogoutCoordinator
from auth.store import UserStore, create_auth_engine
from auth.tokens import TokenIssuer, hash_password
from core.config import get_settings

TEST_SECRET = "test-secret-key-for-trustauth-0123456789abcdef"
ACCESS_LIFETIME = 900
REFRESH_LIFETIME = 7 * 24 * 3600
START = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Clock and notification doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingNotifier:
    """NotificationSender that keeps every reset link instead of sending it."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send_password_reset(self, email: str, token: str, reset_url: str) -> None:
        self.sent.append((email, token, reset_url))

    @property
    def last_token(self) -> str:
        return self.sent[-1][1]


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(tmp_path):
    engine = create_auth_engine(f"sqlite:///{tmp_path / 'auth.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def users(engine) -> UserStore:
    return UserStore(engine, LockoutPolicy(5))


@pytest.fixture
def ledger(engine) -> TokenLedger:
    return TokenLedger(engine)


@pytest.fixture
def resets(engine) -> ResetTokenLedger:
    return ResetTokenLedger(engine)


@pytest.fixture
def issuer(clock) -> TokenIssuer:
    return TokenIssuer(TEST_SECRET, ACCESS_LIFETIME, REFRESH_LIFETIME, clock=clock)


@pytest.fixture
def make_user(users):
    """Insert an active account and return it as stored.

    Usage: alice = make_user("alice@x.com", "correct123")
    """

    def _make(email: str, password: str = "correct123", username: str | None = None, **fields) -> User:
        user = User(
            username=username or email.split("@", 1)[0],
            email=email,
            hashed_password=hash_password(password),
            role_ids=fields.pop("role_ids", [1]),
            **fields,
        )
        return users.get_by_id(users.create_user(user))

    return _make


# ---------------------------------------------------------------------------
# Coordinator fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def auth(users, ledger, issuer, clock) -> AuthenticationCoordinator:
    return AuthenticationCoordinator(users=users, ledger=ledger, issuer=issuer, clock=clock)


@pytest.fixture
def logout(users, ledger, issuer) -> LogoutCoordinator:
    return LogoutCoordinator(users=users, ledger=ledger, issuer=issuer)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def password_reset(users, resets, ledger, notifier, clock) -> PasswordResetCoordinator:
    return PasswordResetCoordinator(
        users=users,
        resets=resets,
        notifier=notifier,
        clock=clock,
        frontend_url="https://app.example.com/",
        token_ledger=ledger,
    )


# ---------------------------------------------------------------------------
# API integration
# ---------------------------------------------------------------------------


def _patch_lifespan(db_url: str):
    """Return an async context manager that replaces the real lifespan.

    Runs the production wiring (build_services) against the test database.
    The housekeeping task is a long-sleeping coroutine so shutdown still has
    a real asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, get_settings(), db_url=db_url)
        app.state.housekeeping_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.housekeeping_task.cancel()
        app.state.user_store.close()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[TestClient, None, None]:
    """Yield a TestClient over the real app with an isolated database.

    The rate limiter is disabled so repeated logins across a module do not
    trip it; the rate-limit test re-enables it explicitly.
    """
    db_path = tmp_path_factory.mktemp("api") / "auth.db"
    app.router.lifespan_context = _patch_lifespan(f"sqlite:///{db_path}")
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    limiter.enabled = True
