"""
tests/conftest.py -- Shared test fixtures for the Spend Tracker auth tests.

This module provides:
  - make_settings(): Settings with a fixed test signing key
  - memory_url(): unique named shared-memory SQLite URI
  - build_services(): stores + services wired the way api/main.py wires them
  - create_user(): insert a user with a bcrypt-hashed password
  - set_user_columns(): stage lock/disabled states without a store API
  - services: function-scoped service bundle for unit tests
  - api_client: TestClient with a patched lifespan for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool and the audit
recorder writes from its own worker thread. Plain :memory: DBs are
per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any api/ import so the module-level
get_settings() call auto-generates SECRET_KEY instead of raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: Set DEBUG before any api/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from audit.recorder import LoginAuditRecorder
from audit.store import LoginHistoryStore
from auth.login import LoginService
from auth.mfa import MFAService
from auth.models import User
from auth.passwords import hash_password
from auth.store import UserStore, _users
from auth.tokens import TokenService
from core.config import Settings

TEST_SECRET_KEY = "spendtracker-test-signing-key-0123456789abcdef"
TEST_PASSWORD = "correct-horse-battery"

CHROME_WINDOWS_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36"
)


def make_settings(**overrides) -> Settings:
    values = {"debug": True, "secret_key": TEST_SECRET_KEY, "geoip_enabled": False}
    values.update(overrides)
    return Settings(**values)


def memory_url(name: str) -> str:
    """Return a fresh named shared-memory SQLite URL."""
    return f"sqlite:///file:{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@dataclass
class Services:
    settings: Settings
    user_store: UserStore
    history_store: LoginHistoryStore
    tokens: TokenService
    mfa: MFAService
    recorder: LoginAuditRecorder
    login: LoginService

    def close(self) -> None:
        self.recorder.close()
        self.history_store.close()
        self.user_store.close()


def build_services(
    settings: Settings | None = None,
    auth_url: str | None = None,
    audit_url: str | None = None,
) -> Services:
    settings = settings or make_settings()
    user_store = UserStore(db_url=auth_url or memory_url("test_auth"))
    history_store = LoginHistoryStore(db_url=audit_url or memory_url("test_audit"))
    tokens = TokenService(settings)
    mfa = MFAService(user_store, settings)
    recorder = LoginAuditRecorder(history_store, settings)
    login = LoginService(user_store, tokens, mfa, recorder, settings)
    return Services(settings, user_store, history_store, tokens, mfa, recorder, login)


def create_user(
    store: UserStore,
    email: str = "alex@example.com",
    password: str = TEST_PASSWORD,
    role: str = "user",
) -> User:
    user_id = store.create_user(User(email=email, role=role, hashed_password=hash_password(password)))
    return store.get_by_id(user_id)


def set_user_columns(store: UserStore, user_id: int, **values) -> None:
    """Write users columns directly to stage lockout or disabled states."""
    with store.engine.begin() as conn:
        conn.execute(_users.update().where(_users.c.id == user_id).values(**values))


def _patch_lifespan(services: Services):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test services into app.state so TestClient routes see
    isolated test DBs rather than the configured databases.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.token_service = services.tokens
        app.state.user_store = services.user_store
        app.state.history_store = services.history_store
        app.state.audit_recorder = services.recorder
        app.state.mfa_service = services.mfa
        app.state.login_service = services.login
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Every test starts with an empty login rate-limit window."""
    limiter.reset()


@pytest.fixture
def services() -> Generator[Services, None, None]:
    bundle = build_services()
    yield bundle
    bundle.close()


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, Services, User], None, None]:
    """Yield (client, services, user) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use isolated in-memory stores. The
    user is created before the client starts; its password is TEST_PASSWORD.
    """
    bundle = build_services()
    user = create_user(bundle.user_store, email="api-user@example.com")

    app.router.lifespan_context = _patch_lifespan(bundle)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, bundle, user

    bundle.close()


def login_token(client: TestClient, email: str, password: str = TEST_PASSWORD, **extra) -> str:
    """POST /auth/login and return the bearer token.

    The session cookie the response sets is dropped so every later request
    authenticates only through the headers the test passes explicitly.
    """
    resp = client.post("/api/v1/auth/login", json={"email": email, "password": password, **extra})
    assert resp.status_code == 200, resp.text
    client.cookies.clear()
    return resp.json()["data"]["access_token"]
