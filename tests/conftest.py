"""
tests/conftest.py -- Shared test fixtures for the Tetris API test suite.

This module provides:
  - store / audit / token_service / auth_service: service objects over an
    isolated in-memory database, for unit tests
  - user_factory: creates users directly in the store
  - api_client: TestClient over the real app with a patched lifespan, a fresh
    database and fresh rate-limit counters, already holding a CSRF token

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
Each fixture instance gets a uuid in the name, so no test sees another's rows.

The environment must be set before any auth/core import: DEBUG so that
get_settings() auto-generates SECRET_KEY, and the minimum bcrypt cost so
hashing does not dominate the run time.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

# CRITICAL: Set before any auth/core import -- settings are read once.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("BACKUP_CODE_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient
from limits.storage import MemoryStorage

from api.limiter import limiter
from api.main import app, configure_services
from auth.audit import AuditLog
from auth.csrf import CSRF_COOKIE, CSRF_HEADER
from auth.models import User
from auth.ratelimit import RateLimitService
from auth.service import AuthService
from auth.store import AuthStore
from auth.token_service import TokenService
from auth.tokens import hash_password
from core.config import Settings, get_settings

PASSWORD = "Passw0rd!"


def _memory_db_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Service-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings() -> Settings:
    return get_settings()


@pytest.fixture()
def store() -> Generator[AuthStore, None, None]:
    auth_store = AuthStore(db_url=_memory_db_url("test_auth"))
    yield auth_store
    auth_store.close()


@pytest.fixture()
def audit(store: AuthStore) -> AuditLog:
    return AuditLog(store)


@pytest.fixture()
def token_service(store: AuthStore, audit: AuditLog, settings: Settings) -> TokenService:
    return TokenService(store, audit, settings)


@pytest.fixture()
def auth_service(store: AuthStore, token_service: TokenService, audit: AuditLog, settings: Settings) -> AuthService:
    return AuthService(store, token_service, audit, settings)


@pytest.fixture()
def user_factory(store: AuthStore) -> Callable[..., User]:
    """Return a function that inserts a user and returns it as stored.

    Users are verified and active by default so they can log in immediately.
    """

    def make(
        email: str = "alice@example.com",
        password: str | None = PASSWORD,
        *,
        roles: list[str] | None = None,
        verified: bool = True,
        active: bool = True,
        provider: str = "LOCAL",
        provider_id: str | None = None,
    ) -> User:
        user = User(
            email=email,
            hashed_password=hash_password(password) if password else None,
            roles=roles or ["USER"],
            is_email_verified=verified,
            is_active=active,
            provider=provider,
            provider_id=provider_id,
        )
        user_id = store.create_user(user)
        return store.get_by_id(user_id)

    return make


# ---------------------------------------------------------------------------
# Integration fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AuthStore, rate_limiter: RateLimitService):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and counters into app.state so routes never touch
    the on-disk database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        configure_services(app, get_settings(), store=store, rate_limiter=rate_limiter)
        yield

    return test_lifespan


@pytest.fixture()
def api_client(store: AuthStore) -> Generator[TestClient, None, None]:
    """Yield a TestClient whose requests already carry a valid CSRF token.

    A fresh client per test keeps cookie jars and rate-limit windows from
    leaking between tests.
    """
    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(store, RateLimitService(MemoryStorage()))

    with TestClient(app, raise_server_exceptions=True) as client:
        resp = client.get("/auth/csrf")
        assert resp.status_code == 200
        client.headers[CSRF_HEADER] = client.cookies[CSRF_COOKIE]
        yield client
