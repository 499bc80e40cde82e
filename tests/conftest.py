"""
tests/conftest.py -- Shared test fixtures for Credgate unit and integration tests.

This module provides:
  - FakeClock: a controllable UTC clock so lockout and expiry can be tested
    without sleeping
  - credential_store / session_store: isolated in-memory SQLite stores
  - tokens: a TokenService with fixed, distinct test secrets
  - auth_service: AuthService wired to the above
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: the API fixture uses named shared-memory SQLite URIs (not plain
:memory:) because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

Environment variables must be set before any api/ import: api.main reads
get_settings() at import time to configure middleware and rate limits.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any auth/core/api import so get_settings() can
# auto-generate secrets in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("SESSION_PURGE_INTERVAL_SECONDS", "0")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.service import AuthService
from auth.sessions import SessionStore
from auth.store import CredentialStore
from auth.tokens import TokenService

ACCESS_SECRET = "a" * 32 + "-access-test-secret"
REFRESH_SECRET = "r" * 32 + "-refresh-test-secret"

STRONG_PASSWORD = "Passw0rd!"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def credential_store(clock: FakeClock) -> Generator[CredentialStore, None, None]:
    store = CredentialStore("sqlite:///:memory:", clock=clock)
    yield store
    store.close()


@pytest.fixture
def session_store(clock: FakeClock) -> Generator[SessionStore, None, None]:
    store = SessionStore("sqlite:///:memory:", clock=clock)
    yield store
    store.close()


@pytest.fixture
def tokens() -> TokenService:
    return TokenService(access_secret=ACCESS_SECRET, refresh_secret=REFRESH_SECRET)


@pytest.fixture
def auth_service(
    credential_store: CredentialStore,
    session_store: SessionStore,
    tokens: TokenService,
    clock: FakeClock,
) -> AuthService:
    return AuthService(credential_store, session_store, tokens, clock=clock)


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test AuthService into app.state so TestClient routes
    see isolated test stores rather than the configured database. The sweep
    task is not started.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_service = service
        app.state.sweep_task = None
        yield

    return test_lifespan


@pytest.fixture
def api_client(clock: FakeClock, tokens: TokenService) -> Generator[tuple[TestClient, AuthService, FakeClock], None, None]:
    """Yield (client, auth_service, clock) for HTTP integration tests.

    Each test gets its own shared-memory database so state never leaks
    between tests. The clock is shared with the service, so tests can
    advance time between requests.
    """
    db_url = f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    credentials = CredentialStore(db_url, clock=clock)
    sessions = SessionStore(db_url, clock=clock)
    service = AuthService(credentials, sessions, tokens, clock=clock)

    app.router.lifespan_context = _patch_lifespan(service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, service, clock

    credentials.close()
    sessions.close()
