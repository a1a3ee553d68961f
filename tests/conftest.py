"""
tests/conftest.py -- Shared test fixtures for the Sentinel identity core.

This module provides:
  - FakeClock: injectable clock so lockout, expiry, and rate windows are tested
    by advancing time instead of sleeping
  - CapturingNotifier: ResetNotifier that keeps issued reset tokens for tests
  - services: a full AuthServices graph on an isolated database
  - api_client: TestClient over the real app with a patched lifespan

Design: each test gets its own SQLite file under tmp_path. API key usage is
recorded from a worker thread, and file-backed WAL databases let that thread
write while the test thread reads; a shared-cache in-memory database would
raise "table is locked" instead of waiting.

The DEBUG env var must be set before any core/ import so Settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.models import User
from auth.services import AuthServices, build_services
from core.config import Settings

TEST_SECRET = "test-secret-key-that-is-long-enough-0123456789"
STRONG_PASSWORD = "Blue-Falcon-42x"
OTHER_STRONG_PASSWORD = "Green-Otter-77q"


class FakeClock:
    """Callable clock returning a controllable aware UTC datetime."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class CapturingNotifier:
    def __init__(self) -> None:
        self.delivered: list[tuple[str, str, datetime]] = []

    def deliver(self, user: User, token: str, expires_at: datetime) -> None:
        self.delivered.append((user.id, token, expires_at))

    @property
    def last_token(self) -> str:
        return self.delivered[-1][1]


def make_settings(**overrides) -> Settings:
    values = {"debug": True, "secret_key": TEST_SECRET}
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> CapturingNotifier:
    return CapturingNotifier()


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'identity.db'}"


@pytest.fixture
def services(db_url, clock, notifier) -> Generator[AuthServices, None, None]:
    svc = build_services(make_settings(), db_url=db_url, clock=clock, notifier=notifier)
    yield svc
    svc.close()


@pytest.fixture
def alice(services) -> User:
    return services.guard.register("alice", "alice@example.com", STRONG_PASSWORD, role_id="ROLE-ANALYST")


def _patch_lifespan(services: AuthServices):
    """Return a lifespan that wires pre-built test services into app.state."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.services = services
        yield

    return test_lifespan


@pytest.fixture
def api_client(services) -> Generator[TestClient, None, None]:
    """TestClient over the real app and routes, backed by the isolated services.

    base_url uses localhost so TrustedHostMiddleware admits the requests.
    The slowapi counters are reset so per-IP login limits from one test do
    not leak into the next.
    """
    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(services)
    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client
    limiter.reset()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
