"""
tests/conftest.py -- Shared test fixtures for SitePass.

This module provides:
  - FakeClock: a settable Clock so expiry, lockout and rate-limit windows
    are tested at exact boundaries without sleeping
  - make_engine(): isolated named shared-memory SQLite engine per test
  - service: a SessionService on real SQL stores with a fake clock and a
    recording event listener
  - api_client: TestClient on the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment variables must be set before any api/auth/core import: the app
module reads Settings once at import time (allowed hosts, global ceiling).
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
# Most tests send no bypass header; keep the global slowapi ceiling out of the way.
os.environ.setdefault("GLOBAL_RATE_LIMIT", "100000/minute")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.limiter import limiter
from api.main import app, init_app_state
from auth.events import EventDispatcher, SessionEvent
from auth.sessions import SessionService
from auth.store import RefreshTokenStore, SqlAttemptStore, SqlRateWindowStore, UserStore, create_store_engine
from core.config import Settings

TEST_SECRET = "test-secret-key-that-is-long-enough-0123456789"
BYPASS_HEADER = "X-RateLimit-Bypass"
BYPASS_KEY = "ci-bypass-key"
START = datetime(2026, 1, 5, 8, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock whose time only moves when a test moves it."""

    def __init__(self, start: datetime = START) -> None:
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        self._now += timedelta(**kwargs)
        return self._now

    def set(self, when: datetime) -> None:
        self._now = when


class EventRecorder:
    def __init__(self) -> None:
        self.events: list[SessionEvent] = []

    def __call__(self, event: SessionEvent) -> None:
        self.events.append(event)

    def kinds(self) -> list[str]:
        return [e.kind for e in self.events]


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_engine(name: str | None = None) -> Engine:
    """Create an isolated named shared-memory SQLite engine with the auth schema."""
    name = name or uuid.uuid4().hex
    return create_store_engine(f"sqlite:///file:test_auth_{name}?mode=memory&cache=shared&uri=true")


def make_settings(**overrides) -> Settings:
    values = {
        "secret_key": TEST_SECRET,
        "debug": True,
        "environment": "test",
        "rate_limit_bypass_header": BYPASS_HEADER,
        "rate_limit_bypass_key": BYPASS_KEY,
    }
    values.update(overrides)
    return Settings(**values)


def build_service(engine: Engine, settings: Settings, clock: FakeClock, recorder: EventRecorder) -> SessionService:
    dispatcher = EventDispatcher()
    dispatcher.subscribe(recorder)
    return SessionService.from_settings(
        settings,
        users=UserStore(engine=engine),
        refresh_tokens=RefreshTokenStore(engine=engine),
        attempt_store=SqlAttemptStore(engine=engine),
        rate_store=SqlRateWindowStore(engine=engine),
        dispatcher=dispatcher,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    eng = make_engine()
    yield eng
    eng.dispose()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def service(engine: Engine, settings: Settings, clock: FakeClock, recorder: EventRecorder) -> SessionService:
    return build_service(engine, settings, clock, recorder)


def _patch_lifespan(settings: Settings, engine: Engine, clock: FakeClock, recorder: EventRecorder):
    """Return an async context manager that replaces the real lifespan.

    Wires a test engine, settings and fake clock into app.state through the
    same init_app_state() the real lifespan uses. Events are delivered inline
    so tests can assert on them without waiting for a thread pool.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        dispatcher = EventDispatcher()
        dispatcher.subscribe(recorder)
        init_app_state(app, settings, engine, clock=clock, dispatcher=dispatcher)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client(
    engine: Engine, settings: Settings, clock: FakeClock, recorder: EventRecorder
) -> Generator[TestClient, None, None]:
    """Yield a TestClient on the real app, backed by an isolated in-memory DB.

    One account exists before the client starts:
    ana@obra.example / "Pw#12345" with role "lider de obra".
    """
    limiter.reset()
    seed = build_service(engine, settings, clock, EventRecorder())
    seed.register("ana@obra.example", "Pw#12345", role="lider de obra")

    app.router.lifespan_context = _patch_lifespan(settings, engine, clock, recorder)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client


def present_refresh(client: TestClient, token: str | None) -> None:
    """Make the client send exactly this refresh cookie (or none) next."""
    client.cookies.clear()
    if token is not None:
        client.cookies.set("pm_rt", token)
