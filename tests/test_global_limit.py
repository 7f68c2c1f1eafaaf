"""
tests/test_global_limit.py -- The application-wide slowapi ceiling.

Covers:
  - Over the ceiling: 429 in the error envelope with the seconds left in the
    current window as Retry-After
  - The bypass key lifts the ceiling outside production; a wrong key does not

The module limiter is sized far above any test run, so these tests swap a
tight limiter into app.state for their duration.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from slowapi import Limiter
from slowapi.util import get_remote_address

from api.main import app
from tests.conftest import BYPASS_HEADER, BYPASS_KEY


@pytest.fixture
def tight_ceiling(api_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> Limiter:
    tight = Limiter(key_func=get_remote_address, default_limits=["2/minute"], storage_uri="memory://")
    monkeypatch.setattr(app.state, "limiter", tight)
    return tight


def test_over_ceiling_is_429_with_time_left(api_client: TestClient, tight_ceiling: Limiter) -> None:
    statuses = [api_client.get("/api/v1/auth/me").status_code for _ in range(3)]
    assert statuses == [401, 401, 429]

    resp = api_client.get("/api/v1/auth/me")
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "rate_limited"
    assert 1 <= int(resp.headers["Retry-After"]) <= 60


def test_bypass_key_lifts_ceiling(api_client: TestClient, tight_ceiling: Limiter) -> None:
    headers = {BYPASS_HEADER: BYPASS_KEY}
    statuses = [api_client.get("/api/v1/auth/me", headers=headers).status_code for _ in range(5)]
    assert statuses == [401] * 5


def test_wrong_bypass_key_keeps_ceiling(api_client: TestClient, tight_ceiling: Limiter) -> None:
    headers = {BYPASS_HEADER: "guess"}
    statuses = [api_client.get("/api/v1/auth/me", headers=headers).status_code for _ in range(3)]
    assert statuses[-1] == 429
