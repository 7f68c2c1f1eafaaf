"""
auth/clock.py -- Injectable source of the current time.

Every expiry and lockout comparison in auth/ goes through a Clock so tests can
pin boundaries (exactly-at-expiry, one second before unlock) without sleeping.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock UTC time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
