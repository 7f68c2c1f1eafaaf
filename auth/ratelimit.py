"""
auth/ratelimit.py -- Adaptive sliding-window rate limiter for sensitive endpoints.

Each (scope, key) pair owns a log of hit timestamps inside the window. A hit
is allowed while fewer than `limit` hits are in the log. Rejected hits are
logged too, up to limit * overage_factor, so a caller that keeps hammering
pushes its own retry time further out.

retry_after is the time until enough hits age out for the next request to
fit: with n hits in the log, the (n - limit)-th oldest must leave the window.
Waiting exactly that long and retrying is therefore always admitted.

Keys are attacker-chosen (identifiers), so idle keys are swept every
sweep_every hits and on each maintenance purge.

Stores: MemoryRateWindowStore below for one process and for tests;
SqlRateWindowStore (auth/store.py) when several workers share the counters.

This limiter covers login and refresh, keyed per IP and per identifier. The
coarse application-wide per-IP ceiling lives in api/limiter.py (slowapi).

The bypass decision is made by the caller (ClientContext.bypass_rate_limit);
the limiter itself has no notion of environments or headers.
"""

from __future__ import annotations

import hmac
import math
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, TypeVar

from auth.clock import Clock, SystemClock
from auth.models import RateDecision

T = TypeVar("T")


class RateWindowStore(Protocol):
    def apply(self, key: str, fn: Callable[[list[float]], tuple[list[float], T]]) -> T: ...

    def prune(self, cutoff: float) -> int: ...

    def clear(self) -> None: ...


class MemoryRateWindowStore:
    """In-process RateWindowStore. fn runs under a lock, so each hit is atomic."""

    def __init__(self) -> None:
        self._logs: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def apply(self, key: str, fn: Callable[[list[float]], tuple[list[float], T]]) -> T:
        with self._lock:
            hits, result = fn(list(self._logs.get(key, ())))
            if hits:
                self._logs[key] = hits
            else:
                self._logs.pop(key, None)
            return result

    def __len__(self) -> int:
        with self._lock:
            return len(self._logs)

    def prune(self, cutoff: float) -> int:
        """Drop keys whose newest hit is older than cutoff (epoch seconds)."""
        with self._lock:
            stale = [key for key, hits in self._logs.items() if max(hits) < cutoff]
            for key in stale:
                del self._logs[key]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._logs.clear()


@dataclass(frozen=True)
class RateLimitRule:
    scope: str  # e.g. "login:ip", "login:user", "refresh:ip"
    limit: int
    window_seconds: int
    overage_factor: int = 3


class RateLimiter:
    """Per-key sliding-window limiter with a computed Retry-After.

    Usage:
        limiter = RateLimiter(MemoryRateWindowStore())
        decision = limiter.hit(RateLimitRule("login:ip", 10, 60), "203.0.113.7")
        if not decision.allowed:
            raise RateLimited(decision.retry_after)
    """

    def __init__(self, store: RateWindowStore, clock: Clock | None = None, sweep_every: int = 1000) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._sweep_every = sweep_every
        self._hits_since_sweep = 0
        self._longest_window = 0

    def hit(self, rule: RateLimitRule, key: str) -> RateDecision:
        now = self._clock.now().timestamp()
        window = float(rule.window_seconds)
        cap = max(rule.limit, rule.limit * rule.overage_factor)

        def _hit(hits: list[float]) -> tuple[list[float], RateDecision]:
            hits = [ts for ts in hits if now - ts < window]
            allowed = len(hits) < rule.limit
            hits.append(now)
            if len(hits) > cap:
                hits = hits[-cap:]
            if allowed:
                return hits, RateDecision(allowed=True, retry_after=0, remaining=rule.limit - len(hits))
            # The next request fits once hits[:n - limit + 1] have left the window.
            pivot = hits[len(hits) - rule.limit]
            wait = pivot + window - now
            return hits, RateDecision(allowed=False, retry_after=max(1, math.ceil(wait)), remaining=0)

        decision = self._store.apply(f"{rule.scope}:{key}", _hit)
        self._longest_window = max(self._longest_window, rule.window_seconds)
        self._hits_since_sweep += 1
        if self._sweep_every and self._hits_since_sweep >= self._sweep_every:
            self.sweep()
        return decision

    def sweep(self, window_seconds: int | None = None) -> int:
        """Forget keys with no hit inside the window. Returns the number of keys dropped.

        Such a key would start from an empty log on its next hit anyway, so
        dropping it never changes a decision. window_seconds defaults to the
        longest window this limiter has applied.
        """
        self._hits_since_sweep = 0
        window = max(window_seconds or 0, self._longest_window)
        if not window:
            return 0
        return self._store.prune(self._clock.now().timestamp() - window)

    def reset(self) -> None:
        self._store.clear()


def bypass_granted(presented: str | None, configured_key: str) -> bool:
    """Constant-time check of a presented bypass key. An empty configured key never matches."""
    if not configured_key or not presented:
        return False
    return hmac.compare_digest(presented.encode(), configured_key.encode())
