"""
auth/lockout.py -- Brute-force lockout state machine.

States per login identifier:

    Active --failure--> Active                  (counter++ while under threshold)
    Active --Nth failure--> Locked(now + cooldown)  (counter reset to 0)
    Locked --now >= until--> Active
    any    --success--> Active                  (counter 0, lock cleared)

Failures further apart than the counting window restart the count at 1.
Cooldown backs off on repeated lockouts: base * multiplier ** (lock_count - 1),
capped at max_duration. lock_count is history and is not cleared by success.
Keys that are unlocked and idle for longer than both the window and
max_duration are dropped by purge_stale(), together with their history.

Counters are keyed by the normalized identifier, not by user id, so an
identifier with no account locks exactly like a real one.

The store behind the tracker is an AttemptStore: SqlAttemptStore (auth/store.py)
for multi-process deployments, MemoryAttemptStore below for a single process
and for tests. Both apply transitions atomically per key.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Protocol

from auth.clock import Clock, SystemClock
from auth.models import AttemptState

logger = logging.getLogger("sitepass.auth.lockout")


class AttemptStore(Protocol):
    def get(self, key: str) -> AttemptState: ...

    def update(self, key: str, transition: Callable[[AttemptState], AttemptState]) -> AttemptState: ...

    def delete(self, key: str) -> None: ...

    def purge(self, now: datetime, idle: timedelta) -> int: ...


class MemoryAttemptStore:
    """In-process AttemptStore. One lock guards the whole map; keys are independent."""

    def __init__(self) -> None:
        self._states: dict[str, AttemptState] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> AttemptState:
        with self._lock:
            state = self._states.get(key)
            return replace(state) if state is not None else AttemptState(key=key)

    def update(self, key: str, transition: Callable[[AttemptState], AttemptState]) -> AttemptState:
        with self._lock:
            current = self._states.get(key) or AttemptState(key=key)
            state = transition(replace(current))
            self._states[key] = state
            return replace(state)

    def delete(self, key: str) -> None:
        with self._lock:
            self._states.pop(key, None)

    def purge(self, now: datetime, idle: timedelta) -> int:
        with self._lock:
            stale = [key for key, state in self._states.items() if is_stale(state, now, idle)]
            for key in stale:
                del self._states[key]
            return len(stale)


@dataclass(frozen=True)
class LockoutPolicy:
    max_attempts: int = 5
    window: timedelta = timedelta(minutes=15)
    base_duration: timedelta = timedelta(minutes=5)
    backoff_multiplier: float = 2.0
    max_duration: timedelta = timedelta(hours=24)

    def cooldown(self, lock_count: int) -> timedelta:
        """Lock duration for the lock_count-th lockout (1-based).

        Grows in float seconds and stops at max_duration, so any lock_count
        is safe to pass.
        """
        seconds = self.base_duration.total_seconds()
        cap = self.max_duration.total_seconds()
        if self.backoff_multiplier > 1:
            for _ in range(max(0, lock_count - 1)):
                if seconds >= cap:
                    break
                seconds *= self.backoff_multiplier
        return timedelta(seconds=min(seconds, cap))


def is_locked(state: AttemptState, now: datetime) -> bool:
    return state.locked_until is not None and now < state.locked_until


def is_stale(state: AttemptState, now: datetime, idle: timedelta) -> bool:
    """Unlocked, and no failure recorded within idle."""
    if is_locked(state, now):
        return False
    return state.last_failed_at is None or now - state.last_failed_at >= idle


class AttemptTracker:
    """Counts consecutive failed logins and decides lockouts.

    Usage:
        tracker = AttemptTracker(MemoryAttemptStore(), LockoutPolicy(max_attempts=5))
        if tracker.locked_until(key): ...        # short-circuit before the verifier
        state = tracker.record_failure(key)      # returns the new state
        tracker.record_success(key)
    """

    def __init__(self, store: AttemptStore, policy: LockoutPolicy | None = None, clock: Clock | None = None) -> None:
        self._store = store
        self.policy = policy or LockoutPolicy()
        self._clock = clock or SystemClock()

    def locked_until(self, key: str) -> datetime | None:
        """Return the unlock time if key is currently locked, else None."""
        state = self._store.get(key)
        if is_locked(state, self._clock.now()):
            return state.locked_until
        return None

    def record_failure(self, key: str) -> AttemptState:
        """Count one failed attempt; lock the key when it reaches the threshold."""
        now = self._clock.now()
        policy = self.policy

        def _transition(state: AttemptState) -> AttemptState:
            if is_locked(state, now):
                # Already locked (a concurrent failure got there first).
                return state
            if state.locked_until is not None:
                # Lock elapsed: back to Active with a clean counter.
                state.locked_until = None
                state.failed_attempts = 0
            if state.last_failed_at is None or now - state.last_failed_at > policy.window:
                state.failed_attempts = 1
            else:
                state.failed_attempts += 1
            state.last_failed_at = now
            if state.failed_attempts >= policy.max_attempts:
                state.lock_count += 1
                state.locked_until = now + policy.cooldown(state.lock_count)
                state.failed_attempts = 0
            return state

        state = self._store.update(key, _transition)
        if is_locked(state, now):
            logger.warning("Login identifier locked until %s (lockout #%d)", state.locked_until, state.lock_count)
        return state

    def record_success(self, key: str) -> None:
        """Reset the counter and clear any lock, keeping lock_count history."""

        def _transition(state: AttemptState) -> AttemptState:
            state.failed_attempts = 0
            state.last_failed_at = None
            state.locked_until = None
            return state

        self._store.update(key, _transition)

    def unlock(self, key: str) -> None:
        """Operator reset: forget everything about key, including backoff history."""
        self._store.delete(key)

    def state(self, key: str) -> AttemptState:
        return self._store.get(key)

    def purge_stale(self) -> int:
        """Drop keys that are unlocked and idle longer than the window and the longest lock.

        Keeping them that long preserves lock_count backoff for an identifier
        that is still being attacked. Returns the number of keys removed.
        """
        idle = max(self.policy.window, self.policy.max_duration)
        return self._store.purge(self._clock.now(), idle)
