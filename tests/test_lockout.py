"""
tests/test_lockout.py -- Unit tests for auth/lockout.py.

Covers:
  - The Nth failure inside the window locks; N-1 does not
  - Failures spaced wider than the window do not accumulate
  - Unlock happens exactly at locked_until (now >= locked_until is unlocked)
  - Cooldown backs off exponentially per lockout and is capped
  - Any lock_count, however large, yields a capped cooldown
  - Success resets the counter but keeps lockout history
  - purge_stale() drops idle keys but never a locked one
  - Memory and SQL attempt stores behave the same
"""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from auth.lockout import AttemptStore, AttemptTracker, LockoutPolicy, MemoryAttemptStore, is_locked
from auth.store import SqlAttemptStore
from tests.conftest import FakeClock

KEY = "ana@obra.example"
POLICY = LockoutPolicy(
    max_attempts=5,
    window=timedelta(minutes=15),
    base_duration=timedelta(minutes=5),
    backoff_multiplier=2.0,
    max_duration=timedelta(hours=1),
)


@pytest.fixture(params=["memory", "sql"])
def attempt_store(request) -> AttemptStore:
    if request.param == "memory":
        return MemoryAttemptStore()
    return SqlAttemptStore(engine=request.getfixturevalue("engine"))


@pytest.fixture
def tracker(attempt_store: AttemptStore, clock: FakeClock) -> AttemptTracker:
    return AttemptTracker(attempt_store, POLICY, clock)


def _fail(tracker: AttemptTracker, times: int) -> None:
    for _ in range(times):
        tracker.record_failure(KEY)


class TestThreshold:
    def test_below_threshold_not_locked(self, tracker: AttemptTracker) -> None:
        _fail(tracker, 4)
        assert tracker.locked_until(KEY) is None
        assert tracker.state(KEY).failed_attempts == 4

    def test_nth_failure_locks(self, tracker: AttemptTracker, clock: FakeClock) -> None:
        _fail(tracker, 4)
        state = tracker.record_failure(KEY)
        assert is_locked(state, clock.now())
        assert state.locked_until == clock.now() + timedelta(minutes=5)
        assert state.lock_count == 1

    def test_failures_outside_window_do_not_accumulate(self, tracker: AttemptTracker, clock: FakeClock) -> None:
        for _ in range(6):
            tracker.record_failure(KEY)
            clock.advance(minutes=16)
        assert tracker.locked_until(KEY) is None
        assert tracker.state(KEY).failed_attempts == 1

    def test_failure_while_locked_does_not_extend_lock(self, tracker: AttemptTracker, clock: FakeClock) -> None:
        _fail(tracker, 5)
        until = tracker.locked_until(KEY)
        clock.advance(minutes=1)
        tracker.record_failure(KEY)
        assert tracker.locked_until(KEY) == until


class TestCooldown:
    def test_locked_one_second_before_expiry(self, tracker: AttemptTracker, clock: FakeClock) -> None:
        _fail(tracker, 5)
        clock.advance(minutes=5, seconds=-1)
        assert tracker.locked_until(KEY) is not None

    def test_unlocked_exactly_at_expiry(self, tracker: AttemptTracker, clock: FakeClock) -> None:
        _fail(tracker, 5)
        clock.advance(minutes=5)
        assert tracker.locked_until(KEY) is None

    def test_next_lock_backs_off(self, tracker: AttemptTracker, clock: FakeClock) -> None:
        _fail(tracker, 5)
        clock.advance(minutes=5)
        _fail(tracker, 5)
        state = tracker.state(KEY)
        assert state.lock_count == 2
        assert state.locked_until == clock.now() + timedelta(minutes=10)

    def test_cooldown_is_capped(self) -> None:
        assert POLICY.cooldown(1) == timedelta(minutes=5)
        assert POLICY.cooldown(3) == timedelta(minutes=20)
        assert POLICY.cooldown(10) == timedelta(hours=1)
        assert POLICY.cooldown(100) == timedelta(hours=1)
        assert POLICY.cooldown(10**6) == timedelta(hours=1)

    def test_long_lock_history_still_locks(
        self, tracker: AttemptTracker, attempt_store: AttemptStore, clock: FakeClock
    ) -> None:
        attempt_store.update(KEY, lambda state: replace(state, lock_count=100))
        _fail(tracker, 5)
        state = tracker.state(KEY)
        assert state.lock_count == 101
        assert state.locked_until == clock.now() + timedelta(hours=1)

    def test_flat_multiplier_never_grows(self) -> None:
        flat = LockoutPolicy(backoff_multiplier=1.0, base_duration=timedelta(minutes=5))
        assert flat.cooldown(10**9) == timedelta(minutes=5)


class TestReset:
    def test_success_resets_counter_but_keeps_history(self, tracker: AttemptTracker, clock: FakeClock) -> None:
        _fail(tracker, 5)
        clock.advance(minutes=5)
        tracker.record_success(KEY)
        state = tracker.state(KEY)
        assert state.failed_attempts == 0
        assert state.locked_until is None
        assert state.lock_count == 1

    def test_unlock_forgets_everything(self, tracker: AttemptTracker) -> None:
        _fail(tracker, 5)
        tracker.unlock(KEY)
        assert tracker.locked_until(KEY) is None
        assert tracker.state(KEY).lock_count == 0

    def test_keys_are_independent(self, tracker: AttemptTracker) -> None:
        _fail(tracker, 5)
        assert tracker.locked_until("other@obra.example") is None


class TestPurge:
    def test_idle_keys_are_dropped_after_longest_lock(self, tracker: AttemptTracker, clock: FakeClock) -> None:
        _fail(tracker, 5)
        tracker.record_failure("other@obra.example")

        clock.advance(minutes=30)
        assert tracker.purge_stale() == 0

        clock.advance(minutes=30)
        assert tracker.purge_stale() == 2
        assert tracker.state(KEY).lock_count == 0
        assert tracker.state("other@obra.example").failed_attempts == 0

    def test_locked_key_is_kept(self, tracker: AttemptTracker, clock: FakeClock) -> None:
        _fail(tracker, 5)
        clock.advance(minutes=4)
        assert tracker.purge_stale() == 0
        assert tracker.locked_until(KEY) is not None

    def test_spraying_identifiers_does_not_accumulate(self, tracker: AttemptTracker, clock: FakeClock) -> None:
        for i in range(200):
            tracker.record_failure(f"user{i}@obra.example")
        clock.advance(days=30)
        assert tracker.purge_stale() == 200
        assert tracker.purge_stale() == 0
