"""Unit tests for auth/guard.py -- failure counting and timed lockout.

Covers:
- next_failure_state() transition rule, including stale-lock recovery
- AccountGuard against an in-memory IdentityStore
- Concurrent failures are all counted (compare-and-swap retry)
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from auth.guard import AccountGuard, next_failure_state
from auth.store import IdentityStore
from conftest import make_identity

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Pure transition rule
# ---------------------------------------------------------------------------


def test_failure_increments_counter():
    assert next_failure_state(0, None, NOW) == (1, None)
    assert next_failure_state(3, None, NOW) == (4, None)


def test_fifth_failure_locks_for_two_hours():
    assert next_failure_state(4, None, NOW) == (5, NOW + timedelta(hours=2))


def test_failure_while_locked_keeps_existing_lock():
    lock = NOW + timedelta(minutes=30)
    assert next_failure_state(5, lock, NOW) == (6, lock)


def test_elapsed_lock_restarts_counter_at_one():
    assert next_failure_state(5, NOW - timedelta(seconds=1), NOW) == (1, None)
    assert next_failure_state(7, NOW, NOW) == (1, None)


def test_custom_threshold_and_duration():
    attempts, lock = next_failure_state(2, None, NOW, threshold=3, lock_duration=timedelta(minutes=10))
    assert attempts == 3
    assert lock == NOW + timedelta(minutes=10)


# ---------------------------------------------------------------------------
# AccountGuard
# ---------------------------------------------------------------------------


@pytest.fixture
def guard(identity_store, clock) -> AccountGuard:
    return AccountGuard(identity_store, clock=clock)


def test_five_failures_lock_the_account(guard, identity_store, clock):
    user = make_identity(identity_store, "u@college.edu")
    for _ in range(4):
        assert not guard.is_locked(guard.record_failure(user.id))
    locked = guard.record_failure(user.id)
    assert guard.is_locked(locked)
    assert locked.lock_until == clock() + timedelta(hours=2)

    stored = identity_store.get_by_id(user.id)
    assert stored.failed_attempts == 5
    assert guard.is_locked(stored)


def test_lock_expires(guard, identity_store, clock):
    user = make_identity(identity_store, "u@college.edu")
    for _ in range(5):
        guard.record_failure(user.id)
    clock.advance(hours=2)
    assert not guard.is_locked(identity_store.get_by_id(user.id))


def test_failure_after_lock_elapsed_restarts_count(guard, identity_store, clock):
    user = make_identity(identity_store, "u@college.edu")
    for _ in range(5):
        guard.record_failure(user.id)
    clock.advance(hours=2, seconds=1)
    updated = guard.record_failure(user.id)
    assert updated.failed_attempts == 1
    assert updated.lock_until is None


def test_success_clears_counter_and_lock(guard, identity_store):
    user = make_identity(identity_store, "u@college.edu")
    for _ in range(5):
        guard.record_failure(user.id)
    guard.record_success(user.id)
    stored = identity_store.get_by_id(user.id)
    assert stored.failed_attempts == 0
    assert stored.lock_until is None


def test_success_on_clean_identity_is_a_no_op(guard, identity_store):
    user = make_identity(identity_store, "u@college.edu")
    guard.record_success(user.id)
    assert identity_store.get_by_id(user.id).failed_attempts == 0


def test_unknown_identity(guard):
    assert guard.record_failure(9999) is None
    guard.record_success(9999)


def test_concurrent_failures_are_all_counted(tmp_path):
    store = IdentityStore(f"sqlite:///{tmp_path / 'guard.db'}")
    guard = AccountGuard(store, threshold=100)
    user = make_identity(store, "race@college.edu")
    barrier = threading.Barrier(4)

    def fail_twice():
        barrier.wait()
        for _ in range(2):
            guard.record_failure(user.id)

    threads = [threading.Thread(target=fail_twice) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.get_by_id(user.id).failed_attempts == 8
    store.close()
