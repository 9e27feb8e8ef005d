"""
auth/guard.py -- Account Guard: consecutive-failure counting and timed lockout.

State lives on the identity row as (failed_attempts, lock_until). The
transition rule is a pure function, next_failure_state(), so it can be
tested without a database:

    lock elapsed            -> counter restarts at 1, lock cleared
    counter + 1 < threshold -> counter + 1
    counter + 1 >= threshold-> counter + 1, lock_until = now + lock_duration

record_failure() applies that rule as a compare-and-swap on the pair and
re-reads on a lost race, so two simultaneous failures always count as two.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from auth.models import Identity
from auth.store import IdentityStore
from core.timeutil import Clock, utcnow

logger = logging.getLogger("keyguard.guard")

_CAS_RETRIES = 10


def next_failure_state(
    attempts: int,
    lock_until: datetime | None,
    now: datetime,
    threshold: int = 5,
    lock_duration: timedelta = timedelta(hours=2),
) -> tuple[int, datetime | None]:
    if lock_until is not None and lock_until <= now:
        return 1, None
    attempts += 1
    if attempts >= threshold and lock_until is None:
        lock_until = now + lock_duration
    return attempts, lock_until


class AccountGuard:
    def __init__(
        self,
        store: IdentityStore,
        threshold: int = 5,
        lock_duration: timedelta = timedelta(hours=2),
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.lock_duration = lock_duration
        self._clock = clock

    def is_locked(self, identity: Identity) -> bool:
        return identity.lock_until is not None and identity.lock_until > self._clock()

    def record_failure(self, identity_id: int) -> Identity | None:
        """Count one failed authentication. Returns the updated identity, or None if unknown."""
        for _ in range(_CAS_RETRIES):
            identity = self.store.get_by_id(identity_id)
            if identity is None:
                return None
            now = self._clock()
            attempts, lock_until = next_failure_state(
                identity.failed_attempts,
                identity.lock_until,
                now,
                threshold=self.threshold,
                lock_duration=self.lock_duration,
            )
            if self.store.swap_login_state(
                identity_id,
                expected=(identity.failed_attempts, identity.lock_until),
                new=(attempts, lock_until),
            ):
                if lock_until is not None and identity.lock_until is None:
                    logger.warning(
                        "Identity %d locked until %s after %d failed attempts",
                        identity_id,
                        lock_until.isoformat(),
                        attempts,
                    )
                identity.failed_attempts = attempts
                identity.lock_until = lock_until
                return identity
        raise RuntimeError(f"Could not record failure for identity {identity_id}: too much contention")

    def record_success(self, identity_id: int) -> None:
        """Clear the failure counter and any lock."""
        for _ in range(_CAS_RETRIES):
            identity = self.store.get_by_id(identity_id)
            if identity is None:
                return
            if identity.failed_attempts == 0 and identity.lock_until is None:
                return
            if self.store.swap_login_state(
                identity_id,
                expected=(identity.failed_attempts, identity.lock_until),
                new=(0, None),
            ):
                return
        raise RuntimeError(f"Could not reset login state for identity {identity_id}: too much contention")
