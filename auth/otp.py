"""
auth/otp.py -- OTP Manager: issue, rate-limit, verify, and invalidate one-time codes.

Security design decisions:
  Codes: each digit is drawn with secrets.randbelow(10), so codes are uniform
       over the full 10^n space (leading zeros included).

  Storage: only HMAC-SHA256(SECRET_KEY, code) is persisted, same construction
       as any other low-entropy-but-short-lived secret we need to compare
       in O(1). Comparison uses hmac.compare_digest.

  One active challenge per (email, purpose): enforced by
       ChallengeStore.insert_replacing_active() plus a partial unique index.
       If a concurrent request wins the insert race, we retry; the retry
       invalidates the winner's challenge and inserts ours, so the newest
       request always holds the live code.

  Request window: create_challenge(..., enforce_window=True) counts recent
       challenges inside the insert transaction, after the write lock is
       taken, so concurrent requests cannot all slip under the limit.
       can_request() is the read-only version of the same check.

  Attempts: a wrong code burns one attempt on the latest live challenge.
       The guess that brings attempts to max_attempts is reported as
       OTP_EXPIRED (exhausted) -- exhaustion and time expiry are the same
       terminal class. A correct code on an exhausted challenge still fails.

Validity is evaluated at read time from the record (is_valid / the
conditional UPDATE in consume()). purge_expired() is space reclamation only.

Layer rule: no imports from api/ or keytrack/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from auth.models import IssuedChallenge, OTPChallenge, OTPPurpose
from auth.notifier import LogNotifier, Notifier
from auth.store import ChallengeStore
from core.models import ErrorKind, Result
from core.timeutil import Clock, utcnow

logger = logging.getLogger("keyguard.otp")

_INSERT_RETRIES = 3


class OTPManager:
    def __init__(
        self,
        store: ChallengeStore,
        secret_key: str,
        notifier: Notifier | None = None,
        code_length: int = 6,
        ttl: timedelta = timedelta(minutes=15),
        max_attempts: int = 5,
        rate_limit_count: int = 3,
        rate_limit_window: timedelta = timedelta(minutes=5),
        clock: Clock = utcnow,
    ) -> None:
        if code_length < 4:
            raise ValueError("OTP codes shorter than 4 digits are not supported.")
        self.store = store
        self.notifier = notifier or LogNotifier()
        self.code_length = code_length
        self.ttl = ttl
        self.max_attempts = max_attempts
        self.rate_limit_count = rate_limit_count
        self.rate_limit_window = rate_limit_window
        self._secret = secret_key.encode()
        self._clock = clock

    # ------------------------------------------------------------------
    # Code helpers
    # ------------------------------------------------------------------

    def generate_code(self) -> str:
        return "".join(str(secrets.randbelow(10)) for _ in range(self.code_length))

    def hash_code(self, code: str) -> str:
        return hmac.new(self._secret, code.encode(), hashlib.sha256).hexdigest()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def can_request(self, email: str, purpose: OTPPurpose) -> Result:
        """Sliding-window limit: at most rate_limit_count challenges per window per pair."""
        since = self._clock() - self.rate_limit_window
        recent = self.store.count_created_since(email, purpose, since)
        if recent >= self.rate_limit_count:
            logger.info("OTP request rate-limited for %s (purpose=%s, recent=%d)", email, purpose.value, recent)
            return Result.failure(ErrorKind.RATE_LIMITED, reason="otp_window")
        return Result.success()

    def create_challenge(
        self,
        email: str,
        purpose: OTPPurpose,
        ttl: timedelta | None = None,
        enforce_window: bool = False,
    ) -> Result:
        """Issue a fresh code for (email, purpose), replacing any active one.

        Returns Result(value=IssuedChallenge). The notifier is called after
        the challenge is stored; a delivery failure sets delivered=False but
        the challenge stands.

        With enforce_window the request window is checked atomically with the
        insert, and a full window gives RATE_LIMITED (reason otp_window)
        without touching the active code.
        """
        purpose = OTPPurpose(purpose)
        lifetime = ttl if ttl is not None else self.ttl
        code = self.generate_code()
        now = self._clock()
        challenge = OTPChallenge(
            email=email.strip().lower(),
            purpose=purpose,
            code_hash=self.hash_code(code),
            expires_at=now + lifetime,
            created_at=now,
        )
        for attempt in range(1, _INSERT_RETRIES + 1):
            try:
                inserted = self.store.insert_replacing_active(
                    challenge,
                    window_since=now - self.rate_limit_window if enforce_window else None,
                    window_limit=self.rate_limit_count if enforce_window else None,
                )
                break
            except IntegrityError:
                if attempt == _INSERT_RETRIES:
                    raise
                logger.info("Concurrent OTP issue for %s (purpose=%s); retrying", email, purpose.value)
        if inserted is None:
            logger.info("OTP request rate-limited for %s (purpose=%s)", challenge.email, purpose.value)
            return Result.failure(ErrorKind.RATE_LIMITED, reason="otp_window")
        challenge.id = inserted

        delivered = True
        try:
            self.notifier.send_otp(challenge.email, code, purpose)
        except Exception:
            delivered = False
            logger.warning(
                "OTP delivery failed for %s (purpose=%s); challenge kept",
                challenge.email,
                purpose.value,
                exc_info=True,
            )

        return Result.success(
            IssuedChallenge(
                email=challenge.email,
                purpose=purpose,
                code=code,
                expires_at=challenge.expires_at,
                delivered=delivered,
            )
        )

    def verify(self, email: str, code: str, purpose: OTPPurpose) -> Result:
        """Check a submitted code against the latest live challenge.

        Exactly one challenge changes state per call: it is consumed on a
        match, or loses an attempt on a mismatch. Calls that find nothing
        live change nothing.
        """
        purpose = OTPPurpose(purpose)
        now = self._clock()
        latest = self.store.latest_unused(email, purpose)
        if latest is None:
            return Result.failure(ErrorKind.INVALID_OTP, reason="no_challenge")
        if latest.is_expired(now):
            return Result.failure(ErrorKind.OTP_EXPIRED, reason="expired")
        if latest.attempts >= self.max_attempts:
            return Result.failure(ErrorKind.OTP_EXPIRED, reason="attempts_exhausted")

        if not hmac.compare_digest(self.hash_code(code or ""), latest.code_hash):
            attempts = self.store.increment_attempts(latest.id, self.max_attempts)
            if attempts is None or attempts >= self.max_attempts:
                logger.info("OTP attempts exhausted for %s (purpose=%s)", email, purpose.value)
                return Result.failure(ErrorKind.OTP_EXPIRED, reason="attempts_exhausted")
            return Result.failure(ErrorKind.INVALID_OTP, reason="mismatch")

        if not self.store.consume(latest.id, self.max_attempts, now):
            # Another request consumed or exhausted it between our read and write.
            return Result.failure(ErrorKind.INVALID_OTP, reason="already_used")
        logger.info("OTP verified for %s (purpose=%s)", email, purpose.value)
        return Result.success()

    def invalidate_all(self, email: str, purpose: OTPPurpose | None = None) -> int:
        count = self.store.invalidate(email, purpose)
        if count:
            logger.info(
                "Invalidated %d OTP challenge(s) for %s%s",
                count,
                email,
                f" (purpose={OTPPurpose(purpose).value})" if purpose is not None else "",
            )
        return count

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        """Delete dead challenges.

        Used challenges younger than the rate-limit window are kept, because
        can_request() counts them.
        """
        now = self._clock()
        removed = self.store.purge(now=now, used_before=now - self.rate_limit_window)
        if removed:
            logger.info("Purged %d expired or used OTP challenge(s)", removed)
        return removed

    def stats(self) -> dict:
        now = self._clock()
        return self.store.stats(now=now, hour_ago=now - timedelta(hours=1), day_ago=now - timedelta(days=1))
