"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class. Mirrors keytrack/models.py -- dataclasses own domain
shape; stores and services do the work. The one exception is
OTPChallenge.is_valid(): validity is a read-time predicate over the record's
own fields, so it lives next to them.

Layer rule: no imports from api/ or keytrack/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from core.models import Principal, Role


class OTPPurpose(str, Enum):
    """Scope tag on a challenge. A code issued for one purpose never verifies another."""

    login = "login"
    registration = "registration"
    password_reset = "password_reset"
    email_verification = "email_verification"


@dataclass
class Identity:
    """A person who can authenticate with a one-time code sent to their email.

    email is the delivery channel and the natural key; it is stored
    lower-cased. failed_attempts and lock_until belong to the Account Guard
    and are only changed through IdentityStore.swap_login_state().

    Identities are never hard-deleted: deleted_at marks a soft delete and
    hides the record from find_by_channel().
    """

    email: str
    name: str
    role: Role
    department: str
    employee_id: str | None = None
    id: int | None = None
    is_active: bool = True
    is_email_verified: bool = False
    failed_attempts: int = 0
    lock_until: datetime | None = None
    last_login: datetime | None = None
    created_at: datetime | None = None
    deleted_at: datetime | None = None

    def principal(self) -> Principal:
        if self.id is None:
            raise ValueError("Identity has no id; persist it before building a Principal.")
        return Principal(identity_id=self.id, role=self.role, department=self.department)


@dataclass
class OTPChallenge:
    """One issued code for one (email, purpose) pair.

    code_hash is HMAC-SHA256(SECRET_KEY, code); the raw code is never stored.
    attempts counts wrong guesses against this challenge only.
    """

    email: str
    purpose: OTPPurpose
    code_hash: str
    expires_at: datetime
    created_at: datetime
    attempts: int = 0
    is_used: bool = False
    id: int | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_valid(self, now: datetime, max_attempts: int = 5) -> bool:
        return not self.is_used and not self.is_expired(now) and self.attempts < max_attempts


@dataclass(frozen=True)
class IssuedChallenge:
    """What create_challenge hands back. code is the only copy of the raw value."""

    email: str
    purpose: OTPPurpose
    code: str
    expires_at: datetime
    delivered: bool
