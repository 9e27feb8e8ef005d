"""
core/models.py -- Kernel value types shared by every KeyGuard layer.

Pattern: Data class + closed enums. These types carry no persistence and no
I/O. auth/, rbac/, and keytrack/ import from here; core/ imports from none of
them.

Result is how the engine reports expected business failures. A failed
Result carries an ErrorKind (the category the HTTP layer maps to a status
code) and an optional machine-readable reason (e.g. "expired" for a token).
Only infrastructure failures -- store unreachable, schema errors -- are
raised as exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class Role(str, Enum):
    """The five roles, declared in ascending privilege order.

    Levels live in rbac/policy.py, not here, so the hierarchy is data the
    Permission Engine owns rather than an accident of declaration order.
    """

    faculty = "faculty"
    security = "security"
    hod = "hod"
    security_incharge = "security_incharge"
    admin = "admin"

    @classmethod
    def parse(cls, value: Any) -> Role | None:
        """Return the Role for a raw value, or None if it is not a known role."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class ErrorKind(str, Enum):
    VALIDATION = "validation_error"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    OTP_EXPIRED = "otp_expired"
    INVALID_OTP = "invalid_otp"
    ACCOUNT_LOCKED = "account_locked"


@dataclass(frozen=True)
class Result:
    """Outcome of a core operation.

    ok results carry value; failed results carry error (and maybe reason).
    Build them with Result.success() / Result.failure() rather than the
    constructor so the two shapes never mix.
    """

    value: Any = None
    error: ErrorKind | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any = None) -> Result:
        return cls(value=value)

    @classmethod
    def failure(cls, error: ErrorKind, reason: str | None = None) -> Result:
        return cls(error=error, reason=reason)


@dataclass(frozen=True)
class Principal:
    """The authenticated caller (or a key holder) as seen by authorization checks.

    department is needed for department-scoped capabilities such as
    keys:view_department and HOD assignments.
    """

    identity_id: int
    role: Role
    department: str = ""
