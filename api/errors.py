"""
api/errors.py -- Translate core Result failures into HTTP errors.

The core never picks status codes. Route handlers call unwrap(result); a
failed Result becomes an HTTPException with the same {"code", "message"}
detail shape every other error in the API uses, and the exception handlers
in api/main.py wrap it in the ErrorResponse envelope.

code is the failure's reason when it has one (e.g. "key_assigned",
"expired"), otherwise the ErrorKind value.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException

from core.models import ErrorKind, Result

STATUS_FOR_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.OTP_EXPIRED: 401,
    ErrorKind.INVALID_OTP: 401,
    ErrorKind.ACCOUNT_LOCKED: 423,
}

_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.VALIDATION: "Request could not be processed.",
    ErrorKind.NOT_FOUND: "Resource not found.",
    ErrorKind.CONFLICT: "The resource is not in a state that allows this operation.",
    ErrorKind.UNAUTHORIZED: "Authentication required.",
    ErrorKind.FORBIDDEN: "Insufficient permissions.",
    ErrorKind.RATE_LIMITED: "Too many code requests. Please wait before trying again.",
    ErrorKind.OTP_EXPIRED: "The code has expired or too many attempts were made. Request a new one.",
    ErrorKind.INVALID_OTP: "Invalid code.",
    ErrorKind.ACCOUNT_LOCKED: "Account is temporarily locked due to too many failed attempts.",
}


def to_http(result: Result) -> HTTPException:
    kind = result.error or ErrorKind.VALIDATION
    return HTTPException(
        status_code=STATUS_FOR_KIND[kind],
        detail={"code": result.reason or kind.value, "message": _MESSAGES[kind]},
    )


def unwrap(result: Result) -> Any:
    """Return result.value, or raise the HTTPException for its failure."""
    if not result.ok:
        raise to_http(result)
    return result.value
