"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Two token sources are checked in priority order:
  1. Authorization: Bearer <token> header -- API clients.
  2. JWT cookie ("access_token") -- set by the login route.

get_current_identity() resolves the token to a live Identity through
AuthService.authenticate(). get_current_principal() narrows that to the
(identity_id, role, department) triple the rest of the app authorizes with.

require_permission(*caps) and require_min_role(role) are dependency
factories; every decision they make goes through the PermissionEngine held
on app.state.

Layer rule: this module may import from fastapi because it is part of the
dependency injection system. It does not import from keytrack/.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.models import Identity
from auth.tokens import COOKIE_NAME
from core.models import ErrorKind, Principal, Role

_TOKEN_MESSAGES = {
    "malformed": "Authentication required.",
    "invalid_signature": "Invalid session token.",
    "expired": "Session expired. Please log in again.",
}


def extract_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return request.cookies.get(COOKIE_NAME) or None


def try_get_current_identity(request: Request) -> Identity | None:
    """Soft variant: the authenticated identity, or None. Never raises."""
    token = extract_token(request)
    if not token:
        return None
    result = request.app.state.auth_service.authenticate(token)
    return result.value if result.ok else None


def get_current_identity(request: Request) -> Identity:
    """Require authentication. Raises HTTP 401 (or 403 for a deactivated account)."""
    token = extract_token(request)
    if not token:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    result = request.app.state.auth_service.authenticate(token)
    if result.ok:
        return result.value
    if result.error is ErrorKind.FORBIDDEN:
        raise HTTPException(
            status_code=403,
            detail={"code": "account_deactivated", "message": "Account is deactivated."},
        )
    reason = result.reason or "unauthorized"
    raise HTTPException(
        status_code=401,
        detail={"code": reason, "message": _TOKEN_MESSAGES.get(reason, "Authentication required.")},
    )


def get_current_principal(identity: Identity = Depends(get_current_identity)) -> Principal:
    return identity.principal()


def require_permission(*capabilities: str):
    """Dependency factory: 403 unless the caller's role grants any of `capabilities`.

    Usage:
        @router.get("/keys/overdue")
        async def route(principal: Principal = Depends(require_permission(KEYS_VIEW_ALL))): ...
    """

    def _dependency(request: Request, principal: Principal = Depends(get_current_principal)) -> Principal:
        if not request.app.state.permissions.has_any(principal.role, capabilities):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Insufficient permissions."},
            )
        return principal

    return _dependency


def require_min_role(min_role: Role):
    """Dependency factory: 403 unless the caller is at least as privileged as min_role."""

    def _dependency(request: Request, principal: Principal = Depends(get_current_principal)) -> Principal:
        if not request.app.state.permissions.has_role_level(principal.role, min_role):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"{Role(min_role).value} role or higher required."},
            )
        return principal

    return _dependency
