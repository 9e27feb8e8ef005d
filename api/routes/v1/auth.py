"""
api/routes/v1/auth.py -- One-time-code authentication and session endpoints.

Routes:
  POST /api/v1/auth/simple-auth      -- provision identity from email if new, send login code
  POST /api/v1/auth/register         -- create unverified identity, send verification code
  POST /api/v1/auth/request-otp      -- send a code for an existing identity
  POST /api/v1/auth/verify-otp       -- confirm email ownership
  POST /api/v1/auth/login            -- exchange login code for a session token (cookie + body)
  POST /api/v1/auth/logout           -- drop outstanding login codes, clear cookie
  GET  /api/v1/auth/me               -- current identity
  POST /api/v1/auth/refresh          -- fresh token for the same identity and role
  GET  /api/v1/auth/validate-session -- soft check, never 401
  GET  /api/v1/auth/permissions      -- caller's role level and capabilities
  GET  /api/v1/auth/access?path=     -- may the caller open this UI route?
  GET  /api/v1/auth/stats            -- OTP and identity counts (system:view_stats)

Security:
  Code-issuing routes are rate-limited per IP (OTP_REQUEST_RATE_LIMIT) on top
  of the per-address window in OTPManager.can_request().
  Login-type routes are rate-limited per IP (LOGIN_RATE_LIMIT).
  Codes are never returned in a response body.
  Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.errors import unwrap
from api.limiter import limiter, login_limit, otp_request_limit
from api.models import (
    CapabilitiesResponse,
    ChallengeResponse,
    IdentityResponse,
    LoginRequest,
    LoginResponse,
    OTPRequest,
    RegisterRequest,
    RouteAccessResponse,
    SessionResponse,
    SimpleAuthRequest,
    TokenResponse,
    VerifyEmailRequest,
)
from auth.dependencies import (
    extract_token,
    get_current_identity,
    get_current_principal,
    require_permission,
    try_get_current_identity,
)
from auth.models import Identity
from auth.service import AuthService, ChallengeOutcome, LoginOutcome
from auth.tokens import clear_auth_cookie, set_auth_cookie
from core.models import Principal
from core.timeutil import to_iso
from rbac.policy import SYSTEM_VIEW_STATS

# Auth policy:
# - simple-auth, register, request-otp, verify-otp, login: public (rate-limited)
# - validate-session:                                      public (soft)
# - logout, me, refresh, permissions, access:              requires auth
# - stats:                                                 requires system:view_stats
router = APIRouter()


# ---------------------------------------------------------------------------
# Code issue
# ---------------------------------------------------------------------------


@limiter.limit(otp_request_limit)
@router.post("/auth/simple-auth", response_model=ChallengeResponse)
def simple_auth(request: Request, body: SimpleAuthRequest) -> ChallengeResponse:
    """Send a login code, creating the identity from its address on first use."""
    service: AuthService = request.app.state.auth_service
    outcome: ChallengeOutcome = unwrap(service.simple_auth(body.email))
    return _challenge_to_response(outcome)


@limiter.limit(otp_request_limit)
@router.post("/auth/register", response_model=ChallengeResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> ChallengeResponse:
    """Create an unverified identity and send an email_verification code."""
    service: AuthService = request.app.state.auth_service
    outcome: ChallengeOutcome = unwrap(
        service.register(
            body.email,
            name=body.name,
            department=body.department,
            role=body.role,
            employee_id=body.employee_id,
        )
    )
    return _challenge_to_response(outcome)


@limiter.limit(otp_request_limit)
@router.post("/auth/request-otp", response_model=ChallengeResponse)
def request_otp(request: Request, body: OTPRequest) -> ChallengeResponse:
    service: AuthService = request.app.state.auth_service
    outcome: ChallengeOutcome = unwrap(service.request_otp(body.email, body.purpose))
    return _challenge_to_response(outcome)


# ---------------------------------------------------------------------------
# Code verification
# ---------------------------------------------------------------------------


@limiter.limit(login_limit)
@router.post("/auth/verify-otp", response_model=IdentityResponse)
def verify_otp(request: Request, body: VerifyEmailRequest) -> IdentityResponse:
    """Confirm the caller controls the address; marks the identity verified."""
    service: AuthService = request.app.state.auth_service
    identity: Identity = unwrap(service.verify_email(body.email, body.otp))
    return identity_to_response(identity)


@limiter.limit(login_limit)
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Exchange a login code for a session token.

    Failed codes count toward the account lockout. A locked account gets 423
    before its code is even looked at.
    """
    service: AuthService = request.app.state.auth_service
    settings = request.app.state.settings
    outcome: LoginOutcome = unwrap(service.login(body.email, body.otp))
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=outcome.token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=settings.token_expire_seconds,
            identity=identity_to_response(outcome.identity),
        ).model_dump(mode="json"),
    )
    set_auth_cookie(resp, outcome.token, max_age=settings.token_expire_seconds, secure=settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post("/auth/logout")
def logout(request: Request, identity: Identity = Depends(get_current_identity)) -> JSONResponse:
    """Invalidate outstanding login codes and clear the cookie.

    The token itself is stateless and stays valid until it expires; clients
    must discard it.
    """
    service: AuthService = request.app.state.auth_service
    service.logout(identity)
    resp = JSONResponse(content={"message": "Logged out."})
    clear_auth_cookie(resp)
    return resp


@router.get("/auth/me", response_model=IdentityResponse)
def me(identity: Identity = Depends(get_current_identity)) -> IdentityResponse:
    return identity_to_response(identity)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, identity: Identity = Depends(get_current_identity)) -> JSONResponse:
    service: AuthService = request.app.state.auth_service
    settings = request.app.state.settings
    token: str = unwrap(service.refresh(extract_token(request) or ""))
    resp = JSONResponse(
        content=TokenResponse(access_token=token, expires_in=settings.token_expire_seconds).model_dump()
    )
    set_auth_cookie(resp, token, max_age=settings.token_expire_seconds, secure=settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/auth/validate-session", response_model=SessionResponse)
def validate_session(request: Request) -> SessionResponse:
    identity = try_get_current_identity(request)
    if identity is None:
        return SessionResponse(is_authenticated=False)
    return SessionResponse(is_authenticated=True, identity=identity_to_response(identity))


# ---------------------------------------------------------------------------
# Authorization introspection
# ---------------------------------------------------------------------------


@router.get("/auth/permissions", response_model=CapabilitiesResponse)
def permissions(request: Request, principal: Principal = Depends(get_current_principal)) -> CapabilitiesResponse:
    engine = request.app.state.permissions
    return CapabilitiesResponse(
        role=principal.role,
        level=engine.role_level(principal.role),
        capabilities=sorted(engine.capabilities_for(principal.role)),
    )


@router.get("/auth/access", response_model=RouteAccessResponse)
def route_access(
    request: Request,
    path: str = Query(min_length=1, max_length=200),
    principal: Principal = Depends(get_current_principal),
) -> RouteAccessResponse:
    engine = request.app.state.permissions
    return RouteAccessResponse(path=path, role=principal.role, allowed=engine.can_access_route(principal.role, path))


@router.get("/auth/stats")
def stats(request: Request, principal: Principal = Depends(require_permission(SYSTEM_VIEW_STATS))) -> dict:
    service: AuthService = request.app.state.auth_service
    return service.stats()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def identity_to_response(identity: Identity) -> IdentityResponse:
    return IdentityResponse(
        id=identity.id,
        email=identity.email,
        name=identity.name,
        role=identity.role,
        department=identity.department,
        employee_id=identity.employee_id,
        is_active=identity.is_active,
        is_email_verified=identity.is_email_verified,
        last_login=to_iso(identity.last_login),
        created_at=to_iso(identity.created_at) or "",
    )


def _challenge_to_response(outcome: ChallengeOutcome) -> ChallengeResponse:
    challenge = outcome.challenge
    return ChallengeResponse(
        email=challenge.email,
        purpose=challenge.purpose,
        expires_at=to_iso(challenge.expires_at),
        delivered=challenge.delivered,
        created=outcome.created,
        identity=identity_to_response(outcome.identity) if outcome.identity and outcome.identity.id else None,
    )
