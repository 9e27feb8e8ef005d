"""
api/main.py -- FastAPI application entry point for KeyGuard.

Exposes the auth engine and the key lifecycle engine over HTTP. This layer
only parses requests, injects dependencies and maps core Results to status
codes (api/errors.py); every decision is made by the core.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (stores, engines, bootstrap admin, OTP purge task)
and shutdown (cancel purge task, close DB connections) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.keys import router as keys_router
from api.routes.v1.users import router as users_router
from auth.dependencies import get_current_identity
from auth.guard import AccountGuard
from auth.models import Identity
from auth.notifier import LogNotifier, Notifier
from auth.otp import OTPManager
from auth.service import AuthService
from auth.store import ChallengeStore, IdentityStore
from auth.tokens import TokenIssuer
from core.config import Settings, get_settings
from core.models import Role
from core.timeutil import Clock, utcnow
from keytrack.service import KeyLifecycleEngine
from keytrack.store import KeyStore
from rbac.engine import PermissionEngine

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("keyguard.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_state(
    app: FastAPI,
    settings: Settings,
    identities: IdentityStore,
    challenges: ChallengeStore,
    keys: KeyStore,
    notifier: Notifier | None = None,
    clock: Clock = utcnow,
) -> None:
    """Construct every engine from settings and attach it to app.state.

    Shared by the real lifespan and the test lifespan so both run the same
    wiring against different stores.
    """
    permissions = PermissionEngine()
    otp = OTPManager(
        challenges,
        secret_key=settings.secret_key,
        notifier=notifier or LogNotifier(reveal_codes=settings.debug),
        code_length=settings.otp_length,
        ttl=timedelta(seconds=settings.otp_expire_seconds),
        max_attempts=settings.otp_max_attempts,
        rate_limit_count=settings.otp_rate_limit_count,
        rate_limit_window=timedelta(seconds=settings.otp_rate_limit_window_seconds),
        clock=clock,
    )
    guard = AccountGuard(
        identities,
        threshold=settings.lockout_threshold,
        lock_duration=timedelta(seconds=settings.lockout_seconds),
        clock=clock,
    )
    tokens = TokenIssuer(settings.secret_key, ttl_seconds=settings.token_expire_seconds, clock=clock)

    app.state.settings = settings
    app.state.identity_store = identities
    app.state.challenge_store = challenges
    app.state.key_store = keys
    app.state.permissions = permissions
    app.state.otp = otp
    app.state.guard = guard
    app.state.tokens = tokens
    app.state.auth_service = AuthService(
        identities,
        otp,
        guard,
        tokens,
        allowed_domain=settings.allowed_email_domain,
        clock=clock,
    )
    app.state.key_engine = KeyLifecycleEngine(keys, permissions, clock=clock)


def _bootstrap_admin(identities: IdentityStore, email: str) -> None:
    """Create the first admin identity so someone can log in to a fresh install."""
    if not email or identities.has_identities():
        return
    try:
        identities.create_identity(
            Identity(
                email=email,
                name="Administrator",
                role=Role.admin,
                department="Administration",
                is_email_verified=True,
            )
        )
        logger.info("Bootstrap admin %s created", email)
    except IntegrityError:
        logger.info("Bootstrap admin %s already exists", email)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval_seconds: int) -> None:
    """Delete dead OTP challenges every interval_seconds (6 hours by default).

    Purging is space reclamation only; challenge validity is decided at read
    time. CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            app.state.otp.purge_expired()
        except SQLAlchemyError:
            logger.exception("OTP purge failed; will retry next interval")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Stores first, then engines (they hold the stores), then the
    purge task (it references app.state.otp).
    """
    logger.info("KeyGuard API starting up")
    settings = get_settings()
    identities = IdentityStore(db_url=settings.database_url)
    challenges = ChallengeStore(db_url=settings.database_url)
    keys = KeyStore(db_url=settings.database_url)
    build_state(app, settings, identities, challenges, keys)
    _bootstrap_admin(identities, settings.bootstrap_admin_email)
    logger.info("Stores initialized (%s)", settings.database_url.split("///")[0])
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.otp_purge_interval_seconds))

    yield

    app.state.purge_task.cancel()
    identities.close()
    challenges.close()
    keys.close()
    logger.info("KeyGuard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="KeyGuard API",
    description="One-time-code authentication, role-based access and physical key tracking.",
    version=VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced below by authenticated equivalents.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(keys_router, prefix="/api/v1", tags=["Keys"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(identity: Identity = Depends(get_current_identity)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="KeyGuard API")


@app.get("/redoc", include_in_schema=False)
async def redoc(identity: Identity = Depends(get_current_identity)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="KeyGuard API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a per-IP rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Routes and api/errors.py raise HTTPException with a {"code", "message"}
    dict as detail; use it directly as the error field.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable regardless of router
# registration state. No rate limit -- monitors must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and a database round-trip check."""
    database = "ok"
    try:
        with request.app.state.identity_store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.warning("Health check: database unreachable", exc_info=True)
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
