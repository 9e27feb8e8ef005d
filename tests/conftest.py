"""
tests/conftest.py -- Shared test fixtures for KeyGuard unit and integration tests.

This module provides:
  - FakeClock: a settable clock injected wherever components take `clock=`
  - RecordingNotifier: captures issued codes instead of delivering them
  - identity_store / challenge_store / key_store: fresh in-memory stores per test
  - api_client: TestClient over the real app with isolated stores and an admin token

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for the API client because TestClient runs route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. Unit-level store fixtures stay on the calling thread and
use plain :memory:.

The env vars below must be set before any api/ or core/ import:
get_settings() is cached on first call, and api.main reads it at import time
to configure TrustedHostMiddleware.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: Set these before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("OTP_REQUEST_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_state
from auth.models import Identity, OTPPurpose
from auth.store import ChallengeStore, IdentityStore
from core.config import get_settings
from core.models import Role
from keytrack.store import KeyStore

SECRET = "test-secret-key-that-is-long-enough-0123456789"

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


@dataclass
class SentCode:
    email: str
    code: str
    purpose: OTPPurpose


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[SentCode] = []

    def send_otp(self, email: str, code: str, purpose: OTPPurpose) -> None:
        self.sent.append(SentCode(email=email, code=code, purpose=OTPPurpose(purpose)))

    def last_code(self, email: str, purpose: OTPPurpose = OTPPurpose.login) -> str:
        for sent in reversed(self.sent):
            if sent.email == email and sent.purpose is purpose:
                return sent.code
        raise AssertionError(f"No {purpose.value} code was sent to {email}")


class FailingNotifier:
    def send_otp(self, email: str, code: str, purpose: OTPPurpose) -> None:
        raise ConnectionError("mail relay unavailable")


def make_identity(
    store: IdentityStore,
    email: str,
    role: Role = Role.faculty,
    department: str = "Computer Science and Engineering",
    **fields,
) -> Identity:
    """Persist an identity and return it with its id filled in."""
    identity = Identity(
        email=email,
        name=email.split("@")[0].title(),
        role=role,
        department=department,
        is_email_verified=True,
        **fields,
    )
    identity.id = store.create_identity(identity)
    return identity


# ---------------------------------------------------------------------------
# Function-scoped fixtures -- one fresh database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def identity_store() -> Generator[IdentityStore, None, None]:
    store = IdentityStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def challenge_store() -> Generator[ChallengeStore, None, None]:
    store = ChallengeStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def key_store() -> Generator[KeyStore, None, None]:
    store = KeyStore("sqlite:///:memory:")
    yield store
    store.close()


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(
    identities: IdentityStore,
    challenges: ChallengeStore,
    keys: KeyStore,
    notifier: RecordingNotifier,
    clock: FakeClock,
):
    """Return an async context manager that replaces the real lifespan.

    Runs the same build_state() wiring as production against the test
    stores. The purge_task is a long-sleeping coroutine so shutdown can
    cancel a real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_state(app, get_settings(), identities, challenges, keys, notifier=notifier, clock=clock)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@dataclass
class ApiContext:
    client: TestClient
    admin_token: str
    admin_id: int
    notifier: RecordingNotifier
    clock: FakeClock

    def headers(self, token: str | None = None) -> dict[str, str]:
        return {"Authorization": f"Bearer {token or self.admin_token}"}

    def token_for(self, identity: Identity) -> str:
        return self.client.app.state.tokens.issue(identity.id, identity.role)

    def create_identity(self, email: str, role: Role = Role.faculty, department: str = "Computer Science and Engineering") -> Identity:
        return make_identity(self.client.app.state.identity_store, email, role=role, department=department)


@pytest.fixture(scope="module")
def api_client(request) -> Generator[ApiContext, None, None]:
    """Yield an ApiContext for API integration tests.

    Each test module gets its own named in-memory databases, so modules
    never see each other's identities or keys. The admin identity is
    created before the client starts; its token is minted through the app's
    own TokenIssuer once the lifespan has wired it.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    url = f"sqlite:///file:keyguard_{suffix}?mode=memory&cache=shared&uri=true"
    identities = IdentityStore(db_url=url)
    challenges = ChallengeStore(db_url=url)
    keys = KeyStore(db_url=url)
    notifier = RecordingNotifier()
    clock = FakeClock()

    admin = make_identity(identities, "admin@college.edu", role=Role.admin, department="Administration")

    app.router.lifespan_context = _patch_lifespan(identities, challenges, keys, notifier, clock)

    with TestClient(app, raise_server_exceptions=True) as client:
        token = app.state.tokens.issue(admin.id, admin.role)
        yield ApiContext(client=client, admin_token=token, admin_id=admin.id, notifier=notifier, clock=clock)

    identities.close()
    challenges.close()
    keys.close()
