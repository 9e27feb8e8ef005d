"""
auth/tokens.py -- Token Issuer: signed, stateless session tokens.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       sub (identity id, as a string), role, iat and exp. Nothing is
       persisted and there is no revocation list; a token is good until exp.

  Verification: returns a typed Result instead of None so callers can tell
       a garbled token (malformed) from a forged one (invalid_signature) from
       a stale one (expired). Expiry is checked against the injected clock,
       not jose's wall clock, so it is testable without sleeping.

  Refresh: mints a new token for the same identity and role. The old token
       is not revoked; it simply runs out.

  SECRET_KEY: sourced from core.config.get_settings() by the caller that
       builds the issuer (api/main.py lifespan). The Settings class validates
       the key at startup.

Layer rule: no imports from api/ or keytrack/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from jose import JWTError, jwt
from jose.exceptions import JWTClaimsError

from core.models import ErrorKind, Result, Role
from core.timeutil import Clock, utcnow

logger = logging.getLogger("keyguard.tokens")

_ALGORITHM = "HS256"

COOKIE_NAME = "access_token"


class TokenFailure(str, Enum):
    malformed = "malformed"
    invalid_signature = "invalid_signature"
    expired = "expired"


@dataclass(frozen=True)
class TokenClaims:
    identity_id: int
    role: Role
    issued_at: datetime
    expires_at: datetime


class TokenIssuer:
    def __init__(self, secret_key: str, ttl_seconds: int = 604800, clock: Clock = utcnow) -> None:
        if ttl_seconds <= 0:
            raise ValueError("Token TTL must be positive.")
        self._secret = secret_key
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def issue(self, identity_id: int, role: Role | str) -> str:
        parsed = Role.parse(role)
        if parsed is None:
            raise ValueError(f"Cannot issue a token for unknown role {role!r}")
        now = self._clock()
        payload = {
            "sub": str(identity_id),
            "role": parsed.value,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self.ttl_seconds)).timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def verify(self, token: str) -> Result:
        """Return Result(value=TokenClaims) or an UNAUTHORIZED failure with a TokenFailure reason."""
        if not token:
            return Result.failure(ErrorKind.UNAUTHORIZED, TokenFailure.malformed.value)
        try:
            jwt.get_unverified_claims(token)
        except JWTError:
            return Result.failure(ErrorKind.UNAUTHORIZED, TokenFailure.malformed.value)

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTClaimsError:
            # Signature checked out; a registered claim has the wrong type.
            return Result.failure(ErrorKind.UNAUTHORIZED, TokenFailure.malformed.value)
        except JWTError:
            logger.info("Rejected token with invalid signature")
            return Result.failure(ErrorKind.UNAUTHORIZED, TokenFailure.invalid_signature.value)

        try:
            identity_id = int(payload["sub"])
            issued_at = int(payload["iat"])
            expires_at = int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return Result.failure(ErrorKind.UNAUTHORIZED, TokenFailure.malformed.value)
        role = Role.parse(payload.get("role"))
        if role is None:
            return Result.failure(ErrorKind.UNAUTHORIZED, TokenFailure.malformed.value)

        if expires_at <= self._clock().timestamp():
            return Result.failure(ErrorKind.UNAUTHORIZED, TokenFailure.expired.value)

        return Result.success(
            TokenClaims(
                identity_id=identity_id,
                role=role,
                issued_at=datetime.fromtimestamp(issued_at, tz=timezone.utc),
                expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
            )
        )

    def refresh(self, token: str) -> Result:
        """Verify token and return Result(value=<new token>) for the same identity and role."""
        verified = self.verify(token)
        if not verified.ok:
            return verified
        claims: TokenClaims = verified.value
        return Result.success(self.issue(claims.identity_id, claims.role))


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, max_age: int, secure: bool = False) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie.
    samesite="lax": not sent on cross-site POST.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the token TTL so both expire together.
    """
    response.set_cookie(
        COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max_age,
    )


def clear_auth_cookie(response) -> None:
    response.delete_cookie(COOKIE_NAME)
