"""
auth/service.py -- Auth Service: the login and registration control flow.

    request_otp / simple_auth / register  -> OTPManager issues a challenge
    login / verify_email                  -> OTPManager verifies it
    login success                         -> AccountGuard resets, TokenIssuer mints
    login failure                         -> AccountGuard counts the failure
    authenticate(token)                   -> TokenIssuer verifies, identity reloaded

Every method returns a core.models.Result. The order of checks in login()
matters: an unknown address, a deactivated account and an active lock are
all decided before a code is compared, so a locked account cannot be used
to burn attempts on its own challenge.

Layer rule: no imports from api/ or keytrack/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from auth import provisioning
from auth.guard import AccountGuard
from auth.models import Identity, IssuedChallenge, OTPPurpose
from auth.otp import OTPManager
from auth.store import IdentityStore
from auth.tokens import TokenClaims, TokenIssuer
from core.models import ErrorKind, Result, Role
from core.timeutil import Clock, utcnow

logger = logging.getLogger("keyguard.auth")

# Roles a person may pick for themselves at registration. Anything more
# privileged is granted afterwards by someone who can_manage_user() them.
SELF_SERVICE_ROLES = frozenset({Role.faculty, Role.security})


@dataclass(frozen=True)
class LoginOutcome:
    identity: Identity
    token: str


@dataclass(frozen=True)
class ChallengeOutcome:
    identity: Identity | None
    challenge: IssuedChallenge
    created: bool = False


class AuthService:
    def __init__(
        self,
        identities: IdentityStore,
        otp: OTPManager,
        guard: AccountGuard,
        tokens: TokenIssuer,
        allowed_domain: str = "",
        clock: Clock = utcnow,
    ) -> None:
        self.identities = identities
        self.otp = otp
        self.guard = guard
        self.tokens = tokens
        self.allowed_domain = allowed_domain
        self._clock = clock

    # ------------------------------------------------------------------
    # Challenge issue
    # ------------------------------------------------------------------

    def _check_email(self, email: str) -> Result:
        if not provisioning.is_valid_email(email, self.allowed_domain):
            reason = "invalid_email_domain" if self.allowed_domain else "invalid_email"
            return Result.failure(ErrorKind.VALIDATION, reason)
        return Result.success()

    def _check_can_authenticate(self, identity: Identity | None) -> Result:
        if identity is None:
            return Result.failure(ErrorKind.NOT_FOUND, "identity_not_found")
        if not identity.is_active:
            return Result.failure(ErrorKind.FORBIDDEN, "account_deactivated")
        if self.guard.is_locked(identity):
            return Result.failure(ErrorKind.ACCOUNT_LOCKED, "account_locked")
        return Result.success()

    def _issue(self, email: str, purpose: OTPPurpose, identity: Identity | None, created: bool = False) -> Result:
        issued = self.otp.create_challenge(email, purpose, enforce_window=True)
        if not issued.ok:
            return issued
        return Result.success(ChallengeOutcome(identity=identity, challenge=issued.value, created=created))

    def request_otp(self, email: str, purpose: OTPPurpose = OTPPurpose.login) -> Result:
        """Issue a code for an existing identity (any identity may be absent for registration)."""
        checked = self._check_email(email)
        if not checked.ok:
            return checked
        purpose = OTPPurpose(purpose)
        identity = self.identities.find_by_channel(email)
        if purpose is not OTPPurpose.registration:
            usable = self._check_can_authenticate(identity)
            if not usable.ok:
                return usable
        return self._issue(email, purpose, identity)

    def simple_auth(self, email: str) -> Result:
        """Create the identity from its address if needed, then send a login code."""
        checked = self._check_email(email)
        if not checked.ok:
            return checked
        identity = self.identities.find_by_channel(email)
        created = False
        if identity is None:
            profile = provisioning.profile_from_email(email)
            identity = Identity(
                email=profile.email,
                name=profile.name,
                role=profile.role,
                department=profile.department,
                employee_id=profile.employee_id,
                is_email_verified=True,
                created_at=self._clock(),
            )
            try:
                identity.id = self.identities.create_identity(identity)
                created = True
                logger.info("Provisioned identity %s as %s (%s)", identity.email, identity.role.value, identity.department)
            except IntegrityError:
                # Another request provisioned the same address first.
                identity = self.identities.find_by_channel(email)
                if identity is None:
                    return Result.failure(ErrorKind.CONFLICT, "identity_exists")
        usable = self._check_can_authenticate(identity)
        if not usable.ok:
            return usable
        return self._issue(email, OTPPurpose.login, identity, created=created)

    def register(
        self,
        email: str,
        name: str,
        department: str,
        role: Role = Role.faculty,
        employee_id: str | None = None,
    ) -> Result:
        """Create an unverified identity and send an email_verification code."""
        checked = self._check_email(email)
        if not checked.ok:
            return checked
        parsed = Role.parse(role)
        if parsed is None:
            return Result.failure(ErrorKind.VALIDATION, "unknown_role")
        if parsed not in SELF_SERVICE_ROLES:
            return Result.failure(ErrorKind.FORBIDDEN, "role_requires_approval")
        if not name.strip() or not department.strip():
            return Result.failure(ErrorKind.VALIDATION, "missing_profile_fields")
        identity = Identity(
            email=email.strip().lower(),
            name=name.strip(),
            role=parsed,
            department=department.strip(),
            employee_id=employee_id.strip().upper() if employee_id else None,
            created_at=self._clock(),
        )
        try:
            identity.id = self.identities.create_identity(identity)
        except IntegrityError:
            return Result.failure(ErrorKind.CONFLICT, "identity_exists")
        logger.info("Registered identity %s as %s", identity.email, parsed.value)
        return self._issue(identity.email, OTPPurpose.email_verification, identity, created=True)

    # ------------------------------------------------------------------
    # Challenge verification
    # ------------------------------------------------------------------

    def login(self, email: str, code: str) -> Result:
        """Verify a login code and return Result(value=LoginOutcome)."""
        identity = self.identities.find_by_channel(email)
        if identity is None:
            return Result.failure(ErrorKind.UNAUTHORIZED, "invalid_credentials")
        usable = self._check_can_authenticate(identity)
        if not usable.ok:
            return usable

        verified = self.otp.verify(identity.email, code, OTPPurpose.login)
        if not verified.ok:
            updated = self.guard.record_failure(identity.id)
            if updated is not None and self.guard.is_locked(updated):
                logger.warning("Login failed for %s; account now locked", identity.email)
            else:
                logger.info("Login failed for %s (%s)", identity.email, verified.reason)
            return verified

        now = self._clock()
        self.guard.record_success(identity.id)
        self.identities.update_last_login(identity.id, now)
        identity.failed_attempts = 0
        identity.lock_until = None
        identity.last_login = now
        token = self.tokens.issue(identity.id, identity.role)
        logger.info("Identity %s logged in (%s)", identity.email, identity.role.value)
        return Result.success(LoginOutcome(identity=identity, token=token))

    def verify_email(self, email: str, code: str) -> Result:
        identity = self.identities.find_by_channel(email)
        if identity is None:
            return Result.failure(ErrorKind.NOT_FOUND, "identity_not_found")
        verified = self.otp.verify(identity.email, code, OTPPurpose.email_verification)
        if not verified.ok:
            return verified
        self.identities.update_identity(identity.id, is_email_verified=True)
        identity.is_email_verified = True
        return Result.success(identity)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def authenticate(self, token: str) -> Result:
        """Verify a session token and reload its identity.

        The role in the result is the stored one, so a role change takes
        effect on the next request even though old tokens stay signed.
        """
        verified = self.tokens.verify(token)
        if not verified.ok:
            return verified
        claims: TokenClaims = verified.value
        identity = self.identities.get_by_id(claims.identity_id)
        if identity is None or identity.deleted_at is not None:
            return Result.failure(ErrorKind.UNAUTHORIZED, "unknown_identity")
        if not identity.is_active:
            return Result.failure(ErrorKind.FORBIDDEN, "account_deactivated")
        return Result.success(identity)

    def refresh(self, token: str) -> Result:
        return self.tokens.refresh(token)

    def logout(self, identity: Identity) -> int:
        """Drop any outstanding login codes. The session token itself simply expires."""
        return self.otp.invalidate_all(identity.email, OTPPurpose.login)

    def remove_identity(self, identity: Identity) -> bool:
        """Soft-delete an identity and drop every outstanding code it has."""
        removed = self.identities.soft_delete(identity.id, self._clock())
        if removed:
            self.otp.invalidate_all(identity.email)
        return removed

    def stats(self) -> dict:
        since = self._clock() - timedelta(days=1)
        return {"otp": self.otp.stats(), "identities": self.identities.count_by_role(since)}
