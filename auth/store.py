"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper (same as keytrack/store.py).
IdentityStore and ChallengeStore are the repositories; _row_to_identity /
_row_to_challenge are the mappers. Services never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Challenges store an HMAC digest of the code, never the code itself.

Concurrency:
  Login-state changes (failure counter, lock) are applied with
  swap_login_state(), a compare-and-swap on the (failed_attempts, lock_until)
  pair. Attempt increments and consumption of a challenge are single
  conditional UPDATEs, so the database decides the winner.

  The partial unique index uq_active_challenge allows at most one unused
  challenge per (email, purpose). insert_replacing_active() invalidates the
  old ones and inserts the new one in a single transaction; a concurrent
  insert that slips in between raises IntegrityError, which the OTP manager
  retries.

Timestamps are ISO 8601 strings (core.timeutil.to_iso) so string order is
time order.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    case,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Identity, OTPChallenge, OTPPurpose
from core.database import make_engine
from core.models import Role
from core.timeutil import from_iso, to_iso, utcnow

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'keyguard.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_identities = Table(
    "identities",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(100), nullable=False),
    Column("employee_id", String(50), unique=True),
    Column("role", String(30), nullable=False, server_default="faculty"),
    Column("department", String(100), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_email_verified", Integer, nullable=False, server_default="0"),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("lock_until", String(32)),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
)

_challenges = Table(
    "otp_challenges",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False),
    Column("purpose", String(30), nullable=False),
    Column("code_hash", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("is_used", Integer, nullable=False, server_default="0"),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)

Index("ix_otp_email_purpose_created", _challenges.c.email, _challenges.c.purpose, _challenges.c.created_at)
Index(
    "uq_active_challenge",
    _challenges.c.email,
    _challenges.c.purpose,
    unique=True,
    sqlite_where=_challenges.c.is_used == 0,
    postgresql_where=_challenges.c.is_used == 0,
)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Identity repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for Identity records.

    Usage:
        store = IdentityStore()
        uid = store.create_identity(Identity(email="a@x.in", name="A", role=Role.faculty, department="CSE"))
        identity = store.find_by_channel("a@x.in")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = make_engine(db_url, _metadata)

    def has_identities(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_identities)).scalar()
        return (result or 0) > 0

    def create_identity(self, identity: Identity) -> int:
        """Insert a new identity and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email or employee_id is
        already taken. Callers treat that as a CONFLICT.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _identities.insert().values(
                    email=_normalize_email(identity.email),
                    name=identity.name,
                    employee_id=identity.employee_id,
                    role=Role(identity.role).value,
                    department=identity.department,
                    is_active=1 if identity.is_active else 0,
                    is_email_verified=1 if identity.is_email_verified else 0,
                    created_at=to_iso(identity.created_at or utcnow()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, identity_id: int) -> Identity | None:
        """Look up by primary key. Soft-deleted records are returned; check deleted_at."""
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.id == identity_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def find_by_channel(self, email: str) -> Identity | None:
        """Look up a live (not soft-deleted) identity by email, case-insensitively."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _identities.select().where(
                    (_identities.c.email == _normalize_email(email)) & (_identities.c.deleted_at.is_(None))
                )
            ).fetchone()
        return _row_to_identity(row) if row is not None else None

    def list_identities(self, role: Role | None = None, department: str | None = None) -> list[Identity]:
        """Return live identities ordered by email, optionally filtered."""
        stmt = _identities.select().where(_identities.c.deleted_at.is_(None))
        if role is not None:
            stmt = stmt.where(_identities.c.role == Role(role).value)
        if department:
            stmt = stmt.where(_identities.c.department == department)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(_identities.c.email)).fetchall()
        return [_row_to_identity(r) for r in rows]

    def update_identity(self, identity_id: int, **fields) -> bool:
        """Update profile fields on a live identity.

        Accepted fields: name, role, department, employee_id, is_active,
        is_email_verified. Login-state fields are deliberately not accepted
        here -- use swap_login_state().

        Returns True if a row was updated, False if not found or deleted.
        """
        allowed = {"name", "role", "department", "employee_id", "is_active", "is_email_verified"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown identity fields: {unknown!r}")
        if not fields:
            return False
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        for flag in ("is_active", "is_email_verified"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        with self.engine.connect() as conn:
            result = conn.execute(
                _identities.update()
                .where((_identities.c.id == identity_id) & (_identities.c.deleted_at.is_(None)))
                .values(**fields)
            )
            conn.commit()
        return result.rowcount > 0

    def swap_login_state(
        self,
        identity_id: int,
        expected: tuple[int, datetime | None],
        new: tuple[int, datetime | None],
    ) -> bool:
        """Compare-and-swap (failed_attempts, lock_until).

        Writes `new` only if the row still holds `expected`. Returns False
        when another request changed the state first; the caller re-reads
        and retries.
        """
        expected_attempts, expected_lock = expected
        new_attempts, new_lock = new
        lock_clause = (
            _identities.c.lock_until.is_(None)
            if expected_lock is None
            else _identities.c.lock_until == to_iso(expected_lock)
        )
        with self.engine.connect() as conn:
            result = conn.execute(
                _identities.update()
                .where(
                    (_identities.c.id == identity_id)
                    & (_identities.c.failed_attempts == expected_attempts)
                    & lock_clause
                )
                .values(failed_attempts=new_attempts, lock_until=to_iso(new_lock))
            )
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, identity_id: int, when: datetime) -> None:
        with self.engine.connect() as conn:
            conn.execute(_identities.update().where(_identities.c.id == identity_id).values(last_login=to_iso(when)))
            conn.commit()

    def soft_delete(self, identity_id: int, when: datetime) -> bool:
        """Mark an identity deleted and inactive. The row itself is kept."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _identities.update()
                .where((_identities.c.id == identity_id) & (_identities.c.deleted_at.is_(None)))
                .values(deleted_at=to_iso(when), is_active=0)
            )
            conn.commit()
        return result.rowcount > 0

    def count_by_role(self, since: datetime) -> dict[str, dict[str, int]]:
        """Return {role: {"total", "active", "verified", "recent_logins"}} for live identities.

        recent_logins counts identities whose last_login is at or after `since`.
        Uses conditional aggregation in one query.
        """
        recent = func.count(case((_identities.c.last_login >= to_iso(since), 1)))
        stmt = (
            select(
                _identities.c.role,
                func.count().label("total"),
                func.count(case((_identities.c.is_active == 1, 1))).label("active"),
                func.count(case((_identities.c.is_email_verified == 1, 1))).label("verified"),
                recent.label("recent_logins"),
            )
            .where(_identities.c.deleted_at.is_(None))
            .group_by(_identities.c.role)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return {
            row.role: {
                "total": row.total,
                "active": row.active,
                "verified": row.verified,
                "recent_logins": row.recent_logins,
            }
            for row in rows
        }

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Challenge repository
# ---------------------------------------------------------------------------


class ChallengeStore:
    """Repository for OTPChallenge records."""

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = make_engine(db_url, _metadata)

    def insert_replacing_active(
        self,
        challenge: OTPChallenge,
        window_since: datetime | None = None,
        window_limit: int | None = None,
    ) -> int | None:
        """Invalidate every unused challenge for (email, purpose), then insert this one.

        Everything runs in one transaction. The invalidating UPDATE comes
        first so the connection holds the write lock before anything is
        counted. With window_since and window_limit set, the insert only
        happens while fewer than window_limit challenges were created for the
        pair since window_since; otherwise the transaction is rolled back and
        None is returned.

        Raises IntegrityError if a concurrent request inserted an unused
        challenge for the same pair between the two statements.
        """
        email = _normalize_email(challenge.email)
        purpose = OTPPurpose(challenge.purpose).value
        with self.engine.connect() as conn:
            conn.execute(
                _challenges.update()
                .where(
                    (_challenges.c.email == email)
                    & (_challenges.c.purpose == purpose)
                    & (_challenges.c.is_used == 0)
                )
                .values(is_used=1)
            )
            if window_since is not None and window_limit is not None:
                recent = conn.execute(
                    select(func.count())
                    .select_from(_challenges)
                    .where(
                        (_challenges.c.email == email)
                        & (_challenges.c.purpose == purpose)
                        & (_challenges.c.created_at >= to_iso(window_since))
                    )
                ).scalar()
                if (recent or 0) >= window_limit:
                    conn.rollback()
                    return None
            result = conn.execute(
                _challenges.insert().values(
                    email=email,
                    purpose=purpose,
                    code_hash=challenge.code_hash,
                    attempts=challenge.attempts,
                    is_used=0,
                    expires_at=to_iso(challenge.expires_at),
                    created_at=to_iso(challenge.created_at),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def latest_unused(self, email: str, purpose: OTPPurpose) -> OTPChallenge | None:
        """Return the newest unused challenge for the pair, expired or not."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _challenges.select()
                .where(
                    (_challenges.c.email == _normalize_email(email))
                    & (_challenges.c.purpose == OTPPurpose(purpose).value)
                    & (_challenges.c.is_used == 0)
                )
                .order_by(_challenges.c.created_at.desc(), _challenges.c.id.desc())
                .limit(1)
            ).fetchone()
        return _row_to_challenge(row) if row is not None else None

    def get(self, challenge_id: int) -> OTPChallenge | None:
        with self.engine.connect() as conn:
            row = conn.execute(_challenges.select().where(_challenges.c.id == challenge_id)).fetchone()
        return _row_to_challenge(row) if row is not None else None

    def increment_attempts(self, challenge_id: int, max_attempts: int) -> int | None:
        """Atomically add one attempt to a live challenge.

        Returns the new attempt count, or None if the challenge was already
        used or exhausted (nothing was incremented).
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _challenges.update()
                .where(
                    (_challenges.c.id == challenge_id)
                    & (_challenges.c.is_used == 0)
                    & (_challenges.c.attempts < max_attempts)
                )
                .values(attempts=_challenges.c.attempts + 1)
            )
            if result.rowcount == 0:
                conn.commit()
                return None
            attempts = conn.execute(
                select(_challenges.c.attempts).where(_challenges.c.id == challenge_id)
            ).scalar_one()
            conn.commit()
        return attempts

    def consume(self, challenge_id: int, max_attempts: int, now: datetime) -> bool:
        """Mark a challenge used if it is still valid at `now`. True if this call won."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _challenges.update()
                .where(
                    (_challenges.c.id == challenge_id)
                    & (_challenges.c.is_used == 0)
                    & (_challenges.c.attempts < max_attempts)
                    & (_challenges.c.expires_at > to_iso(now))
                )
                .values(is_used=1)
            )
            conn.commit()
        return result.rowcount > 0

    def count_created_since(self, email: str, purpose: OTPPurpose, since: datetime) -> int:
        """Count challenges (used or not) created for the pair at or after `since`."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_challenges)
                .where(
                    (_challenges.c.email == _normalize_email(email))
                    & (_challenges.c.purpose == OTPPurpose(purpose).value)
                    & (_challenges.c.created_at >= to_iso(since))
                )
            ).scalar()
        return result or 0

    def invalidate(self, email: str, purpose: OTPPurpose | None = None) -> int:
        """Mark every unused challenge for the email (optionally one purpose) used."""
        clause = (_challenges.c.email == _normalize_email(email)) & (_challenges.c.is_used == 0)
        if purpose is not None:
            clause = clause & (_challenges.c.purpose == OTPPurpose(purpose).value)
        with self.engine.connect() as conn:
            result = conn.execute(_challenges.update().where(clause).values(is_used=1))
            conn.commit()
        return result.rowcount

    def purge(self, now: datetime, used_before: datetime) -> int:
        """Delete expired challenges and used challenges created before `used_before`.

        Space reclamation only. Validity never depends on whether a row has
        been purged yet.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _challenges.delete().where(
                    (_challenges.c.expires_at < to_iso(now))
                    | ((_challenges.c.is_used == 1) & (_challenges.c.created_at < to_iso(used_before)))
                )
            )
            conn.commit()
        return result.rowcount

    def stats(self, now: datetime, hour_ago: datetime, day_ago: datetime) -> dict:
        """Return active / last-hour / last-day counts and a last-day breakdown by purpose."""
        with self.engine.connect() as conn:
            active = conn.execute(
                select(func.count())
                .select_from(_challenges)
                .where((_challenges.c.is_used == 0) & (_challenges.c.expires_at > to_iso(now)))
            ).scalar()
            last_hour = conn.execute(
                select(func.count()).select_from(_challenges).where(_challenges.c.created_at >= to_iso(hour_ago))
            ).scalar()
            rows = conn.execute(
                select(_challenges.c.purpose, func.count().label("n"))
                .where(_challenges.c.created_at >= to_iso(day_ago))
                .group_by(_challenges.c.purpose)
            ).fetchall()
        by_purpose = {row.purpose: row.n for row in rows}
        return {
            "total_active": active or 0,
            "last_hour": last_hour or 0,
            "last_day": sum(by_purpose.values()),
            "by_purpose": by_purpose,
        }

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        email=row.email,
        name=row.name,
        employee_id=row.employee_id,
        role=Role(row.role),
        department=row.department,
        is_active=bool(row.is_active),
        is_email_verified=bool(row.is_email_verified),
        failed_attempts=row.failed_attempts or 0,
        lock_until=from_iso(row.lock_until),
        last_login=from_iso(row.last_login),
        created_at=from_iso(row.created_at),
        deleted_at=from_iso(row.deleted_at),
    )


def _row_to_challenge(row) -> OTPChallenge:
    return OTPChallenge(
        id=row.id,
        email=row.email,
        purpose=OTPPurpose(row.purpose),
        code_hash=row.code_hash,
        attempts=row.attempts,
        is_used=bool(row.is_used),
        expires_at=from_iso(row.expires_at),
        created_at=from_iso(row.created_at),
    )
