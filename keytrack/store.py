"""
keytrack/store.py -- SQLAlchemy Core persistence for keys and their audit trail.

Pattern: Repository + Data Mapper. KeyStore is the repository; _row_to_key /
_row_to_event are the mappers.

Concurrency:
  Every state change goes through compare_and_swap(). It writes the new Key
  only if the row still carries the version the caller read:

      UPDATE keys SET ..., version = :v + 1 WHERE key_id = :id AND version = :v

  and, in the same transaction, appends the KeyEvent. Two callers racing on
  the same key both read version v; the database lets exactly one UPDATE
  match, and the other sees rowcount 0 and reports a conflict. A lost race
  never leaves an audit row behind.

Overdue detection is a query over (status, expected_return_at), evaluated
against the caller's `now`. It is never stored as a status.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    func,
    select,
)
from sqlalchemy.engine import Engine

from core.database import make_engine
from core.models import Role
from core.timeutil import from_iso, to_iso
from keytrack.models import DEFAULT_PURPOSE, Assignment, Key, KeyAction, KeyCategory, KeyEvent, KeyStatus

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'keyguard.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_keys = Table(
    "keys",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("key_id", String(50), nullable=False, unique=True),
    Column("name", String(100), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("location", String(200), nullable=False, server_default=""),
    Column("department", String(100), nullable=False),
    Column("category", String(30), nullable=False, server_default="other"),
    Column("status", String(20), nullable=False, server_default="available"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("max_allowed_minutes", Integer, nullable=False, server_default="480"),
    Column("allowed_roles", Text, nullable=False, server_default="[]"),  # JSON array
    Column("qr_code", String(100), nullable=False, server_default=""),
    Column("holder_id", Integer),
    Column("assigned_at", String(32)),
    Column("expected_return_at", String(32)),
    Column("purpose", String(200)),
    Column("last_maintenance", String(32)),
    Column("maintenance_notes", Text),
    Column("version", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
)

_events = Table(
    "key_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("key_id", String(50), nullable=False),
    Column("action", String(20), nullable=False),
    Column("actor_id", Integer),
    Column("holder_id", Integer),
    Column("from_status", String(20)),
    Column("to_status", String(20), nullable=False),
    Column("notes", Text),
    Column("occurred_at", String(32), nullable=False),
)

Index("ix_keys_status_return", _keys.c.status, _keys.c.expected_return_at)
Index("ix_keys_holder", _keys.c.holder_id)
Index("ix_key_events_key", _events.c.key_id, _events.c.occurred_at)


def _key_values(key: Key) -> dict:
    """Column values for every mutable field of a Key (everything except id, key_id, version)."""
    a = key.assignment
    return {
        "name": key.name,
        "description": key.description,
        "location": key.location,
        "department": key.department,
        "category": KeyCategory(key.category).value,
        "status": KeyStatus(key.status).value,
        "is_active": 1 if key.is_active else 0,
        "max_allowed_minutes": key.max_allowed_minutes,
        "allowed_roles": json.dumps([Role(r).value for r in key.allowed_roles]),
        "qr_code": key.qr_code,
        "holder_id": a.holder_id if a else None,
        "assigned_at": to_iso(a.assigned_at) if a else None,
        "expected_return_at": to_iso(a.expected_return_at) if a else None,
        "purpose": a.purpose if a else None,
        "last_maintenance": to_iso(key.last_maintenance),
        "maintenance_notes": key.maintenance_notes,
        "updated_at": to_iso(key.updated_at),
        "deleted_at": to_iso(key.deleted_at),
    }


class KeyStore:
    """Repository for Key records and their KeyEvent audit trail.

    Usage:
        store = KeyStore()
        store.create_key(key, actor_id=1)
        key = store.get("LAB-101")
        ok = store.compare_and_swap(next_key, expected_version=key.version, audit=evt)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = make_engine(db_url, metadata)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_key(self, key: Key, actor_id: int | None = None) -> int:
        """Insert a new key with version 0 and a "created" event. Returns the row id.

        Raises sqlalchemy.exc.IntegrityError if key_id is already taken,
        including by a deactivated key. Callers treat that as a CONFLICT.
        """
        values = _key_values(key)
        values.update(key_id=key.key_id.upper(), version=0, created_at=to_iso(key.created_at))
        with self.engine.connect() as conn:
            result = conn.execute(_keys.insert().values(**values))
            conn.execute(
                _events.insert().values(
                    key_id=key.key_id.upper(),
                    action=KeyAction.created.value,
                    actor_id=actor_id,
                    from_status=None,
                    to_status=KeyStatus(key.status).value,
                    occurred_at=to_iso(key.created_at),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def compare_and_swap(self, key: Key, expected_version: int, audit: KeyEvent) -> bool:
        """Persist `key` only if the stored version still equals expected_version.

        On success the stored version becomes expected_version + 1 and `audit`
        is appended, both in one transaction. Returns False (and writes
        nothing) when another writer got there first.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _keys.update()
                .where((_keys.c.key_id == key.key_id) & (_keys.c.version == expected_version))
                .values(version=expected_version + 1, **_key_values(key))
            )
            if result.rowcount == 0:
                conn.rollback()
                return False
            conn.execute(
                _events.insert().values(
                    key_id=audit.key_id,
                    action=KeyAction(audit.action).value,
                    actor_id=audit.actor_id,
                    holder_id=audit.holder_id,
                    from_status=KeyStatus(audit.from_status).value if audit.from_status else None,
                    to_status=KeyStatus(audit.to_status).value,
                    notes=audit.notes,
                    occurred_at=to_iso(audit.occurred_at),
                )
            )
            conn.commit()
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key_id: str) -> Key | None:
        """Fetch by key_id, case-insensitively. Deactivated keys are returned; check deleted_at."""
        with self.engine.connect() as conn:
            row = conn.execute(_keys.select().where(_keys.c.key_id == key_id.strip().upper())).fetchone()
        return _row_to_key(row) if row is not None else None

    def list_keys(
        self,
        department: str | None = None,
        category: KeyCategory | None = None,
        status: KeyStatus | None = None,
        holder_id: int | None = None,
    ) -> list[Key]:
        """Return live keys ordered by key_id, optionally filtered."""
        stmt = _keys.select().where(_keys.c.deleted_at.is_(None))
        if department:
            stmt = stmt.where(_keys.c.department == department)
        if category is not None:
            stmt = stmt.where(_keys.c.category == KeyCategory(category).value)
        if status is not None:
            stmt = stmt.where(_keys.c.status == KeyStatus(status).value)
        if holder_id is not None:
            stmt = stmt.where(_keys.c.holder_id == holder_id)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(_keys.c.key_id)).fetchall()
        return [_row_to_key(r) for r in rows]

    def list_overdue(self, now: datetime, department: str | None = None, holder_id: int | None = None) -> list[Key]:
        """Assigned keys whose expected return is before `now`, most overdue first."""
        stmt = _keys.select().where(
            (_keys.c.deleted_at.is_(None))
            & (_keys.c.status == KeyStatus.assigned.value)
            & (_keys.c.expected_return_at < to_iso(now))
        )
        if department:
            stmt = stmt.where(_keys.c.department == department)
        if holder_id is not None:
            stmt = stmt.where(_keys.c.holder_id == holder_id)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(_keys.c.expected_return_at)).fetchall()
        return [_row_to_key(r) for r in rows]

    def history(self, key_id: str, limit: int = 100) -> list[KeyEvent]:
        """Audit events for one key, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _events.select()
                .where(_events.c.key_id == key_id.strip().upper())
                .order_by(_events.c.occurred_at.desc(), _events.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def _counts_by(self, column, now: datetime) -> dict[str, dict[str, int]]:
        """Per-group status counts in one query via conditional aggregation.

        Returns {group: {"total", "available", "assigned", "maintenance",
        "lost", "damaged", "overdue"}} for live keys.
        """
        counts = [
            func.count(case((_keys.c.status == s.value, 1))).label(s.value) for s in KeyStatus
        ]
        overdue = func.count(
            case(
                (
                    (_keys.c.status == KeyStatus.assigned.value) & (_keys.c.expected_return_at < to_iso(now)),
                    1,
                )
            )
        ).label("overdue")
        stmt = (
            select(column.label("grp"), func.count().label("total"), *counts, overdue)
            .where(_keys.c.deleted_at.is_(None))
            .group_by(column)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        result: dict[str, dict[str, int]] = {}
        for row in rows:
            mapping = row._mapping
            entry = {"total": mapping["total"], "overdue": mapping["overdue"]}
            entry.update({s.value: mapping[s.value] for s in KeyStatus})
            result[row.grp] = entry
        return result

    def stats_by_department(self, now: datetime) -> dict[str, dict[str, int]]:
        return self._counts_by(_keys.c.department, now)

    def stats_by_category(self, now: datetime) -> dict[str, dict[str, int]]:
        return self._counts_by(_keys.c.category, now)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_key(row) -> Key:
    assignment = None
    if row.holder_id is not None and row.status == KeyStatus.assigned.value:
        assignment = Assignment(
            holder_id=row.holder_id,
            assigned_at=from_iso(row.assigned_at),
            expected_return_at=from_iso(row.expected_return_at),
            purpose=row.purpose or DEFAULT_PURPOSE,
        )
    roles = tuple(r for r in (Role.parse(v) for v in json.loads(row.allowed_roles or "[]")) if r is not None)
    return Key(
        id=row.id,
        key_id=row.key_id,
        name=row.name,
        description=row.description or "",
        location=row.location or "",
        department=row.department,
        category=KeyCategory(row.category),
        status=KeyStatus(row.status),
        is_active=bool(row.is_active),
        max_allowed_minutes=row.max_allowed_minutes,
        allowed_roles=roles,
        qr_code=row.qr_code or "",
        assignment=assignment,
        last_maintenance=from_iso(row.last_maintenance),
        maintenance_notes=row.maintenance_notes,
        version=row.version,
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
        deleted_at=from_iso(row.deleted_at),
    )


def _row_to_event(row) -> KeyEvent:
    return KeyEvent(
        id=row.id,
        key_id=row.key_id,
        action=KeyAction(row.action),
        actor_id=row.actor_id,
        holder_id=row.holder_id,
        from_status=KeyStatus(row.from_status) if row.from_status else None,
        to_status=KeyStatus(row.to_status),
        notes=row.notes,
        occurred_at=from_iso(row.occurred_at),
    )
