"""
keytrack/transitions.py -- The key state machine as pure functions.

    available --assign--> assigned --return_key--> available
    available|assigned --mark_maintenance--> maintenance --mark_available--> available
    any non-incident status --flag_incident--> lost | damaged --mark_available--> available

Each function takes the current Key and `now`, and returns a Result whose
value is the next Key. A failed Result means the input key is untouched
(Keys are frozen; there is nothing to roll back). None of these functions
bump version or touch storage -- KeyStore.compare_and_swap() does that.
"""

from __future__ import annotations

import re
from dataclasses import replace
from datetime import datetime, timedelta

from core.models import ErrorKind, Result, Role
from keytrack.models import (
    DEFAULT_ALLOWED_MINUTES,
    DEFAULT_PURPOSE,
    INCIDENT_STATUSES,
    MAX_ALLOWED_MINUTES,
    MIN_ALLOWED_MINUTES,
    Assignment,
    Key,
    KeyCategory,
    KeyStatus,
)

_KEY_ID_RE = re.compile(r"^[A-Z0-9][A-Z0-9_-]{0,49}$")

EDITABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "location",
        "department",
        "category",
        "max_allowed_minutes",
        "allowed_roles",
        "qr_code",
        "is_active",
    }
)


# ---------------------------------------------------------------------------
# Creation and edits
# ---------------------------------------------------------------------------


def _clean_fields(fields: dict) -> Result:
    """Normalize editable fields. Returns Result(value=<cleaned dict>) or VALIDATION."""
    cleaned: dict = {}
    for name, value in fields.items():
        if name not in EDITABLE_FIELDS:
            return Result.failure(ErrorKind.VALIDATION, f"unknown_field:{name}")
        if name in ("name", "department"):
            value = (value or "").strip()
            if not value:
                return Result.failure(ErrorKind.VALIDATION, f"missing_{name}")
        elif name in ("description", "location", "qr_code"):
            value = (value or "").strip()
        elif name == "category":
            try:
                value = KeyCategory(value)
            except ValueError:
                return Result.failure(ErrorKind.VALIDATION, "unknown_category")
        elif name == "max_allowed_minutes":
            if not isinstance(value, int) or not MIN_ALLOWED_MINUTES <= value <= MAX_ALLOWED_MINUTES:
                return Result.failure(ErrorKind.VALIDATION, "max_allowed_minutes_out_of_range")
        elif name == "allowed_roles":
            roles = []
            for raw in value or ():
                role = Role.parse(raw)
                if role is None:
                    return Result.failure(ErrorKind.VALIDATION, "unknown_role")
                if role not in roles:
                    roles.append(role)
            value = tuple(roles)
        elif name == "is_active":
            value = bool(value)
        cleaned[name] = value
    return Result.success(cleaned)


def new_key(
    key_id: str,
    name: str,
    department: str,
    now: datetime,
    category: KeyCategory | str = KeyCategory.other,
    location: str = "",
    description: str = "",
    max_allowed_minutes: int = DEFAULT_ALLOWED_MINUTES,
    allowed_roles: tuple = (),
    qr_code: str = "",
) -> Result:
    """Validate inputs and build an available, unpersisted Key."""
    normalized_id = (key_id or "").strip().upper()
    if not _KEY_ID_RE.match(normalized_id):
        return Result.failure(ErrorKind.VALIDATION, "invalid_key_id")
    cleaned = _clean_fields(
        {
            "name": name,
            "department": department,
            "category": category,
            "location": location,
            "description": description,
            "max_allowed_minutes": max_allowed_minutes,
            "allowed_roles": allowed_roles,
            "qr_code": qr_code,
        }
    )
    if not cleaned.ok:
        return cleaned
    fields = cleaned.value
    if not fields["qr_code"]:
        fields["qr_code"] = f"{normalized_id}-QR"
    return Result.success(Key(key_id=normalized_id, created_at=now, updated_at=now, **fields))


def update_details(key: Key, fields: dict, now: datetime) -> Result:
    """Apply descriptive edits. Status and custody are never edited here."""
    cleaned = _clean_fields(fields)
    if not cleaned.ok:
        return cleaned
    changes = cleaned.value
    if changes.get("is_active") is False and key.status is KeyStatus.assigned:
        return Result.failure(ErrorKind.CONFLICT, "key_assigned")
    return Result.success(replace(key, updated_at=now, **changes))


def deactivate(key: Key, now: datetime) -> Result:
    """Soft-delete. Refused while someone holds the key."""
    if key.status is KeyStatus.assigned:
        return Result.failure(ErrorKind.CONFLICT, "key_assigned")
    if key.deleted_at is not None:
        return Result.failure(ErrorKind.CONFLICT, "already_deactivated")
    return Result.success(replace(key, is_active=False, deleted_at=now, updated_at=now))


# ---------------------------------------------------------------------------
# Custody
# ---------------------------------------------------------------------------


def effective_minutes(key: Key, requested_minutes: int | None) -> Result:
    """None means the key's maximum; anything larger is capped to it."""
    if requested_minutes is None:
        return Result.success(key.max_allowed_minutes)
    if requested_minutes <= 0:
        return Result.failure(ErrorKind.VALIDATION, "duration_not_positive")
    return Result.success(min(requested_minutes, key.max_allowed_minutes))


def assign(
    key: Key,
    holder_id: int,
    now: datetime,
    purpose: str | None = None,
    requested_minutes: int | None = None,
) -> Result:
    if key.status is not KeyStatus.available:
        return Result.failure(ErrorKind.CONFLICT, f"key_{key.status.value}")
    if not key.is_active:
        return Result.failure(ErrorKind.CONFLICT, "key_inactive")
    minutes = effective_minutes(key, requested_minutes)
    if not minutes.ok:
        return minutes
    assignment = Assignment(
        holder_id=holder_id,
        assigned_at=now,
        expected_return_at=now + timedelta(minutes=minutes.value),
        purpose=(purpose or "").strip() or DEFAULT_PURPOSE,
    )
    return Result.success(replace(key, status=KeyStatus.assigned, assignment=assignment, updated_at=now))


def return_key(key: Key, now: datetime) -> Result:
    if key.status is not KeyStatus.assigned:
        return Result.failure(ErrorKind.CONFLICT, "key_not_assigned")
    return Result.success(replace(key, status=KeyStatus.available, assignment=None, updated_at=now))


def mark_maintenance(key: Key, now: datetime, notes: str | None = None) -> Result:
    """Allowed from any status. Drops whatever assignment the key had."""
    return Result.success(
        replace(
            key,
            status=KeyStatus.maintenance,
            assignment=None,
            last_maintenance=now,
            maintenance_notes=notes if notes else key.maintenance_notes,
            updated_at=now,
        )
    )


def mark_available(key: Key, now: datetime) -> Result:
    if key.status is KeyStatus.assigned:
        return Result.failure(ErrorKind.CONFLICT, "key_assigned")
    return Result.success(replace(key, status=KeyStatus.available, assignment=None, updated_at=now))


def flag_incident(key: Key, status: KeyStatus | str, now: datetime) -> Result:
    """Mark a key lost or damaged. Only mark_available leaves those states."""
    try:
        target = KeyStatus(status)
    except ValueError:
        return Result.failure(ErrorKind.VALIDATION, "unknown_status")
    if target not in INCIDENT_STATUSES:
        return Result.failure(ErrorKind.VALIDATION, "not_an_incident_status")
    if key.status in INCIDENT_STATUSES:
        return Result.failure(ErrorKind.CONFLICT, f"key_{key.status.value}")
    return Result.success(replace(key, status=target, assignment=None, updated_at=now))


# ---------------------------------------------------------------------------
# Derived predicates (never stored)
# ---------------------------------------------------------------------------


def can_be_accessed_by(key: Key, role: Role | str) -> bool:
    if not key.allowed_roles:
        return True
    parsed = Role.parse(role)
    return parsed is not None and parsed in key.allowed_roles


def is_overdue(key: Key, now: datetime) -> bool:
    return (
        key.status is KeyStatus.assigned
        and key.assignment is not None
        and now > key.assignment.expected_return_at
    )


def minutes_remaining(key: Key, now: datetime) -> int | None:
    """Whole minutes until the expected return; negative once overdue. None unless assigned."""
    if key.status is not KeyStatus.assigned or key.assignment is None:
        return None
    seconds = (key.assignment.expected_return_at - now).total_seconds()
    return int(seconds // 60)
