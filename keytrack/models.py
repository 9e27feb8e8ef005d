"""
keytrack/models.py -- Domain dataclasses for tracked physical keys.

These are immutable values. Every state change is a new Key built by a pure
function in keytrack/transitions.py and persisted by
KeyStore.compare_and_swap(); nothing here talks to the database.

Invariant carried by every Key: status is assigned if and only if assignment
is not None.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from core.models import Role

DEFAULT_PURPOSE = "General use"

MIN_ALLOWED_MINUTES = 30
MAX_ALLOWED_MINUTES = 1440
DEFAULT_ALLOWED_MINUTES = 480


class KeyStatus(str, Enum):
    available = "available"
    assigned = "assigned"
    maintenance = "maintenance"
    lost = "lost"
    damaged = "damaged"


# lost and damaged stay put until someone explicitly marks the key available.
INCIDENT_STATUSES = frozenset({KeyStatus.lost, KeyStatus.damaged})


class KeyCategory(str, Enum):
    laboratory = "laboratory"
    classroom = "classroom"
    conference_room = "conference_room"
    auditorium = "auditorium"
    office = "office"
    storage = "storage"
    vehicle = "vehicle"
    equipment = "equipment"
    security = "security"
    other = "other"


class KeyAction(str, Enum):
    created = "created"
    updated = "updated"
    assigned = "assigned"
    returned = "returned"
    maintenance = "maintenance"
    available = "available"
    flagged = "flagged"
    deactivated = "deactivated"


@dataclass(frozen=True)
class Assignment:
    holder_id: int
    assigned_at: datetime
    expected_return_at: datetime
    purpose: str = DEFAULT_PURPOSE


@dataclass(frozen=True)
class Key:
    """A physical key and its current custody.

    key_id is the human-facing identifier ("LAB-101"), stored upper-cased.
    allowed_roles empty means any role may hold the key.
    version increments on every successful write and guards the
    compare-and-swap in KeyStore.

    id is None before the record is written to the database.
    """

    key_id: str
    name: str
    department: str
    category: KeyCategory = KeyCategory.other
    location: str = ""
    description: str = ""
    status: KeyStatus = KeyStatus.available
    is_active: bool = True
    max_allowed_minutes: int = DEFAULT_ALLOWED_MINUTES
    allowed_roles: tuple[Role, ...] = ()
    qr_code: str = ""
    assignment: Assignment | None = None
    last_maintenance: datetime | None = None
    maintenance_notes: str | None = None
    version: int = 0
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None


@dataclass
class KeyEvent:
    """Append-only audit entry, written in the same transaction as the change it records.

    id is None before the record is written to the database.
    """

    key_id: str
    action: KeyAction
    actor_id: int | None
    from_status: KeyStatus | None
    to_status: KeyStatus
    occurred_at: datetime
    holder_id: int | None = None
    notes: str | None = None
    id: int | None = None
