"""Unit tests for keytrack/service.py -- KeyLifecycleEngine.

The engine is exercised against an in-memory KeyStore and the default
PermissionEngine. Each test builds principals directly; identities and
tokens are not involved at this layer.

Covers:
- Who may create, assign, return, and manage keys
- Department scoping for HOD views and assignments
- allowed_roles restrictions on the holder
- Lost compare-and-swap surfaces as CONFLICT
- Out-of-scope reads look exactly like missing keys
- Overdue, stats, and history views
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from core.models import ErrorKind, Principal, Role
from keytrack.models import KeyAction, KeyStatus
from keytrack.service import KeyLifecycleEngine
from rbac.engine import PermissionEngine

ADMIN = Principal(1, Role.admin, "Administration")
INCHARGE = Principal(2, Role.security_incharge, "Security")
GUARD = Principal(3, Role.security, "Security")
PHYSICS_HOD = Principal(4, Role.hod, "Physics")
PHYSICIST = Principal(5, Role.faculty, "Physics")
CHEMIST = Principal(6, Role.faculty, "Chemistry")


@pytest.fixture
def engine(key_store, clock) -> KeyLifecycleEngine:
    return KeyLifecycleEngine(key_store, PermissionEngine(), clock=clock)


@pytest.fixture
def lab(engine):
    result = engine.create_key(ADMIN, "PHY-LAB-1", "Physics Lab 1", "Physics", max_allowed_minutes=120)
    assert result.ok
    return result.value


@pytest.fixture
def chem_lab(engine):
    return engine.create_key(INCHARGE, "CHEM-LAB-1", "Chemistry Lab 1", "Chemistry").value


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


def test_create_requires_manage_all(engine):
    for actor in (GUARD, PHYSICS_HOD, PHYSICIST):
        result = engine.create_key(actor, "K1", "Key", "Physics")
        assert result.error is ErrorKind.FORBIDDEN
    assert engine.create_key(INCHARGE, "K1", "Key", "Physics").ok


def test_create_duplicate_conflicts(engine, lab):
    result = engine.create_key(ADMIN, "phy-lab-1", "Again", "Physics")
    assert result.error is ErrorKind.CONFLICT
    assert result.reason == "key_id_taken"


def test_create_validates(engine):
    assert engine.create_key(ADMIN, "bad id", "Key", "Physics").error is ErrorKind.VALIDATION


def test_update_key(engine, lab):
    result = engine.update_key(ADMIN, lab.key_id, location="Block B, Room 12")
    assert result.ok
    assert result.value.location == "Block B, Room 12"
    assert result.value.version == lab.version + 1
    assert engine.update_key(PHYSICS_HOD, lab.key_id, name="Mine").error is ErrorKind.FORBIDDEN


def test_deactivate_refused_while_assigned(engine, lab):
    engine.assign(GUARD, lab.key_id, PHYSICIST)
    result = engine.deactivate_key(ADMIN, lab.key_id)
    assert result.error is ErrorKind.CONFLICT
    assert result.reason == "key_assigned"


def test_deactivated_key_disappears(engine, lab):
    assert engine.deactivate_key(ADMIN, lab.key_id).ok
    assert engine.get(ADMIN, lab.key_id).error is ErrorKind.NOT_FOUND
    assert engine.assign(GUARD, lab.key_id, PHYSICIST).error is ErrorKind.NOT_FOUND
    assert engine.list_keys(ADMIN).value == []
    # The audit trail survives.
    assert engine.history(ADMIN, lab.key_id).value[0].action is KeyAction.deactivated


def test_missing_key(engine):
    for result in (
        engine.assign(ADMIN, "NOPE", PHYSICIST),
        engine.return_key(ADMIN, "NOPE"),
        engine.mark_maintenance(ADMIN, "NOPE"),
        engine.history(ADMIN, "NOPE"),
    ):
        assert result.error is ErrorKind.NOT_FOUND


# ---------------------------------------------------------------------------
# Assignment authorization
# ---------------------------------------------------------------------------


def test_faculty_may_request_for_themselves(engine, lab, clock):
    result = engine.assign(PHYSICIST, lab.key_id, PHYSICIST, purpose="Practical", duration_minutes=45)
    assert result.ok
    key = result.value
    assert key.status is KeyStatus.assigned
    assert key.assignment.holder_id == PHYSICIST.identity_id
    assert key.assignment.expected_return_at == clock() + timedelta(minutes=45)


def test_faculty_may_not_assign_to_others(engine, lab):
    assert engine.assign(PHYSICIST, lab.key_id, CHEMIST).error is ErrorKind.FORBIDDEN


def test_security_may_assign_any_key(engine, lab, chem_lab):
    assert engine.assign(GUARD, lab.key_id, CHEMIST).ok
    assert engine.assign(GUARD, chem_lab.key_id, PHYSICIST).ok


def test_hod_assigns_only_own_department(engine, lab, chem_lab):
    assert engine.assign(PHYSICS_HOD, lab.key_id, PHYSICIST).ok
    assert engine.assign(PHYSICS_HOD, chem_lab.key_id, CHEMIST).error is ErrorKind.FORBIDDEN


def test_allowed_roles_restrict_the_holder(engine):
    engine.create_key(ADMIN, "HOD-OFFICE", "HOD office", "Physics", allowed_roles=["hod"])
    result = engine.assign(GUARD, "HOD-OFFICE", PHYSICIST)
    assert result.error is ErrorKind.FORBIDDEN
    assert result.reason == "role_not_allowed_for_key"
    assert engine.assign(GUARD, "HOD-OFFICE", PHYSICS_HOD).ok


def test_assign_assigned_key_conflicts(engine, lab):
    engine.assign(GUARD, lab.key_id, PHYSICIST)
    result = engine.assign(GUARD, lab.key_id, CHEMIST)
    assert result.error is ErrorKind.CONFLICT
    assert result.reason == "key_assigned"


def test_assign_duration_is_capped(engine, lab, clock):
    key = engine.assign(GUARD, lab.key_id, PHYSICIST, duration_minutes=10_000).value
    assert key.assignment.expected_return_at == clock() + timedelta(minutes=120)


def test_lost_race_is_conflict(engine, lab, key_store, monkeypatch):
    monkeypatch.setattr(key_store, "compare_and_swap", lambda *args, **kwargs: False)
    result = engine.assign(GUARD, lab.key_id, PHYSICIST)
    assert result.error is ErrorKind.CONFLICT
    assert result.reason == "concurrent_update"


# ---------------------------------------------------------------------------
# Return
# ---------------------------------------------------------------------------


def test_holder_returns_own_key(engine, lab):
    engine.assign(PHYSICIST, lab.key_id, PHYSICIST)
    result = engine.return_key(PHYSICIST, lab.key_id)
    assert result.ok
    assert result.value.status is KeyStatus.available
    assert result.value.assignment is None


def test_non_holder_faculty_cannot_return(engine, lab):
    engine.assign(GUARD, lab.key_id, PHYSICIST)
    assert engine.return_key(CHEMIST, lab.key_id).error is ErrorKind.FORBIDDEN


def test_security_accepts_returns(engine, lab):
    engine.assign(GUARD, lab.key_id, PHYSICIST)
    assert engine.return_key(GUARD, lab.key_id).ok


def test_return_available_key_conflicts(engine, lab):
    assert engine.return_key(GUARD, lab.key_id).error is ErrorKind.CONFLICT


# ---------------------------------------------------------------------------
# Maintenance and incidents
# ---------------------------------------------------------------------------


def test_maintenance_cycle(engine, lab):
    assert engine.mark_maintenance(GUARD, lab.key_id).error is ErrorKind.FORBIDDEN
    key = engine.mark_maintenance(INCHARGE, lab.key_id, notes="Duplicate cut").value
    assert key.status is KeyStatus.maintenance
    assert key.maintenance_notes == "Duplicate cut"
    assert engine.assign(GUARD, lab.key_id, PHYSICIST).reason == "key_maintenance"
    assert engine.mark_available(INCHARGE, lab.key_id).value.status is KeyStatus.available


def test_flag_lost_then_recover(engine, lab):
    engine.assign(GUARD, lab.key_id, PHYSICIST)
    key = engine.flag_incident(ADMIN, lab.key_id, "lost", notes="Not returned after exam").value
    assert key.status is KeyStatus.lost
    assert key.assignment is None
    assert engine.flag_incident(ADMIN, lab.key_id, KeyStatus.damaged).error is ErrorKind.CONFLICT
    assert engine.mark_available(ADMIN, lab.key_id).ok


def test_flag_incident_requires_manage_all(engine, lab):
    assert engine.flag_incident(PHYSICS_HOD, lab.key_id, "damaged").error is ErrorKind.FORBIDDEN


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------


def test_get_out_of_scope_looks_missing(engine, chem_lab):
    assert engine.get(PHYSICS_HOD, chem_lab.key_id).error is ErrorKind.NOT_FOUND
    assert engine.get(PHYSICIST, chem_lab.key_id).error is ErrorKind.NOT_FOUND
    assert engine.get(GUARD, chem_lab.key_id).ok


def test_holder_can_see_held_key(engine, chem_lab):
    engine.assign(GUARD, chem_lab.key_id, PHYSICIST)
    assert engine.get(PHYSICIST, chem_lab.key_id).ok


def test_list_keys_scoping(engine, lab, chem_lab):
    assert {k.key_id for k in engine.list_keys(GUARD).value} == {lab.key_id, chem_lab.key_id}
    assert [k.key_id for k in engine.list_keys(PHYSICS_HOD).value] == [lab.key_id]
    assert engine.list_keys(PHYSICS_HOD, department="Chemistry").error is ErrorKind.FORBIDDEN
    assert engine.list_keys(PHYSICIST).value == []
    engine.assign(PHYSICIST, lab.key_id, PHYSICIST)
    assert [k.key_id for k in engine.list_keys(PHYSICIST).value] == [lab.key_id]


def test_list_assigned_to(engine, lab, chem_lab):
    engine.assign(GUARD, lab.key_id, PHYSICIST)
    engine.assign(GUARD, chem_lab.key_id, PHYSICIST)
    assert len(engine.list_assigned_to(PHYSICIST, PHYSICIST.identity_id).value) == 2
    assert len(engine.list_assigned_to(ADMIN, PHYSICIST.identity_id).value) == 2
    assert [k.key_id for k in engine.list_assigned_to(PHYSICS_HOD, PHYSICIST.identity_id).value] == [lab.key_id]
    assert engine.list_assigned_to(CHEMIST, PHYSICIST.identity_id).error is ErrorKind.FORBIDDEN


def test_overdue(engine, lab, chem_lab, clock):
    engine.assign(GUARD, lab.key_id, PHYSICIST, duration_minutes=30)
    engine.assign(GUARD, chem_lab.key_id, CHEMIST, duration_minutes=240)
    clock.advance(minutes=31)

    held = engine.get(PHYSICIST, lab.key_id).value
    assert engine.is_overdue(held)
    assert engine.minutes_remaining(held) == -1
    assert [k.key_id for k in engine.list_overdue(ADMIN).value] == [lab.key_id]
    assert [k.key_id for k in engine.list_overdue(PHYSICIST).value] == [lab.key_id]
    assert engine.list_overdue(CHEMIST).value == []


def test_stats_scoping(engine, lab, chem_lab):
    full = engine.stats(ADMIN).value
    assert set(full["by_department"]) == {"Physics", "Chemistry"}
    assert "by_category" in full
    scoped = engine.stats(PHYSICS_HOD).value
    assert set(scoped["by_department"]) == {"Physics"}
    assert engine.stats(PHYSICIST).error is ErrorKind.FORBIDDEN


def test_history_records_actor_and_holder(engine, lab):
    engine.assign(GUARD, lab.key_id, PHYSICIST, purpose="Lab exam")
    engine.return_key(PHYSICIST, lab.key_id)
    events = engine.history(GUARD, lab.key_id).value
    assert [e.action for e in events] == [KeyAction.returned, KeyAction.assigned, KeyAction.created]
    assigned = events[1]
    assert assigned.actor_id == GUARD.identity_id
    assert assigned.holder_id == PHYSICIST.identity_id
    assert assigned.notes == "Lab exam"
    assert engine.history(PHYSICIST, lab.key_id).error is ErrorKind.FORBIDDEN
    assert engine.history(PHYSICS_HOD, lab.key_id).ok
