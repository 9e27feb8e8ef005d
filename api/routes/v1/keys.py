"""
api/routes/v1/keys.py -- Physical key lifecycle endpoints.

Routes:
  GET    /api/v1/keys                       -- keys visible to the caller (filters: department, category, status)
  POST   /api/v1/keys                       -- create (keys:manage_all)
  GET    /api/v1/keys/mine                  -- keys the caller currently holds
  GET    /api/v1/keys/overdue               -- overdue keys in the caller's scope
  GET    /api/v1/keys/stats                 -- counts by department and category
  GET    /api/v1/keys/{key_id}              -- one key
  PATCH  /api/v1/keys/{key_id}              -- descriptive edits (keys:manage_all)
  DELETE /api/v1/keys/{key_id}              -- deactivate; refused while assigned
  POST   /api/v1/keys/{key_id}/assign       -- hand the key to a holder (default: the caller)
  POST   /api/v1/keys/{key_id}/return       -- take it back
  POST   /api/v1/keys/{key_id}/maintenance  -- send to maintenance
  POST   /api/v1/keys/{key_id}/available    -- back into service
  POST   /api/v1/keys/{key_id}/incident     -- flag lost or damaged
  GET    /api/v1/keys/{key_id}/history      -- audit trail, newest first

Every route authenticates, then hands the Principal to KeyLifecycleEngine,
which makes the authorization decision. A lost concurrent write surfaces
as 409 like any other illegal transition.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from api.errors import unwrap
from api.models import (
    AssignmentResponse,
    AssignRequest,
    IncidentRequest,
    KeyCreate,
    KeyEventResponse,
    KeyPatch,
    KeyResponse,
    KeyStatsResponse,
    MaintenanceRequest,
)
from auth.dependencies import get_current_principal
from auth.store import IdentityStore
from core.models import Principal
from core.timeutil import to_iso
from keytrack.models import Key, KeyCategory, KeyEvent, KeyStatus
from keytrack.service import KeyLifecycleEngine

router = APIRouter()


def _engine(request: Request) -> KeyLifecycleEngine:
    return request.app.state.key_engine


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------


@router.get("/keys", response_model=list[KeyResponse])
def list_keys(
    request: Request,
    department: str | None = Query(default=None, max_length=100),
    category: KeyCategory | None = Query(default=None),
    status: KeyStatus | None = Query(default=None),
    principal: Principal = Depends(get_current_principal),
) -> list[KeyResponse]:
    engine = _engine(request)
    keys = unwrap(engine.list_keys(principal, department=department, category=category, status=status))
    return [_key_to_response(engine, k) for k in keys]


@router.post("/keys", response_model=KeyResponse, status_code=201)
def create_key(
    request: Request,
    body: KeyCreate,
    principal: Principal = Depends(get_current_principal),
) -> KeyResponse:
    engine = _engine(request)
    fields = body.model_dump()
    key = unwrap(
        engine.create_key(
            principal,
            fields.pop("key_id"),
            fields.pop("name"),
            fields.pop("department"),
            **fields,
        )
    )
    return _key_to_response(engine, key)


@router.get("/keys/mine", response_model=list[KeyResponse])
def my_keys(request: Request, principal: Principal = Depends(get_current_principal)) -> list[KeyResponse]:
    engine = _engine(request)
    keys = unwrap(engine.list_assigned_to(principal, principal.identity_id))
    return [_key_to_response(engine, k) for k in keys]


@router.get("/keys/overdue", response_model=list[KeyResponse])
def overdue_keys(request: Request, principal: Principal = Depends(get_current_principal)) -> list[KeyResponse]:
    engine = _engine(request)
    return [_key_to_response(engine, k) for k in unwrap(engine.list_overdue(principal))]


@router.get("/keys/stats", response_model=KeyStatsResponse)
def key_stats(request: Request, principal: Principal = Depends(get_current_principal)) -> KeyStatsResponse:
    return KeyStatsResponse(**unwrap(_engine(request).stats(principal)))


# ---------------------------------------------------------------------------
# Single key
# ---------------------------------------------------------------------------


@router.get("/keys/{key_id}", response_model=KeyResponse)
def get_key(request: Request, key_id: str, principal: Principal = Depends(get_current_principal)) -> KeyResponse:
    engine = _engine(request)
    return _key_to_response(engine, unwrap(engine.get(principal, key_id)))


@router.patch("/keys/{key_id}", response_model=KeyResponse)
def update_key(
    request: Request,
    key_id: str,
    body: KeyPatch,
    principal: Principal = Depends(get_current_principal),
) -> KeyResponse:
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    engine = _engine(request)
    return _key_to_response(engine, unwrap(engine.update_key(principal, key_id, **changes)))


@router.delete("/keys/{key_id}", status_code=204)
def deactivate_key(request: Request, key_id: str, principal: Principal = Depends(get_current_principal)) -> Response:
    unwrap(_engine(request).deactivate_key(principal, key_id))
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


@router.post("/keys/{key_id}/assign", response_model=KeyResponse)
def assign_key(
    request: Request,
    key_id: str,
    body: AssignRequest,
    principal: Principal = Depends(get_current_principal),
) -> KeyResponse:
    """Assign to body.holder_id, or to the caller when it is omitted."""
    engine = _engine(request)
    if body.holder_id is None or body.holder_id == principal.identity_id:
        holder = principal
    else:
        identities: IdentityStore = request.app.state.identity_store
        target = identities.get_by_id(body.holder_id)
        if target is None or target.deleted_at is not None:
            raise HTTPException(
                status_code=404,
                detail={"code": "holder_not_found", "message": "Holder not found."},
            )
        if not target.is_active:
            raise HTTPException(
                status_code=409,
                detail={"code": "holder_inactive", "message": "Holder account is deactivated."},
            )
        holder = target.principal()
    key = unwrap(
        engine.assign(
            principal,
            key_id,
            holder,
            purpose=body.purpose,
            duration_minutes=body.duration_minutes,
        )
    )
    return _key_to_response(engine, key)


@router.post("/keys/{key_id}/return", response_model=KeyResponse)
def return_key(request: Request, key_id: str, principal: Principal = Depends(get_current_principal)) -> KeyResponse:
    engine = _engine(request)
    return _key_to_response(engine, unwrap(engine.return_key(principal, key_id)))


@router.post("/keys/{key_id}/maintenance", response_model=KeyResponse)
def mark_maintenance(
    request: Request,
    key_id: str,
    body: MaintenanceRequest,
    principal: Principal = Depends(get_current_principal),
) -> KeyResponse:
    engine = _engine(request)
    return _key_to_response(engine, unwrap(engine.mark_maintenance(principal, key_id, notes=body.notes)))


@router.post("/keys/{key_id}/available", response_model=KeyResponse)
def mark_available(request: Request, key_id: str, principal: Principal = Depends(get_current_principal)) -> KeyResponse:
    engine = _engine(request)
    return _key_to_response(engine, unwrap(engine.mark_available(principal, key_id)))


@router.post("/keys/{key_id}/incident", response_model=KeyResponse)
def flag_incident(
    request: Request,
    key_id: str,
    body: IncidentRequest,
    principal: Principal = Depends(get_current_principal),
) -> KeyResponse:
    engine = _engine(request)
    return _key_to_response(engine, unwrap(engine.flag_incident(principal, key_id, body.status, notes=body.notes)))


@router.get("/keys/{key_id}/history", response_model=list[KeyEventResponse])
def key_history(
    request: Request,
    key_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    principal: Principal = Depends(get_current_principal),
) -> list[KeyEventResponse]:
    events = unwrap(_engine(request).history(principal, key_id, limit=limit))
    return [_event_to_response(e) for e in events]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _key_to_response(engine: KeyLifecycleEngine, key: Key) -> KeyResponse:
    a = key.assignment
    return KeyResponse(
        key_id=key.key_id,
        name=key.name,
        department=key.department,
        category=key.category,
        location=key.location,
        description=key.description,
        status=key.status,
        is_active=key.is_active,
        max_allowed_minutes=key.max_allowed_minutes,
        allowed_roles=list(key.allowed_roles),
        qr_code=key.qr_code,
        assignment=(
            AssignmentResponse(
                holder_id=a.holder_id,
                assigned_at=to_iso(a.assigned_at),
                expected_return_at=to_iso(a.expected_return_at),
                purpose=a.purpose,
            )
            if a is not None
            else None
        ),
        is_overdue=engine.is_overdue(key),
        minutes_remaining=engine.minutes_remaining(key),
        last_maintenance=to_iso(key.last_maintenance),
        maintenance_notes=key.maintenance_notes,
        version=key.version,
        updated_at=to_iso(key.updated_at) or "",
    )


def _event_to_response(event: KeyEvent) -> KeyEventResponse:
    return KeyEventResponse(
        action=event.action.value,
        actor_id=event.actor_id,
        holder_id=event.holder_id,
        from_status=event.from_status,
        to_status=event.to_status,
        notes=event.notes,
        occurred_at=to_iso(event.occurred_at),
    )
