"""
api/routes/v1/users.py -- Identity administration endpoints.

Routes:
  GET    /api/v1/users                 -- list identities in the caller's scope
  GET    /api/v1/users/roles/summary   -- per-role counts (users:view_all)
  GET    /api/v1/users/{id}            -- one identity (self, or in scope)
  PATCH  /api/v1/users/{id}            -- profile edits, role and status changes
  DELETE /api/v1/users/{id}            -- soft delete (users:manage_all)

Scope of "in scope":
  users:view_all        every identity
  users:view_security   security staff
  faculty:view_department  faculty of the caller's own department

Security:
  Changing someone else requires them to be in view scope (404 otherwise,
  as for GET) and PermissionEngine.can_manage_user() for their current role,
  and for the new role when the role changes. A department-scoped manager
  (HOD) only edits users of their own department and cannot move them out.
  Nobody changes their own role or deactivates or deletes themselves.
  The last active admin cannot be deactivated or demoted.
  A role change or deactivation invalidates the identity's outstanding codes.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy.exc import IntegrityError

from api.models import IdentityPatch, IdentityResponse
from api.routes.v1.auth import identity_to_response
from auth.dependencies import get_current_principal, require_permission
from auth.models import Identity
from auth.store import IdentityStore
from core.models import Principal, Role
from rbac.engine import PermissionEngine
from rbac.policy import (
    FACULTY_MANAGE_DEPARTMENT,
    FACULTY_VIEW_DEPARTMENT,
    PROFILE_UPDATE_OWN,
    USERS_MANAGE_ALL,
    USERS_VIEW_ALL,
    USERS_VIEW_SECURITY,
)

logger = logging.getLogger("keyguard.api.users")

router = APIRouter()


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})


def _forbidden(message: str = "Insufficient permissions.") -> HTTPException:
    return HTTPException(status_code=403, detail={"code": "forbidden", "message": message})


def _in_view_scope(engine: PermissionEngine, principal: Principal, target: Identity) -> bool:
    if target.id == principal.identity_id:
        return True
    if engine.has_permission(principal.role, USERS_VIEW_ALL):
        return True
    if engine.has_permission(principal.role, USERS_VIEW_SECURITY) and target.role is Role.security:
        return True
    return (
        engine.has_permission(principal.role, FACULTY_VIEW_DEPARTMENT)
        and target.role is Role.faculty
        and target.department == principal.department
    )


def _department_bound(engine: PermissionEngine, principal: Principal) -> bool:
    """True when the caller manages users only within their own department (HOD)."""
    return engine.has_permission(principal.role, FACULTY_MANAGE_DEPARTMENT) and not engine.has_permission(
        principal.role, USERS_MANAGE_ALL
    )


def _load_live(store: IdentityStore, user_id: int) -> Identity:
    target = store.get_by_id(user_id)
    if target is None or target.deleted_at is not None:
        raise _not_found()
    return target


def _count_active_admins(store: IdentityStore) -> int:
    return sum(1 for i in store.list_identities(role=Role.admin) if i.is_active)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[IdentityResponse])
def list_users(
    request: Request,
    role: Role | None = Query(default=None),
    department: str | None = Query(default=None, max_length=100),
    principal: Principal = Depends(require_permission(USERS_VIEW_ALL, USERS_VIEW_SECURITY, FACULTY_VIEW_DEPARTMENT)),
) -> list[IdentityResponse]:
    store: IdentityStore = request.app.state.identity_store
    engine: PermissionEngine = request.app.state.permissions
    if engine.has_permission(principal.role, USERS_VIEW_ALL):
        identities = store.list_identities(role=role, department=department)
    else:
        identities = [
            i for i in store.list_identities(role=role, department=department) if _in_view_scope(engine, principal, i)
        ]
    return [identity_to_response(i) for i in identities]


@router.get("/users/roles/summary")
def roles_summary(
    request: Request,
    principal: Principal = Depends(require_permission(USERS_VIEW_ALL)),
) -> dict:
    return request.app.state.auth_service.stats()["identities"]


@router.get("/users/{user_id}", response_model=IdentityResponse)
def get_user(
    request: Request,
    user_id: int,
    principal: Principal = Depends(get_current_principal),
) -> IdentityResponse:
    store: IdentityStore = request.app.state.identity_store
    target = _load_live(store, user_id)
    if not _in_view_scope(request.app.state.permissions, principal, target):
        raise _not_found()
    return identity_to_response(target)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


@router.patch("/users/{user_id}", response_model=IdentityResponse)
def update_user(
    request: Request,
    user_id: int,
    body: IdentityPatch,
    principal: Principal = Depends(get_current_principal),
) -> IdentityResponse:
    """Edit an identity.

    Self-service: name only, with profile:update_own. Everything else needs
    can_manage_user() over the target.
    """
    store: IdentityStore = request.app.state.identity_store
    engine: PermissionEngine = request.app.state.permissions
    target = _load_live(store, user_id)
    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    if target.id == principal.identity_id:
        if set(updates) - {"name"}:
            raise _forbidden("You can only change your own name.")
        if not engine.has_permission(principal.role, PROFILE_UPDATE_OWN):
            raise _forbidden()
    else:
        if not _in_view_scope(engine, principal, target):
            raise _not_found()
        if not engine.can_manage_user(principal.role, target.role):
            raise _forbidden("You cannot manage this user.")
        if _department_bound(engine, principal):
            if target.department != principal.department:
                raise _forbidden("You can only manage users in your own department.")
            moved_to = updates.get("department")
            if moved_to is not None and moved_to != principal.department:
                raise _forbidden("You cannot move users out of your department.")
        new_role = updates.get("role")
        if new_role is not None and not engine.can_manage_user(principal.role, new_role):
            raise _forbidden("You cannot grant this role.")
        losing_admin = target.role is Role.admin and (
            updates.get("is_active") is False or (new_role is not None and new_role is not Role.admin)
        )
        if losing_admin and target.is_active and _count_active_admins(store) <= 1:
            raise HTTPException(
                status_code=400,
                detail={"code": "last_admin", "message": "Cannot remove the last active admin."},
            )

    try:
        store.update_identity(user_id, **updates)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "That employee id is already in use."},
        ) from exc

    role_changed = "role" in updates and updates["role"] is not target.role
    if role_changed or updates.get("is_active") is False:
        request.app.state.otp.invalidate_all(target.email)
    if role_changed:
        logger.info(
            "Identity %d role %s -> %s by %d",
            user_id,
            target.role.value,
            Role(updates["role"]).value,
            principal.identity_id,
        )
    return identity_to_response(_load_live(store, user_id))


@router.delete("/users/{user_id}", status_code=204)
def delete_user(
    request: Request,
    user_id: int,
    principal: Principal = Depends(require_permission(USERS_MANAGE_ALL)),
) -> Response:
    store: IdentityStore = request.app.state.identity_store
    target = _load_live(store, user_id)
    if target.id == principal.identity_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deletion", "message": "You cannot delete your own account."},
        )
    if target.role is Role.admin and target.is_active and _count_active_admins(store) <= 1:
        raise HTTPException(
            status_code=400,
            detail={"code": "last_admin", "message": "Cannot remove the last active admin."},
        )
    request.app.state.auth_service.remove_identity(target)
    logger.info("Identity %d soft-deleted by %d", user_id, principal.identity_id)
    return Response(status_code=204)
