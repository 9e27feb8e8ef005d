"""
keytrack/service.py -- Key Lifecycle Engine: authorization + transition + CAS write.

Every mutating operation follows the same four steps:

    1. load the key (missing or deactivated -> NOT_FOUND)
    2. ask the PermissionEngine whether the actor may do this (-> FORBIDDEN)
    3. run the pure transition from keytrack/transitions.py (-> CONFLICT / VALIDATION)
    4. KeyStore.compare_and_swap() with the version read in step 1 (-> CONFLICT)

Step 4 is where concurrent callers are separated: two security staff
assigning the same key both pass steps 1-3, and exactly one of them wins
the write.

Who may do what:

    create / update / deactivate      keys:manage_all
    assign                            keys:manage_all or keys:scan (any key),
                                      keys:assign (own department's keys),
                                      keys:request (only to yourself)
    return                            the holder with keys:return,
                                      or keys:approve_return / keys:manage_all
    maintenance / available / flag    keys:manage_all
    view                              keys:view_all (everything),
                                      keys:view_department (own department),
                                      otherwise only keys you hold

The holder of an assignment must also satisfy can_be_accessed_by().

Layer rule: keytrack/ imports from core/ and rbac/. It does NOT import from
auth/ or api/ -- callers resolve identities to Principals first.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from core.models import ErrorKind, Principal, Result
from core.timeutil import Clock, utcnow
from keytrack import transitions
from keytrack.models import Key, KeyAction, KeyCategory, KeyEvent, KeyStatus
from keytrack.store import KeyStore
from rbac.engine import PermissionEngine
from rbac.policy import (
    KEYS_APPROVE_RETURN,
    KEYS_ASSIGN,
    KEYS_MANAGE_ALL,
    KEYS_REQUEST,
    KEYS_RETURN,
    KEYS_SCAN,
    KEYS_VIEW_ALL,
    KEYS_VIEW_DEPARTMENT,
    TRANSACTIONS_VIEW_ALL,
)

logger = logging.getLogger("keyguard.keys")

_FORBIDDEN = Result.failure(ErrorKind.FORBIDDEN, "insufficient_permissions")


class KeyLifecycleEngine:
    def __init__(self, store: KeyStore, permissions: PermissionEngine, clock: Clock = utcnow) -> None:
        self.store = store
        self.permissions = permissions
        self._clock = clock

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, key_id: str) -> Key | None:
        key = self.store.get(key_id)
        if key is None or key.deleted_at is not None:
            return None
        return key

    def _can(self, actor: Principal, *capabilities: str) -> bool:
        return self.permissions.has_any(actor.role, capabilities)

    def _can_view(self, actor: Principal, key: Key) -> bool:
        if self._can(actor, KEYS_VIEW_ALL, KEYS_MANAGE_ALL):
            return True
        if self._can(actor, KEYS_VIEW_DEPARTMENT) and key.department == actor.department:
            return True
        return key.assignment is not None and key.assignment.holder_id == actor.identity_id

    def _apply(
        self,
        actor: Principal,
        key_id: str,
        action: KeyAction,
        authorize: Callable[[Key], bool],
        transition: Callable[[Key, datetime], Result],
        notes: str | None = None,
    ) -> Result:
        key = self._load(key_id)
        if key is None:
            return Result.failure(ErrorKind.NOT_FOUND, "key_not_found")
        if not authorize(key):
            return _FORBIDDEN
        now = self._clock()
        moved = transition(key, now)
        if not moved.ok:
            return moved
        nxt: Key = moved.value
        holder = nxt.assignment or key.assignment
        audit = KeyEvent(
            key_id=key.key_id,
            action=action,
            actor_id=actor.identity_id,
            from_status=key.status,
            to_status=nxt.status,
            occurred_at=now,
            holder_id=holder.holder_id if holder else None,
            notes=notes,
        )
        if not self.store.compare_and_swap(nxt, expected_version=key.version, audit=audit):
            logger.info("Lost write race on key %s (%s by %d)", key.key_id, action.value, actor.identity_id)
            return Result.failure(ErrorKind.CONFLICT, "concurrent_update")
        logger.info(
            "Key %s %s -> %s (%s by %d)",
            key.key_id,
            key.status.value,
            nxt.status.value,
            action.value,
            actor.identity_id,
        )
        return Result.success(self.store.get(key.key_id))

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def create_key(self, actor: Principal, key_id: str, name: str, department: str, **fields) -> Result:
        if not self._can(actor, KEYS_MANAGE_ALL):
            return _FORBIDDEN
        built = transitions.new_key(key_id, name, department, now=self._clock(), **fields)
        if not built.ok:
            return built
        key: Key = built.value
        try:
            self.store.create_key(key, actor_id=actor.identity_id)
        except IntegrityError:
            return Result.failure(ErrorKind.CONFLICT, "key_id_taken")
        logger.info("Key %s created in %s by %d", key.key_id, key.department, actor.identity_id)
        return Result.success(self.store.get(key.key_id))

    def update_key(self, actor: Principal, key_id: str, **fields) -> Result:
        return self._apply(
            actor,
            key_id,
            KeyAction.updated,
            lambda key: self._can(actor, KEYS_MANAGE_ALL),
            lambda key, now: transitions.update_details(key, fields, now),
            notes=", ".join(sorted(fields)) or None,
        )

    def deactivate_key(self, actor: Principal, key_id: str) -> Result:
        return self._apply(
            actor,
            key_id,
            KeyAction.deactivated,
            lambda key: self._can(actor, KEYS_MANAGE_ALL),
            transitions.deactivate,
        )

    # ------------------------------------------------------------------
    # Custody
    # ------------------------------------------------------------------

    def _may_assign(self, actor: Principal, holder: Principal, key: Key) -> bool:
        if self._can(actor, KEYS_MANAGE_ALL, KEYS_SCAN):
            return True
        if self._can(actor, KEYS_ASSIGN) and key.department == actor.department:
            return True
        return actor.identity_id == holder.identity_id and self._can(actor, KEYS_REQUEST)

    def assign(
        self,
        actor: Principal,
        key_id: str,
        holder: Principal,
        purpose: str | None = None,
        duration_minutes: int | None = None,
    ) -> Result:
        key = self._load(key_id)
        if key is None:
            return Result.failure(ErrorKind.NOT_FOUND, "key_not_found")
        if not self._may_assign(actor, holder, key):
            return _FORBIDDEN
        if not transitions.can_be_accessed_by(key, holder.role):
            return Result.failure(ErrorKind.FORBIDDEN, "role_not_allowed_for_key")
        return self._apply(
            actor,
            key_id,
            KeyAction.assigned,
            lambda current: self._may_assign(actor, holder, current),
            lambda current, now: transitions.assign(current, holder.identity_id, now, purpose, duration_minutes),
            notes=purpose,
        )

    def return_key(self, actor: Principal, key_id: str) -> Result:
        def authorize(key: Key) -> bool:
            if self._can(actor, KEYS_APPROVE_RETURN, KEYS_MANAGE_ALL):
                return True
            holds = key.assignment is not None and key.assignment.holder_id == actor.identity_id
            return holds and self._can(actor, KEYS_RETURN)

        return self._apply(actor, key_id, KeyAction.returned, authorize, transitions.return_key)

    # ------------------------------------------------------------------
    # Status management
    # ------------------------------------------------------------------

    def mark_maintenance(self, actor: Principal, key_id: str, notes: str | None = None) -> Result:
        return self._apply(
            actor,
            key_id,
            KeyAction.maintenance,
            lambda key: self._can(actor, KEYS_MANAGE_ALL),
            lambda key, now: transitions.mark_maintenance(key, now, notes),
            notes=notes,
        )

    def mark_available(self, actor: Principal, key_id: str) -> Result:
        return self._apply(
            actor,
            key_id,
            KeyAction.available,
            lambda key: self._can(actor, KEYS_MANAGE_ALL),
            transitions.mark_available,
        )

    def flag_incident(self, actor: Principal, key_id: str, status: KeyStatus | str, notes: str | None = None) -> Result:
        return self._apply(
            actor,
            key_id,
            KeyAction.flagged,
            lambda key: self._can(actor, KEYS_MANAGE_ALL),
            lambda key, now: transitions.flag_incident(key, status, now),
            notes=notes,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, actor: Principal, key_id: str) -> Result:
        key = self._load(key_id)
        if key is None:
            return Result.failure(ErrorKind.NOT_FOUND, "key_not_found")
        if not self._can_view(actor, key):
            # Same answer as a missing key, so ids of other departments do not leak.
            return Result.failure(ErrorKind.NOT_FOUND, "key_not_found")
        return Result.success(key)

    def list_keys(
        self,
        actor: Principal,
        department: str | None = None,
        category: KeyCategory | None = None,
        status: KeyStatus | None = None,
    ) -> Result:
        """Keys visible to the actor. Department-scoped roles always get their own department."""
        if self._can(actor, KEYS_VIEW_ALL, KEYS_MANAGE_ALL):
            return Result.success(self.store.list_keys(department=department, category=category, status=status))
        if self._can(actor, KEYS_VIEW_DEPARTMENT):
            if department and department != actor.department:
                return _FORBIDDEN
            return Result.success(
                self.store.list_keys(department=actor.department, category=category, status=status)
            )
        return Result.success(
            self.store.list_keys(category=category, status=status, holder_id=actor.identity_id)
        )

    def list_assigned_to(self, actor: Principal, holder_id: int) -> Result:
        if holder_id != actor.identity_id and not self._can(actor, KEYS_VIEW_ALL, KEYS_MANAGE_ALL):
            if not self._can(actor, KEYS_VIEW_DEPARTMENT):
                return _FORBIDDEN
            keys = self.store.list_keys(department=actor.department, holder_id=holder_id)
            return Result.success(keys)
        return Result.success(self.store.list_keys(holder_id=holder_id))

    def list_overdue(self, actor: Principal) -> Result:
        now = self._clock()
        if self._can(actor, KEYS_VIEW_ALL, KEYS_MANAGE_ALL):
            return Result.success(self.store.list_overdue(now))
        if self._can(actor, KEYS_VIEW_DEPARTMENT):
            return Result.success(self.store.list_overdue(now, department=actor.department))
        return Result.success(self.store.list_overdue(now, holder_id=actor.identity_id))

    def stats(self, actor: Principal) -> Result:
        now = self._clock()
        if self._can(actor, KEYS_VIEW_ALL, KEYS_MANAGE_ALL):
            return Result.success(
                {
                    "by_department": self.store.stats_by_department(now),
                    "by_category": self.store.stats_by_category(now),
                }
            )
        if self._can(actor, KEYS_VIEW_DEPARTMENT):
            by_department = self.store.stats_by_department(now)
            return Result.success({"by_department": {actor.department: by_department.get(actor.department, {})}})
        return _FORBIDDEN

    def history(self, actor: Principal, key_id: str, limit: int = 100) -> Result:
        key = self.store.get(key_id)
        if key is None:
            return Result.failure(ErrorKind.NOT_FOUND, "key_not_found")
        if self._can(actor, KEYS_VIEW_ALL, KEYS_MANAGE_ALL, TRANSACTIONS_VIEW_ALL):
            return Result.success(self.store.history(key.key_id, limit=limit))
        if self._can(actor, KEYS_VIEW_DEPARTMENT) and key.department == actor.department:
            return Result.success(self.store.history(key.key_id, limit=limit))
        return _FORBIDDEN

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    def is_overdue(self, key: Key) -> bool:
        return transitions.is_overdue(key, self._clock())

    def minutes_remaining(self, key: Key) -> int | None:
        return transitions.minutes_remaining(key, self._clock())
