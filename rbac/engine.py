"""
rbac/engine.py -- PermissionEngine: every authorization decision goes through here.

All methods are pure lookups over an injected RbacPolicy. No I/O, no state,
safe to share one instance across threads.

Role arguments accept either a Role or its string value (tokens and
database rows carry strings). Anything that does not parse to a known Role
is denied -- there is no default level and no fallthrough branch.
"""

from __future__ import annotations

from collections.abc import Iterable

from core.models import Role
from rbac.policy import DEFAULT_POLICY, RbacPolicy


class PermissionEngine:
    def __init__(self, policy: RbacPolicy = DEFAULT_POLICY) -> None:
        self._policy = policy

    @property
    def policy(self) -> RbacPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def capabilities_for(self, role: Role | str) -> frozenset[str]:
        parsed = Role.parse(role)
        if parsed is None:
            return frozenset()
        return self._policy.capabilities[parsed]

    def has_permission(self, role: Role | str, capability: str) -> bool:
        if not capability:
            return False
        return capability in self.capabilities_for(role)

    def has_any(self, role: Role | str, capabilities: Iterable[str]) -> bool:
        granted = self.capabilities_for(role)
        return any(cap in granted for cap in capabilities)

    def has_all(self, role: Role | str, capabilities: Iterable[str]) -> bool:
        """True only if every capability is granted. An empty request is not a grant."""
        wanted = list(capabilities)
        if not wanted:
            return False
        granted = self.capabilities_for(role)
        return all(cap in granted for cap in wanted)

    # ------------------------------------------------------------------
    # Hierarchy
    # ------------------------------------------------------------------

    def role_level(self, role: Role | str) -> int | None:
        parsed = Role.parse(role)
        return self._policy.levels[parsed] if parsed is not None else None

    def has_role_level(self, role: Role | str, min_role: Role | str) -> bool:
        """True if role is at least as privileged as min_role."""
        level = self.role_level(role)
        required = self.role_level(min_role)
        if level is None or required is None:
            return False
        return level >= required

    def can_manage_user(self, manager_role: Role | str, target_role: Role | str) -> bool:
        manager = Role.parse(manager_role)
        target = Role.parse(target_role)
        if manager is None or target is None:
            return False
        if manager is self._policy.superuser:
            return True
        if (manager, target) in self._policy.manage_overrides:
            return True
        return self._policy.levels[manager] > self._policy.levels[target]

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    def can_access_route(self, role: Role | str, path: str) -> bool:
        """Decide route access by public allowlist, then longest matching prefix.

        Public paths are exact matches and open to every role. A prefix
        matches whole path segments only, so "/admin" covers "/admin/users"
        but not "/administrator". Paths with no matching prefix are denied.
        """
        if not path:
            return False
        if path in self._policy.public_routes:
            return True
        parsed = Role.parse(role)
        if parsed is None:
            return False
        for prefix, allowed in self._policy.route_access:
            if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
                return parsed in allowed
        return False
