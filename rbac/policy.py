"""
rbac/policy.py -- The static authorization tables as one immutable value.

RbacPolicy is constructed once (DEFAULT_POLICY, at import) and handed to
PermissionEngine by reference. Mappings are MappingProxyType views over
private dicts and every set is a frozenset, so nothing downstream can mutate
the tables after startup.

build_policy() validates the tables against the closed Role enum: every
role must have a level and a capability set, and levels must be distinct so
the hierarchy is a total order. A missing entry is a startup error, never a
silent "level 0" at request time.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from core.models import Role

# ---------------------------------------------------------------------------
# Capability names
#
# Opaque permission strings. The engine only does set membership on these;
# the names follow "<resource>:<action>[_<scope>]".
# ---------------------------------------------------------------------------

KEYS_VIEW_OWN = "keys:view_own"
KEYS_VIEW_DEPARTMENT = "keys:view_department"
KEYS_VIEW_ALL = "keys:view_all"
KEYS_REQUEST = "keys:request"
KEYS_RETURN = "keys:return"
KEYS_ASSIGN = "keys:assign"
KEYS_SCAN = "keys:scan"
KEYS_APPROVE_RETURN = "keys:approve_return"
KEYS_APPROVE_REQUEST = "keys:approve_request"
KEYS_TRACK_LOCATION = "keys:track_location"
KEYS_MANAGE_ALL = "keys:manage_all"

PROFILE_VIEW_OWN = "profile:view_own"
PROFILE_UPDATE_OWN = "profile:update_own"
HISTORY_VIEW_OWN = "history:view_own"

TRANSACTIONS_VIEW_ALL = "transactions:view_all"
REPORTS_VIEW_DAILY = "reports:view_daily"
REPORTS_VIEW_DEPARTMENT = "reports:view_department"
REPORTS_VIEW_ALL = "reports:view_all"
ANALYTICS_VIEW_DEPARTMENT = "analytics:view_department"
ANALYTICS_VIEW_ALL = "analytics:view_all"

FACULTY_VIEW_DEPARTMENT = "faculty:view_department"
FACULTY_MANAGE_DEPARTMENT = "faculty:manage_department"
SECURITY_MANAGE = "security:manage"
USERS_VIEW_SECURITY = "users:view_security"
USERS_VIEW_ALL = "users:view_all"
USERS_MANAGE_ALL = "users:manage_all"
SYSTEM_VIEW_STATS = "system:view_stats"

# ---------------------------------------------------------------------------
# Default tables
# ---------------------------------------------------------------------------

_ROLE_LEVELS: dict[Role, int] = {
    Role.faculty: 1,
    Role.security: 2,
    Role.hod: 3,
    Role.security_incharge: 4,
    Role.admin: 5,
}

_ROLE_CAPABILITIES: dict[Role, frozenset[str]] = {
    Role.faculty: frozenset(
        {
            KEYS_VIEW_OWN,
            KEYS_REQUEST,
            KEYS_RETURN,
            PROFILE_VIEW_OWN,
            PROFILE_UPDATE_OWN,
            HISTORY_VIEW_OWN,
        }
    ),
    Role.security: frozenset(
        {
            KEYS_VIEW_ALL,
            KEYS_SCAN,
            KEYS_APPROVE_RETURN,
            KEYS_TRACK_LOCATION,
            TRANSACTIONS_VIEW_ALL,
            PROFILE_VIEW_OWN,
            PROFILE_UPDATE_OWN,
            REPORTS_VIEW_DAILY,
        }
    ),
    Role.hod: frozenset(
        {
            KEYS_VIEW_DEPARTMENT,
            KEYS_APPROVE_REQUEST,
            KEYS_ASSIGN,
            FACULTY_VIEW_DEPARTMENT,
            FACULTY_MANAGE_DEPARTMENT,
            REPORTS_VIEW_DEPARTMENT,
            ANALYTICS_VIEW_DEPARTMENT,
            PROFILE_VIEW_OWN,
            PROFILE_UPDATE_OWN,
        }
    ),
    Role.security_incharge: frozenset(
        {
            KEYS_VIEW_ALL,
            KEYS_MANAGE_ALL,
            KEYS_SCAN,
            KEYS_APPROVE_RETURN,
            KEYS_TRACK_LOCATION,
            SECURITY_MANAGE,
            TRANSACTIONS_VIEW_ALL,
            REPORTS_VIEW_ALL,
            ANALYTICS_VIEW_ALL,
            PROFILE_VIEW_OWN,
            PROFILE_UPDATE_OWN,
            USERS_VIEW_SECURITY,
        }
    ),
}
# Admin holds every capability any other role has, plus the user and
# system administration ones nobody else gets.
_ROLE_CAPABILITIES[Role.admin] = frozenset().union(*_ROLE_CAPABILITIES.values()) | {
    USERS_VIEW_ALL,
    USERS_MANAGE_ALL,
    SYSTEM_VIEW_STATS,
}

# Route prefix -> roles allowed. Resolved by longest matching prefix, so
# "/securityincharge" wins over "/security" for "/securityincharge/keys".
_ROUTE_ACCESS: dict[str, frozenset[Role]] = {
    "/faculty": frozenset({Role.faculty, Role.hod, Role.admin}),
    "/security": frozenset({Role.security, Role.security_incharge, Role.admin}),
    "/hod": frozenset({Role.hod, Role.admin}),
    "/securityincharge": frozenset({Role.security_incharge, Role.admin}),
    "/admin": frozenset({Role.admin}),
}

_PUBLIC_ROUTES: frozenset[str] = frozenset({"/", "/login", "/register", "/health"})

# (manager, target) pairs that are allowed regardless of level. Admin is
# handled separately (manages everyone, including other admins).
_MANAGE_OVERRIDES: frozenset[tuple[Role, Role]] = frozenset(
    {
        (Role.security_incharge, Role.security),
        (Role.hod, Role.faculty),
    }
)


# ---------------------------------------------------------------------------
# Policy value
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RbacPolicy:
    levels: Mapping[Role, int]
    capabilities: Mapping[Role, frozenset[str]]
    route_access: tuple[tuple[str, frozenset[Role]], ...]  # longest prefix first
    public_routes: frozenset[str]
    manage_overrides: frozenset[tuple[Role, Role]]
    superuser: Role = Role.admin


def build_policy(
    levels: Mapping[Role, int],
    capabilities: Mapping[Role, Iterable[str]],
    route_access: Mapping[str, Iterable[Role]],
    public_routes: Iterable[str],
    manage_overrides: Iterable[tuple[Role, Role]] = (),
    superuser: Role = Role.admin,
) -> RbacPolicy:
    """Validate raw tables and freeze them into an RbacPolicy.

    Raises ValueError if a role is missing from levels or capabilities, or if
    two roles share a level.
    """
    missing_levels = [r.value for r in Role if r not in levels]
    if missing_levels:
        raise ValueError(f"Role hierarchy is missing levels for: {missing_levels}")
    missing_caps = [r.value for r in Role if r not in capabilities]
    if missing_caps:
        raise ValueError(f"Capability table is missing roles: {missing_caps}")
    if len(set(levels.values())) != len(levels):
        raise ValueError("Role levels must be distinct (the hierarchy is a total order).")

    frozen_routes = tuple(
        sorted(
            ((prefix, frozenset(roles)) for prefix, roles in route_access.items()),
            key=lambda item: len(item[0]),
            reverse=True,
        )
    )
    return RbacPolicy(
        levels=MappingProxyType(dict(levels)),
        capabilities=MappingProxyType({role: frozenset(caps) for role, caps in capabilities.items()}),
        route_access=frozen_routes,
        public_routes=frozenset(public_routes),
        manage_overrides=frozenset(manage_overrides),
        superuser=superuser,
    )


DEFAULT_POLICY: RbacPolicy = build_policy(
    levels=_ROLE_LEVELS,
    capabilities=_ROLE_CAPABILITIES,
    route_access=_ROUTE_ACCESS,
    public_routes=_PUBLIC_ROUTES,
    manage_overrides=_MANAGE_OVERRIDES,
)
