"""rbac/ -- Permission Engine for KeyGuard.

Static role hierarchy, capability sets, and route access table, wrapped in
an immutable RbacPolicy and queried through PermissionEngine.

Layer rule: rbac/ imports only stdlib and core/. It does NOT import from
api/, auth/, or keytrack/. Both auth/ and keytrack/ import from rbac/.
"""
