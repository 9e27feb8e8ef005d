"""keytrack/ -- Lifecycle of tracked physical keys: custody, maintenance, incidents, audit.

Layer rule: keytrack/ imports from core/ and rbac/ plus third-party libraries.
It does NOT import from auth/ or api/.
"""
