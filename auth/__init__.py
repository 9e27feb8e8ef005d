"""auth/ -- One-time-code authentication, account lockout and session tokens for KeyGuard.

Layer rule: auth/ imports from core/ and rbac/ plus third-party libraries.
It does NOT import from api/ or keytrack/.
api/ imports from auth/, not the other way around.
"""
