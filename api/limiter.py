"""
api/limiter.py -- The one slowapi Limiter every route and the middleware share.

Counters live in the Limiter's storage, so a second instance would count
separately and never trip. Routes decorate with @limiter.limit(login_limit)
or @limiter.limit(otp_request_limit); the callables read settings at request
time, which lets tests raise the ceilings through the environment.

These per-IP ceilings are independent of the per-address OTP window that
OTPManager.can_request() enforces.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_limit() -> str:
    return get_settings().login_rate_limit


def otp_request_limit() -> str:
    return get_settings().otp_request_rate_limit
