"""
auth/notifier.py -- Out-of-band delivery of one-time codes.

The OTP manager only needs something with send_otp(email, code, purpose).
Delivery mechanics (SMTP, templates, retries) belong to whatever implements
Notifier. A send that raises is logged by the OTP manager and never undoes
the challenge.

LogNotifier is the default: it records that a code went out and, in DEBUG
mode only, the code itself so local development works without a mail server.
"""

from __future__ import annotations

import logging
from typing import Protocol

from auth.models import OTPPurpose

logger = logging.getLogger("keyguard.notifier")


class Notifier(Protocol):
    def send_otp(self, email: str, code: str, purpose: OTPPurpose) -> None: ...


class LogNotifier:
    def __init__(self, reveal_codes: bool = False) -> None:
        self.reveal_codes = reveal_codes

    def send_otp(self, email: str, code: str, purpose: OTPPurpose) -> None:
        if self.reveal_codes:
            logger.info("OTP for %s (purpose=%s): %s", email, OTPPurpose(purpose).value, code)
        else:
            logger.info("OTP dispatched to %s (purpose=%s)", email, OTPPurpose(purpose).value)
