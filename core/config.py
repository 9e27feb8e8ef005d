"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for KeyGuard happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, otp_length -> OTP_LENGTH).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode generates a SECRET_KEY with a warning; production mode
      refuses to start without one.

Security notes:
  SECRET_KEY signs session tokens and keys the HMAC used to store OTP digests.
  Keys shorter than 32 chars are rejected outright.

Engine components (OTPManager, AccountGuard, TokenIssuer) never read Settings
themselves. They take plain constructor arguments; api/main.py builds them
from Settings at startup. That keeps the core testable without environment
variables.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, rbac/, or keytrack/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("keyguard.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'keyguard.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = Field(default=7 * 24 * 3600, gt=0)

    # ------------------------------------------------------------------
    # One-time codes
    # ------------------------------------------------------------------

    otp_length: int = Field(default=6, ge=4, le=10)
    otp_expire_seconds: int = Field(default=15 * 60, gt=0)
    otp_max_attempts: int = Field(default=5, gt=0)
    otp_rate_limit_count: int = Field(default=3, gt=0)
    otp_rate_limit_window_seconds: int = Field(default=5 * 60, gt=0)
    otp_purge_interval_seconds: int = Field(default=6 * 3600, gt=0)

    # ------------------------------------------------------------------
    # Account lockout
    # ------------------------------------------------------------------

    lockout_threshold: int = Field(default=5, gt=0)
    lockout_seconds: int = Field(default=2 * 3600, gt=0)

    # ------------------------------------------------------------------
    # Identity provisioning
    # ------------------------------------------------------------------

    # Empty string accepts any domain. When set (e.g. "vnrvjiet.in"), simple
    # auth and registration reject addresses outside it.
    allowed_email_domain: str = ""
    # Created as an admin identity on first startup if no identities exist.
    bootstrap_admin_email: str = ""

    # ------------------------------------------------------------------
    # Rate limiting (per client IP, on top of the per-identity OTP window)
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    otp_request_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    # Host headers accepted by TrustedHostMiddleware. JSON list in the env,
    # e.g. ALLOWED_HOSTS='["keys.example.edu"]'.
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens and stored OTP digests will not survive restart.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        self.allowed_email_domain = self.allowed_email_domain.strip().lstrip("@").lower()
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
