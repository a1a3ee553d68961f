"""
core/config.py -- Centralized configuration for the Sentinel identity core.

All environment variable reads happen here. No module should call os.getenv()
or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): cross-field validation after all fields are
      resolved. Implements the DEBUG-conditional SECRET_KEY policy and rejects
      lockout/rate-limit values that would disable the protections outright.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Bearer tokens
       are HMAC-SHA256 signed with it -- a short key weakens every token.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. There is no literal default secret.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sentinel.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'sentinel_identity.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults (except the secret in production) so Settings()
    can be instantiated in test environments without a real .env file.
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
    # Tokens -- duration strings: "<n>s", "<n>m", "<n>h", "<n>d"
    # ------------------------------------------------------------------

    access_token_expiry: str = "1h"
    refresh_token_expiry: str = "7d"

    # ------------------------------------------------------------------
    # Account guard
    # ------------------------------------------------------------------

    max_login_attempts: int = 5
    lockout_minutes: int = 15
    password_reset_ttl_seconds: int = 3600
    mfa_issuer: str = "Sentinel"

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    api_key_environment: str = "live"  # "live" | "test"
    api_key_default_rate_limit: int = 1000  # requests per window
    api_key_rate_window_seconds: int = 3600

    # ------------------------------------------------------------------
    # RBAC
    # ------------------------------------------------------------------

    # 0 disables the permission cache entirely.
    permission_cache_ttl_seconds: int = 300

    # ------------------------------------------------------------------
    # HTTP rate limiting (slowapi, per client IP)
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued tokens will not survive a restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. " "Issued tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_limits(self) -> "Settings":
        """Reject values that would silently switch off a protection."""
        if self.max_login_attempts < 1:
            raise ValueError("MAX_LOGIN_ATTEMPTS must be at least 1.")
        if self.lockout_minutes < 1:
            raise ValueError("LOCKOUT_MINUTES must be at least 1.")
        if self.api_key_environment not in ("live", "test"):
            raise ValueError("API_KEY_ENVIRONMENT must be 'live' or 'test'.")
        if self.api_key_default_rate_limit < 1 or self.api_key_rate_window_seconds < 1:
            raise ValueError("API key rate limit and window must be positive.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
