"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SitePass happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional SECRET_KEY
      logic and for the rate-limit bypass guard.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. HMAC-SHA256 and
       JWT signing both rely on key entropy -- a short key weakens both.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  [B1] The rate-limit bypass key is ignored when ENVIRONMENT=production, even
       if one is configured. ENVIRONMENT defaults to production, independent
       of DEBUG. Lockout thresholds are never bypassable.

Lockout and rate-limit numbers below are defaults, not policy. Operators are
expected to tune them per deployment.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sitepass.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
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
    # "development", "test", "production". Unset means production, so the
    # rate-limit bypass needs an explicit non-production ENVIRONMENT.
    environment: str = "production"
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = ""  # empty -> auth/sitepass_auth.db next to the store

    # ------------------------------------------------------------------
    # Access tokens (JWT)
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 900
    jwt_issuer: str = ""
    jwt_audience: str = ""

    # ------------------------------------------------------------------
    # Refresh tokens and cookie
    # ------------------------------------------------------------------

    refresh_token_ttl_days: int = 30
    refresh_cookie_name: str = "pm_rt"
    refresh_cookie_path: str = "/api/v1/auth"
    refresh_cookie_domain: str = ""  # empty -> host-only cookie
    refresh_cookie_samesite: str = "lax"
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    lockout_max_attempts: int = 5
    lockout_window_seconds: int = 15 * 60
    lockout_duration_seconds: int = 5 * 60
    lockout_backoff_multiplier: float = 2.0
    lockout_max_duration_seconds: int = 24 * 60 * 60

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_ip_rate_limit: int = 10
    login_user_rate_limit: int = 5
    refresh_ip_rate_limit: int = 30
    rate_limit_window_seconds: int = 60
    # Rejected hits keep counting up to limit * overage factor, which bounds
    # the longest backoff a single caller can accumulate.
    rate_limit_overage_factor: int = 3
    global_rate_limit: str = "120/minute"

    rate_limit_bypass_header: str = "X-RateLimit-Bypass"
    rate_limit_bypass_key: str = ""

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    purge_interval_seconds: int = 6 * 60 * 60

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
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
        return self

    @model_validator(mode="after")
    def validate_bypass(self) -> "Settings":
        """Drop the rate-limit bypass key in production [B1]."""
        if self.is_production and self.rate_limit_bypass_key:
            logger.warning("RATE_LIMIT_BYPASS_KEY is set but ignored in production")
            self.rate_limit_bypass_key = ""
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
