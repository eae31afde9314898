"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the FlightSchool API happen here. No module
should call os.getenv() or os.environ.get() directly.

Design patterns used:
  Factory via lru_cache: get_settings() instantiates Settings once at first
      call. Only the application lifespan calls it; every gateway component
      receives the Settings instance (or the values it needs) through its
      constructor. There is no module-level settings object for the signing
      secret or the database connection.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates missing secrets with a
      warning, production mode refuses to start without them.

Security notes:
  Secrets shorter than 32 chars are rejected outright. HMAC-SHA256 (API key
  digests, CSRF token MACs) and JWT signing all rely on key entropy.

  clock_skew_seconds is capped at 30. A wider window would let expired session
  tokens live noticeably past their advertised lifetime.

Layer rule: core/ is the kernel. This module may not import from api/ or gateway/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("flightschool.config")

_MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true). The
    model_validator enforces production-safety rules at startup.
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
    # Empty string is the sentinel for "not configured" on every secret below.
    secret_key: str = ""
    csrf_secret: str = ""
    # HMAC key for API key digests. Falls back to secret_key when unset.
    api_key_pepper: str = ""
    database_url: str = "sqlite:///flightschool.db"

    # ------------------------------------------------------------------
    # Sessions and cookies
    # ------------------------------------------------------------------

    # True in production: cookies carry the Secure attribute.
    secure_cookies: bool = False
    session_ttl_seconds: int = Field(default=7 * 24 * 3600, gt=0)
    csrf_ttl_seconds: int = Field(default=24 * 3600, gt=0)
    clock_skew_seconds: int = Field(default=30, ge=0, le=30)

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    mfa_issuer: str = "FlightSchool"
    pending_auth_ttl_seconds: int = Field(default=300, gt=0)
    mfa_max_attempts: int = Field(default=5, gt=0)

    # ------------------------------------------------------------------
    # CSRF policy
    # ------------------------------------------------------------------

    csrf_exempt_paths: list[str] = [
        "/api/v1/auth/login",
        "/api/v1/auth/register",
        "/api/v1/auth/csrf-token",
        "/api/v1/auth/mfa/verify-login",
    ]
    csrf_exempt_patterns: list[str] = [r"^/api/v1/schools/[^/]+/flight-logs/today$"]
    csrf_protected_get_prefixes: list[str] = ["/api/v1/schools/"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the secret policy for SECRET_KEY and CSRF_SECRET.

        Dev mode (DEBUG=true): auto-generate missing secrets with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if either
            secret is missing.

        Both modes: reject secrets shorter than 32 characters.
        """
        for name in ("secret_key", "csrf_secret"):
            value = getattr(self, name)
            if not value:
                if not self.debug:
                    raise ValueError(
                        f"{name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
                value = secrets.token_hex(32)
                setattr(self, name, value)
                logger.warning(
                    "WARNING: Using auto-generated %s. Sessions will not persist across restarts.", name.upper()
                )
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(f"{name.upper()} must be at least {_MIN_SECRET_LENGTH} characters.")
        if not self.api_key_pepper:
            self.api_key_pepper = self.secret_key
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings instance.

    Called once by the API lifespan, which hands the instance to every gateway
    component. In tests: call get_settings.cache_clear() between test cases if
    you need to inject different environment variables, or build Settings(...)
    directly.
    """
    return Settings()


class HttpSettings(BaseSettings):
    """Middleware configuration (Host allow-list, CORS origins).

    Kept apart from Settings because middleware is fixed when api/main.py is
    imported, before the lifespan runs. It holds no secrets, so reading it at
    import time cannot fail on a missing SECRET_KEY.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
