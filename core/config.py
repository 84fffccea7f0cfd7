"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for terminalpub happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. redis_url -> REDIS_URL). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation once every field is
      resolved. Enforces the session expiry ordering and positive timeouts.

Components never call get_settings() themselves. api/main.py reads it once in
the lifespan and passes the individual values into each constructor, so tests
build components with whatever values they need.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, federation/, or cache/.
"""

import logging
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("terminalpub.config")


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
    domain: str = "localhost"
    base_url: str = "http://localhost:8080"

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///terminalpub.db"
    redis_url: str = "redis://localhost:6379/0"

    # ------------------------------------------------------------------
    # OAuth / device flow
    # ------------------------------------------------------------------

    oauth_callback_url: str = "http://localhost:8080/oauth/callback"
    # Empty string means "derive from base_url" -- filled in by validate_policy().
    verification_uri: str = ""
    oauth_scopes: str = "read write follow"
    app_name: str = "terminalpub"
    app_website: str = "https://github.com/fulgidus/terminalpub"
    user_agent: str = "terminalpub/0.1.0"

    device_code_ttl_seconds: int = 15 * 60
    poll_interval_seconds: int = 5
    device_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_ttl_seconds: int = 24 * 60 * 60
    anonymous_session_ttl_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # Timeouts and maintenance
    # ------------------------------------------------------------------

    upstream_timeout_seconds: float = 30.0
    background_timeout_seconds: float = 5.0
    sweep_interval_seconds: int = 300

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_policy(self) -> "Settings":
        """Reject configurations that would break session or timeout invariants.

        Anonymous sessions must expire strictly before authenticated ones, and
        every timeout must be positive -- a zero timeout would make each
        outbound call fail immediately.
        """
        if self.anonymous_session_ttl_seconds >= self.session_ttl_seconds:
            raise ValueError("ANONYMOUS_SESSION_TTL_SECONDS must be shorter than SESSION_TTL_SECONDS.")
        for name in ("upstream_timeout_seconds", "background_timeout_seconds"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be positive.")
        if self.device_code_ttl_seconds <= 0 or self.poll_interval_seconds <= 0:
            raise ValueError("Device code TTL and poll interval must be positive.")
        if not self.verification_uri:
            self.verification_uri = f"{self.base_url.rstrip('/')}/device"
        if self.debug:
            logger.warning("DEBUG mode enabled -- do not run this configuration in production.")
        return self

    @property
    def scope_list(self) -> list[str]:
        return self.oauth_scopes.split()


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
