"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for tokenauth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. default_expire_seconds -> DEFAULT_EXPIRE_SECONDS).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Lifetimes must be positive and a
      configured maximum may not undercut the default.

Settings only holds plain values. The callbacks (code generators, senders,
password validator) are attached when auth.context.AuthConfig is built from
these settings.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tokenauth.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string means "use the store's default SQLite file".
    database_url: str = ""

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # Lifetime used when the client does not ask for one.
    default_expire_seconds: int = 600
    # Upper bound on any requested lifetime. 0 disables the cap.
    maximum_expire_seconds: int = 0

    # ------------------------------------------------------------------
    # Codes
    # ------------------------------------------------------------------

    single_use_code_expire_seconds: int = 1800
    restore_expire_seconds: int = 1800
    # When true, code signin does not reveal whether a login exists.
    conceal_unknown_logins: bool = False

    delivery_webhook_url: str = ""
    delivery_timeout_seconds: int = 10

    # ------------------------------------------------------------------
    # Passwords and permissions
    # ------------------------------------------------------------------

    # bcrypt cost factor (log2 rounds).
    password_strength: int = 12
    password_min_length: int = 6
    admin_permission: str = "admin"

    # ------------------------------------------------------------------
    # API surface
    # ------------------------------------------------------------------

    signin_rate_limit: str = "10/minute"
    # JSON lists in the environment, e.g. ALLOWED_HOSTS='["auth.example.com"]'
    allowed_hosts: list[str] = ["*"]
    cors_origins: list[str] = []
    default_page_size: int = 50
    max_page_size: int = 500

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_lifetimes(self) -> "Settings":
        """Reject configurations that would issue unusable tokens or codes.

        maximum_expire_seconds == 0 means "no cap". When a cap is set it must
        not be smaller than the default, otherwise every default signin would
        silently be clamped.
        """
        for name in ("default_expire_seconds", "single_use_code_expire_seconds", "restore_expire_seconds"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be a positive number of seconds.")
        if self.maximum_expire_seconds < 0:
            raise ValueError("MAXIMUM_EXPIRE_SECONDS must be 0 (no cap) or positive.")
        if self.maximum_expire_seconds and self.maximum_expire_seconds < self.default_expire_seconds:
            raise ValueError("MAXIMUM_EXPIRE_SECONDS must not be smaller than DEFAULT_EXPIRE_SECONDS.")
        if not 4 <= self.password_strength <= 31:
            raise ValueError("PASSWORD_STRENGTH must be a bcrypt cost between 4 and 31.")
        if not self.admin_permission:
            raise ValueError("ADMIN_PERMISSION must not be empty.")
        if not 1 <= self.default_page_size <= self.max_page_size:
            raise ValueError("DEFAULT_PAGE_SIZE must be between 1 and MAX_PAGE_SIZE.")
        if not self.delivery_webhook_url and not self.debug:
            logger.warning(
                "WARNING: DELIVERY_WEBHOOK_URL is not set. "
                "Single-use and restore codes cannot be delivered outside DEBUG mode."
            )
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
