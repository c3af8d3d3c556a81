"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for VulnTrack happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. database_url -> DATABASE_URL). Type coercion and validation are
      built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used to normalise the MCP API base URL and
      refuse limits that would make the service unusable.

The clock helper now_utc also lives here. The lifecycle core never
reads the clock itself; callers pass now_utc as the injected time source.

Layer rule: core/ is the kernel. This module may not import from api/, cmdb/,
or mcp_server/.
"""

import logging
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("vulntrack.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'cmdb' / 'vulntrack.db'}"


def now_utc() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `database_url` reads from DATABASE_URL, `api_key` reads from API_KEY.
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
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    status_rate_limit: str = "30/minute"
    read_rate_limit: str = "60/minute"
    import_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # Status changes and import
    # ------------------------------------------------------------------

    # How many times a status change is recomputed against a re-fetched
    # snapshot after the store reports a version conflict.
    status_retry_attempts: int = 3
    max_upload_bytes: int = 5 * 1024 * 1024

    # ------------------------------------------------------------------
    # MCP server (talks to the REST API over HTTP)
    # ------------------------------------------------------------------

    api_base_url: str = "http://localhost:8000/api/v1"
    api_key: str = ""
    mcp_timeout_seconds: float = 30.0
    mcp_character_limit: int = 25000

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_limits(self) -> "Settings":
        """Normalise the API base URL and reject unusable limits.

        A trailing slash on api_base_url would produce '//' when tool paths
        are joined, so it is stripped here once rather than at every call site.
        """
        self.api_base_url = self.api_base_url.rstrip("/")
        if self.status_retry_attempts < 1:
            raise ValueError("STATUS_RETRY_ATTEMPTS must be at least 1.")
        if self.max_upload_bytes <= 0:
            raise ValueError("MAX_UPLOAD_BYTES must be positive.")
        if self.mcp_character_limit <= 0:
            raise ValueError("MCP_CHARACTER_LIMIT must be positive.")
        if not self.api_key:
            logger.debug("API_KEY not set; MCP requests will be sent without X-API-Key")
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
