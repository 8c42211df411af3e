"""Application settings for the auto-sync backup service.

Settings are loaded from environment variables (and an optional `.env` file).
Secret values can alternatively be provided through a file path in the
matching `<NAME>_FILE` variable, which is how Docker secrets are mounted.
"""

from __future__ import annotations

import os
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _read_secret(value: str, file_path: str) -> str:
    """Resolve a secret from its direct value or a file.

    Args:
        value: Direct value (preferred when set).
        file_path: Path to a file containing the value.

    Returns:
        str: The resolved value, or an empty string.
    """

    if value:
        return value.strip()

    if file_path and os.path.exists(file_path):
        with open(file_path, "r", encoding="utf-8") as f:
            return f.read().strip()

    return ""


class Settings(BaseSettings):
    """Service configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    IMAGE_TAG: str = Field(default="local")
    DEBUG: bool = Field(default=False)

    DATABASE_URL: str = Field(default="sqlite+aiosqlite:///./autosync.db")
    RUN_MIGRATIONS: bool = Field(default=True)

    LOG_DIR: str = Field(default="/app/logs")
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FILENAME: str = Field(default="autosync.log")

    ADMIN_API_KEY: str = Field(default="")
    ADMIN_API_KEY_FILE: str = Field(default="")

    PURGE_SECRET: str = Field(default="")
    PURGE_SECRET_FILE: str = Field(default="")

    CONFIG_ENCRYPTION_KEY: str = Field(default="")
    CONFIG_ENCRYPTION_KEY_FILE: str = Field(default="")

    IDENTITY_HEADER: str = Field(default="X-User-Id")

    BLOB_STORE_PATH: str = Field(default="/app/blobs")

    TRANSFER_CONCURRENCY: int = Field(default=10, ge=1)
    JOB_TIMEOUT_SECONDS: int = Field(default=3600, ge=1)
    SCHEDULER_MAX_JOBS: int = Field(default=10, ge=1)
    SCHEDULER_CLAIM_TIMEOUT_SECONDS: int = Field(default=600, ge=1)
    SCHEDULER_HEARTBEAT_SECONDS: int = Field(default=60, ge=1)

    RUNNER_MODE: str = Field(default="api")
    RUNNER_INTERVAL: int = Field(default=60, ge=1)
    RUNNER_API_URL: str = Field(default="http://localhost:8000")
    RUNNER_DRAIN_MODE: bool = Field(default=False)
    RUNNER_DRAIN_MAX_BATCHES: int = Field(default=20, ge=1)

    def get_admin_api_key(self) -> str:
        """Return the admin API key used by the runner endpoint."""

        return _read_secret(self.ADMIN_API_KEY, self.ADMIN_API_KEY_FILE)

    def get_purge_secret(self) -> str:
        """Return the shared secret required for identity purges."""

        return _read_secret(self.PURGE_SECRET, self.PURGE_SECRET_FILE)

    def get_config_encryption_key(self) -> str:
        """Return the key used to seal credentials at rest."""

        return _read_secret(self.CONFIG_ENCRYPTION_KEY, self.CONFIG_ENCRYPTION_KEY_FILE)


@lru_cache()
def get_settings() -> Settings:
    """Return the process-wide settings instance."""

    return Settings()


settings = get_settings()
