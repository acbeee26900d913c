"""
Matchgraph — Application Configuration

Loads all configuration from environment variables (and an optional .env file)
using Pydantic Settings.  A cached ``get_settings()`` helper is provided so that
FastAPI dependency-injection (and any other call-site) always receives the same
validated instance without re-parsing the environment on every request.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Largest number of writes a single atomic batch may carry.
MAX_WRITE_BATCH_LIMIT = 400


class Settings(BaseSettings):
    """Central configuration for the Matchgraph service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Database – Cloud SQL via Unix socket or private IP
    # ------------------------------------------------------------------ #
    DATABASE_URL: str
    DB_USER: str = "matchgraph_user"
    DB_PASSWORD: str = ""
    DB_NAME: str = "matchgraph"
    CLOUD_SQL_INSTANCE_CONNECTION: str = ""
    CLOUD_SQL_USE_UNIX_SOCKET: bool = True

    # ------------------------------------------------------------------ #
    # Google Cloud Platform / object storage
    # ------------------------------------------------------------------ #
    GCP_PROJECT_ID: str = ""
    GCS_BUCKET_NAME: str = ""
    USER_MEDIA_PREFIX: str = "user_photos"
    STORAGE_DELETE_ATTEMPTS: int = 3

    # ------------------------------------------------------------------ #
    # Push notifications (Firebase Cloud Messaging)
    # ------------------------------------------------------------------ #
    PUSH_NOTIFICATIONS_ENABLED: bool = True
    FIREBASE_CREDENTIALS_FILE: str = ""
    APP_NAME: str = "Matchgraph"

    # ------------------------------------------------------------------ #
    # Deletion cascade
    # ------------------------------------------------------------------ #
    SWEEP_PAGE_SIZE: int = 100
    WRITE_BATCH_LIMIT: int = MAX_WRITE_BATCH_LIMIT
    SWEEP_MAX_PAGES_PER_RUN: int = 0  # 0 = unlimited
    RECONCILE_TIME_BUDGET_SECONDS: float = 480.0

    # ------------------------------------------------------------------ #
    # Runtime environment
    # ------------------------------------------------------------------ #
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    REQUEST_TIMEOUT_SECONDS: float = 540.0

    # ------------------------------------------------------------------ #
    # CORS
    # ------------------------------------------------------------------ #
    ALLOWED_ORIGINS: str = "*"

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #
    @property
    def allowed_origins_list(self) -> list[str]:
        """Return ALLOWED_ORIGINS as a list split on commas."""
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @field_validator("WRITE_BATCH_LIMIT")
    @classmethod
    def _batch_limit_within_ceiling(cls, v: int) -> int:
        if not 1 <= v <= MAX_WRITE_BATCH_LIMIT:
            raise ValueError(
                f"WRITE_BATCH_LIMIT must be between 1 and {MAX_WRITE_BATCH_LIMIT}, got {v}"
            )
        return v

    @field_validator("SWEEP_PAGE_SIZE")
    @classmethod
    def _page_size_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"SWEEP_PAGE_SIZE must be positive, got {v}")
        return v


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached, validated ``Settings`` instance.

    Using ``@lru_cache`` guarantees the .env file is read and validated
    exactly once per process lifetime.  Import this function anywhere you
    need access to configuration::

        from app.config import get_settings
        settings = get_settings()
    """
    return Settings()  # type: ignore[call-arg]
