"""
Configuration settings for the recall study engine.

Uses Pydantic Settings for environment variable management with .env file support.
All variables are prefixed with RECALL_ (e.g. RECALL_NEW_CARD_CAP=30).
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="RECALL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Local Store
    # ========================================
    data_dir: Path = Field(
        default=Path.home() / ".recall",
        description="Directory holding the local database and progress backups",
    )
    db_path: Path | None = Field(
        default=None,
        description="SQLite database file (defaults to <data_dir>/state.db)",
    )
    user_id: str = Field(
        default="local",
        description="Active learner; progress is keyed by (user_id, card_id)",
    )
    store_retry_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts for local store operations that hit lock contention",
    )
    store_retry_backoff_seconds: float = Field(
        default=0.05,
        ge=0.0,
        description="Initial backoff between store retries (doubles each attempt)",
    )

    # ========================================
    # Scheduling
    # ========================================
    new_card_cap: int = Field(
        default=20,
        ge=0,
        description="Maximum new cards introduced per deck per day",
    )
    desired_retention: float = Field(
        default=0.9,
        ge=0.7,
        le=0.99,
        description="Target recall probability used to derive intervals",
    )
    maximum_interval_days: int = Field(
        default=36500,
        ge=1,
        description="Upper bound on any scheduled interval",
    )
    relearn_interval_days: float = Field(
        default=1.0,
        gt=0.0,
        description="Interval assigned after an Again grade",
    )

    # ========================================
    # Remote Sync
    # ========================================
    remote_url: str | None = Field(
        default=None,
        description="Base URL of the remote progress document store",
    )
    remote_api_key: str | None = Field(
        default=None,
        description="Bearer token for the remote progress store",
    )
    remote_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="HTTP timeout for remote calls",
    )
    remote_database_url: str | None = Field(
        default=None,
        description="SQLAlchemy URL of the remote relational progress table",
    )
    deck_source_url: str | None = Field(
        default=None,
        description="Base URL used to refresh decks from the network",
    )

    # ========================================
    # Logging
    # ========================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="WARNING",
        description="Minimum level written to stderr",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional rotating log file path",
    )

    @model_validator(mode="after")
    def _default_db_path(self) -> Settings:
        if self.db_path is None:
            self.db_path = self.data_dir / "state.db"
        return self

    @property
    def backup_dir(self) -> Path:
        """Directory for JSON progress backups written before a reset."""
        return self.data_dir / "backups"

    def has_remote_configured(self) -> bool:
        """Check if any remote progress backend is configured."""
        return bool(self.remote_url or self.remote_database_url)

    def get_scheduler_config(self) -> dict[str, float]:
        """Get scheduler parameters as a dictionary."""
        return {
            "desired_retention": self.desired_retention,
            "maximum_interval": self.maximum_interval_days,
            "relearn_interval": self.relearn_interval_days,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
