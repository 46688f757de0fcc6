"""Engine settings loaded from environment variables."""

import logging
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Schedule engine configuration. Every value can be overridden with a ``SCHEDULE_ENGINE_`` variable."""

    # Clock
    timezone: str = Field(default="UTC", description="Zone whose midnight triggers the daily synchronization")

    # Queue
    namespace: str = Field(default="schedule", description="Tag attached to every job this engine enqueues")
    queue_concurrency: int = Field(default=4, ge=1)
    retry_backoff_seconds: int = Field(default=30, ge=0)
    failed_jobs_to_keep: int = Field(default=50, ge=0)
    broker_url: str = Field(default="redis://localhost:6379/0")

    # Bookkeeping
    history_limit: int = Field(default=50, ge=1)
    search_horizon_days: int = Field(default=732, ge=1)

    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./schedules.db")

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_prefix="SCHEDULE_ENGINE_", env_file=".env", env_file_encoding="utf-8", extra="ignore")


def configure_logging(settings: Optional[EngineSettings] = None) -> None:
    """Apply ``log_level`` to the package logger. Applications that configure logging themselves can skip this."""
    settings = settings or EngineSettings()
    logging.getLogger("schedule_engine").setLevel(settings.log_level.upper())
