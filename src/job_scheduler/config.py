"""
Configuration for the job scheduler and its worker processes.
"""

from datetime import timedelta
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SchedulerSettings(BaseSettings):
    """Scheduler and dispatcher settings, read from ``JOB_SCHEDULER_*`` variables."""

    model_config = SettingsConfigDict(
        env_prefix="JOB_SCHEDULER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///jobs.db",
        description="SQLAlchemy async database URL of the shared job store",
    )
    log_level: str = Field(default="info", description="Logging level")

    # Dispatcher
    poll_interval_seconds: float = Field(default=5.0, gt=0, description="Idle sleep between polls")
    lease_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Lease length; must comfortably exceed the slowest handler",
    )
    concurrency: int = Field(default=1, ge=1, le=64, description="Polling workers per dispatcher")
    claim_batch_size: int = Field(default=10, ge=1, description="Due jobs considered per claim attempt")
    shutdown_timeout_seconds: float = Field(default=30.0, ge=0, description="Grace period for in-flight jobs on stop")

    # Retries
    default_max_retries: int = Field(default=3, ge=1, description="Retry budget of newly enqueued jobs")
    backoff_base_seconds: float = Field(default=10.0, gt=0, description="Backoff is base * 2 ** retry_count")

    # Maintenance
    cleanup_interval_seconds: float = Field(default=3600.0, gt=0, description="How often maintenance runs")
    stale_lock_seconds: float = Field(default=600.0, ge=0, description="Age past expiry before a lock is released")
    completed_retention_days: int = Field(default=7, ge=0, description="Days completed one-time jobs are kept")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid = {"debug", "info", "warning", "error", "critical"}
        if v.lower() not in valid:
            raise ValueError(f"Invalid log level: {v}")
        return v.lower()

    @property
    def lease(self) -> timedelta:
        return timedelta(seconds=self.lease_seconds)

    @property
    def stale_lock_age(self) -> timedelta:
        return timedelta(seconds=self.stale_lock_seconds)

    @property
    def completed_retention(self) -> timedelta:
        return timedelta(days=self.completed_retention_days)


@lru_cache
def get_settings() -> SchedulerSettings:
    """Get cached settings instance."""
    return SchedulerSettings()
