import uuid
from enum import Enum
from typing import Callable, Optional
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, Field, field_validator, model_validator

from job_scheduler.policies import next_run_after, should_retry


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken as UTC; aware ones are converted to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class JobKind(str, Enum):
    ONE_TIME = "one_time"
    RECURRING = "recurring"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobRecord(BaseModel):
    """
    A unit of schedulable work as persisted in the job store.

    One-time records run once (including their retries) and end Completed,
    Failed or Cancelled. Recurring records are re-armed after every successful
    run and only stop when cancelled or when their retry budget runs out.
    """
    id: str = Field(default_factory=lambda: f"job_{uuid.uuid4().hex}", description="Unique job identifier")
    job_name: str = Field(..., description="Synthesized for one-time jobs, stable identity for recurring jobs")
    handler_id: str = Field(..., description="Identifier resolved through the handler registry at dispatch time")
    payload: Optional[str] = Field(None, description="Serialized argument blob, opaque to the engine")
    kind: JobKind = JobKind.ONE_TIME
    status: JobStatus = JobStatus.PENDING
    scheduled_at: datetime = Field(default_factory=utc_now, description="The job must not be claimed before this instant")
    interval_seconds: Optional[int] = Field(None, description="Cadence of a recurring job")
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    retry_count: int = 0
    max_retries: int = 3
    error_message: Optional[str] = None
    lock_id: Optional[str] = Field(None, description="Token of the worker currently holding the lease")
    lock_expires_at: Optional[datetime] = None
    version: int = Field(0, description="Row version, bumped by the store on every write")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @field_validator(
        'scheduled_at', 'next_run_at', 'last_run_at', 'started_at', 'completed_at',
        'lock_expires_at', 'created_at', 'updated_at', 'deleted_at',
    )
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        # SQLite drops the offset on write, so every instant is kept in UTC.
        return to_utc(v)

    @model_validator(mode='after')
    def check_consistency(self) -> 'JobRecord':
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if not 0 <= self.retry_count <= self.max_retries:
            raise ValueError("retry_count must be between 0 and max_retries")
        if self.kind == JobKind.RECURRING:
            if self.interval_seconds is None or self.interval_seconds <= 0:
                raise ValueError("Recurring jobs require a positive interval_seconds")
        elif self.interval_seconds is not None or self.next_run_at is not None:
            raise ValueError("One-time jobs cannot carry interval_seconds or next_run_at")
        return self

    @property
    def is_recurring(self) -> bool:
        return self.kind == JobKind.RECURRING

    @property
    def is_terminal(self) -> bool:
        if self.is_recurring and self.status == JobStatus.COMPLETED:
            return False
        return self.status in TERMINAL_STATUSES

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def clear_lock(self) -> None:
        self.lock_id = None
        self.lock_expires_at = None

    def mark_claimed(self, lock_id: str, now: datetime, lease: timedelta) -> None:
        self.status = JobStatus.PROCESSING
        self.lock_id = lock_id
        self.lock_expires_at = now + lease
        self.started_at = now

    def mark_succeeded(self, now: datetime) -> None:
        """
        Record a successful run. Recurring jobs are re-armed for their next
        cycle instead of completing.
        """
        self.clear_lock()
        self.error_message = None
        self.last_run_at = now
        self.completed_at = now
        if self.is_recurring:
            self.next_run_at = next_run_after(now, self.interval_seconds)
            self.scheduled_at = self.next_run_at
            self.retry_count = 0
            self.status = JobStatus.PENDING
        else:
            self.status = JobStatus.COMPLETED

    def mark_failed(self, reason: str, now: datetime, backoff: Callable[[int], timedelta]) -> None:
        """
        Record a failed run: retry after ``backoff(retry_count)`` while the
        retry budget lasts, otherwise fail terminally without rescheduling.
        """
        self.clear_lock()
        self.retry_count = min(self.retry_count + 1, self.max_retries)
        self.error_message = reason
        self.last_run_at = now
        if should_retry(self.retry_count, self.max_retries):
            self.status = JobStatus.PENDING
            self.scheduled_at = now + backoff(self.retry_count)
            if self.is_recurring:
                self.next_run_at = self.scheduled_at
        else:
            self.status = JobStatus.FAILED

    def mark_cancelled(self) -> None:
        self.status = JobStatus.CANCELLED

    def rearm(self, start_at: datetime) -> None:
        """Bring a failed recurring job back into rotation."""
        self.clear_lock()
        self.status = JobStatus.PENDING
        self.retry_count = 0
        self.error_message = None
        self.scheduled_at = start_at
        self.next_run_at = start_at
