import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, List, Optional, Sequence, Type, Union

from pydantic import BaseModel

from job_scheduler.config import SchedulerSettings, get_settings
from job_scheduler.domain.job import Clock, JobKind, JobRecord, JobStatus, utc_now
from job_scheduler.errors import DuplicateJobError, InvalidJobError, JobSchedulerError, NotFoundError
from job_scheduler.handler_registry import handler_id_for
from job_scheduler.handlers.protocol import JobHandler
from job_scheduler.listeners import JobStateListener, notify_listeners
from job_scheduler.policies import SECONDS_PER_DAY, next_daily_run
from job_scheduler.storages.protocol import JobStore

logger = logging.getLogger(__name__)

HandlerRef = Union[str, JobHandler, Type[JobHandler]]

MAX_WRITE_ATTEMPTS = 3


def serialize_payload(payload: Any) -> Optional[str]:
    if payload is None or isinstance(payload, str):
        return payload
    if isinstance(payload, BaseModel):
        return payload.model_dump_json()
    try:
        return json.dumps(payload)
    except (TypeError, ValueError) as e:
        raise InvalidJobError(f"Payload is not JSON serializable: {e}") from e


class JobScheduler:
    """
    Application-facing API for enqueuing, cancelling and inspecting jobs.

    Enqueuing only writes to the store; execution happens in whichever
    process runs a ``Dispatcher`` against the same store.
    """

    def __init__(
        self,
        store: JobStore,
        settings: Optional[SchedulerSettings] = None,
        listeners: Sequence[JobStateListener] = (),
        clock: Clock = utc_now,
    ):
        self.store: JobStore = store
        self.settings: SchedulerSettings = settings or get_settings()
        self.listeners: List[JobStateListener] = list(listeners)
        self.clock: Clock = clock

    async def enqueue_once(
        self,
        handler: HandlerRef,
        payload: Any = None,
        run_at: Optional[datetime] = None,
        max_retries: Optional[int] = None,
    ) -> JobRecord:
        handler_id = self._handler_id(handler)
        now = self.clock()
        record = JobRecord(
            job_name=f"{handler_id}_{uuid.uuid4().hex}",
            handler_id=handler_id,
            payload=serialize_payload(payload),
            kind=JobKind.ONE_TIME,
            scheduled_at=run_at or now,
            max_retries=self._max_retries(max_retries),
            created_at=now,
        )
        await self.store.insert(record)
        logger.info("Enqueued job %s for handler '%s' at %s", record.id, handler_id, record.scheduled_at.isoformat())
        await notify_listeners(self.listeners, record)
        return record

    async def enqueue_recurring(
        self,
        job_name: str,
        handler: HandlerRef,
        interval_seconds: int,
        payload: Any = None,
        start_at: Optional[datetime] = None,
        max_retries: Optional[int] = None,
    ) -> JobRecord:
        """
        Register a recurring job, or update it in place if ``job_name`` is already registered.

        Re-registering overwrites the interval and payload. A registration whose
        retries ran out is brought back into rotation at ``start_at``.

        Raises:
            DuplicateJobError: If ``job_name`` is bound to a different handler.
            InvalidJobError: If the name, handler or interval is invalid.
        """
        if not job_name or not job_name.strip():
            raise InvalidJobError("job_name cannot be empty")
        handler_id = self._handler_id(handler)
        interval_seconds = self._interval_seconds(interval_seconds)
        serialized = serialize_payload(payload)
        retries = self._max_retries(max_retries) if max_retries is not None else None

        for _ in range(MAX_WRITE_ATTEMPTS):
            now = self.clock()
            existing = await self._find_recurring(job_name)
            if existing is not None:
                if existing.handler_id != handler_id:
                    raise DuplicateJobError(
                        job_name,
                        f"Recurring job '{job_name}' is already bound to handler '{existing.handler_id}'",
                    )
                expected_version = existing.version
                existing.interval_seconds = interval_seconds
                existing.payload = serialized
                if retries is not None:
                    existing.max_retries = retries
                    existing.retry_count = min(existing.retry_count, retries)
                if existing.status == JobStatus.FAILED:
                    existing.rearm(start_at or now)
                if await self.store.update(existing, expected_version=expected_version):
                    logger.info("Updated recurring job '%s' (%s), every %ss", job_name, existing.id, interval_seconds)
                    await notify_listeners(self.listeners, existing)
                    return existing
                continue

            scheduled = start_at or now
            record = JobRecord(
                job_name=job_name,
                handler_id=handler_id,
                payload=serialized,
                kind=JobKind.RECURRING,
                scheduled_at=scheduled,
                next_run_at=scheduled,
                interval_seconds=interval_seconds,
                max_retries=retries if retries is not None else self.settings.default_max_retries,
                created_at=now,
            )
            try:
                await self.store.insert(record)
            except DuplicateJobError:
                # Another caller registered the name first; upsert against theirs.
                continue
            logger.info("Registered recurring job '%s' (%s), every %ss", job_name, record.id, interval_seconds)
            await notify_listeners(self.listeners, record)
            return record

        raise JobSchedulerError(f"Recurring job '{job_name}' kept changing concurrently, giving up")

    async def cancel(self, job_id: str) -> bool:
        """
        Cancel a pending job.

        Returns False without changing anything when the job is not pending,
        including while a worker is processing it.

        Raises:
            NotFoundError: If no job has this id.
        """
        record = await self.store.get_by_id(job_id)
        if record is None:
            raise NotFoundError(job_id)
        if record.status != JobStatus.PENDING:
            logger.debug("Not cancelling job %s: status is %s", job_id, record.status.value)
            return False
        expected_version = record.version
        record.mark_cancelled()
        if not await self.store.update(record, expected_version=expected_version):
            logger.info("Job %s changed while cancelling, leaving it alone", job_id)
            return False
        logger.info("Cancelled job %s", job_id)
        await notify_listeners(self.listeners, record)
        return True

    async def cancel_recurring(self, job_name: str) -> int:
        """
        Cancel every non-cancelled recurring record named ``job_name``.

        A run already in flight finishes, but the job is not re-armed afterwards.
        Returns the number of records cancelled.
        """
        cancelled = 0
        for record in await self.store.list_by_name(job_name):
            if record.kind != JobKind.RECURRING or record.status == JobStatus.CANCELLED:
                continue
            for _ in range(MAX_WRITE_ATTEMPTS):
                expected_version = record.version
                record.mark_cancelled()
                if await self.store.update(record, expected_version=expected_version):
                    cancelled += 1
                    await notify_listeners(self.listeners, record)
                    break
                record = await self.store.get_by_id(record.id)
                if record is None or record.status == JobStatus.CANCELLED:
                    break
        logger.info("Cancelled %d recurring record(s) named '%s'", cancelled, job_name)
        return cancelled

    async def get_by_id(self, job_id: str) -> Optional[JobRecord]:
        return await self.store.get_by_id(job_id)

    async def list_by_name(self, job_name: str) -> List[JobRecord]:
        return await self.store.list_by_name(job_name)

    # Convenience schedules

    async def run_now(self, handler: HandlerRef, payload: Any = None) -> JobRecord:
        return await self.enqueue_once(handler, payload, run_at=self.clock())

    async def run_at(self, handler: HandlerRef, run_at: datetime, payload: Any = None) -> JobRecord:
        return await self.enqueue_once(handler, payload, run_at=run_at)

    async def run_after(self, handler: HandlerRef, delay: timedelta, payload: Any = None) -> JobRecord:
        if delay < timedelta(0):
            raise InvalidJobError("delay cannot be negative")
        return await self.enqueue_once(handler, payload, run_at=self.clock() + delay)

    async def run_every_seconds(self, job_name: str, handler: HandlerRef, seconds: int, payload: Any = None) -> JobRecord:
        return await self.enqueue_recurring(job_name, handler, seconds, payload)

    async def run_every_minutes(self, job_name: str, handler: HandlerRef, minutes: int, payload: Any = None) -> JobRecord:
        return await self.enqueue_recurring(job_name, handler, minutes * 60, payload)

    async def run_every_hours(self, job_name: str, handler: HandlerRef, hours: int, payload: Any = None) -> JobRecord:
        return await self.enqueue_recurring(job_name, handler, hours * 3600, payload)

    async def run_daily(self, job_name: str, handler: HandlerRef, hour: int = 0, minute: int = 0, payload: Any = None) -> JobRecord:
        """
        Run once a day at ``hour:minute`` UTC, starting with the next occurrence.
        """
        try:
            start_at = next_daily_run(self.clock(), hour, minute)
        except ValueError as e:
            raise InvalidJobError(str(e)) from e
        return await self.enqueue_recurring(job_name, handler, SECONDS_PER_DAY, payload, start_at=start_at)

    async def _find_recurring(self, job_name: str) -> Optional[JobRecord]:
        records = await self.store.list_by_name(job_name)
        live = [r for r in records if r.kind == JobKind.RECURRING and r.status != JobStatus.CANCELLED]
        return live[0] if live else None

    def _handler_id(self, handler: HandlerRef) -> str:
        handler_id = handler_id_for(handler) if handler is not None else ""
        if not handler_id or not handler_id.strip():
            raise InvalidJobError("handler id cannot be empty")
        return handler_id

    def _interval_seconds(self, interval_seconds: Any) -> int:
        if isinstance(interval_seconds, bool) or not isinstance(interval_seconds, (int, float)):
            raise InvalidJobError(f"interval_seconds must be a whole number of seconds, got {interval_seconds!r}")
        if isinstance(interval_seconds, float) and not interval_seconds.is_integer():
            raise InvalidJobError(f"interval_seconds must be a whole number of seconds, got {interval_seconds!r}")
        if interval_seconds <= 0:
            raise InvalidJobError(f"interval_seconds must be positive, got {interval_seconds}")
        return int(interval_seconds)

    def _max_retries(self, max_retries: Optional[int]) -> int:
        if max_retries is None:
            return self.settings.default_max_retries
        if max_retries < 1:
            raise InvalidJobError(f"max_retries must be at least 1, got {max_retries}")
        return max_retries
