import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence

from job_scheduler.config import SchedulerSettings, get_settings
from job_scheduler.domain.job import Clock, JobRecord, JobStatus, utc_now
from job_scheduler.handler_registry import HandlerRegistry
from job_scheduler.handlers.protocol import HandlerResult
from job_scheduler.listeners import JobStateListener, notify_listeners
from job_scheduler.policies import backoff_policy
from job_scheduler.storages.protocol import JobStore

logger = logging.getLogger(__name__)

MAX_OUTCOME_ATTEMPTS = 3


class Dispatcher:
    """
    Polling worker loop: claims due jobs from the store, runs their handlers and
    records the outcome.

    Any number of dispatchers, in one process or many, may share a store.
    They never talk to each other; the store's atomic claim is the only
    coordination, and a lease that expires hands an orphaned job to whichever
    dispatcher polls next.
    """

    def __init__(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        settings: Optional[SchedulerSettings] = None,
        listeners: Sequence[JobStateListener] = (),
        clock: Clock = utc_now,
        worker_id: Optional[str] = None,
    ):
        self.store: JobStore = store
        self.registry: HandlerRegistry = registry
        self.settings: SchedulerSettings = settings or get_settings()
        self.listeners: List[JobStateListener] = list(listeners)
        self.clock: Clock = clock
        self.worker_id: str = worker_id or f"dispatcher-{uuid.uuid4().hex[:8]}"
        self.backoff = backoff_policy(self.settings.backoff_base_seconds)
        self.is_running: bool = False
        self.worker_tasks: Dict[str, asyncio.Task] = {}
        self.maintenance_task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    async def start(self):
        """
        Start the polling workers and the maintenance loop.
        """
        if self.is_running:
            return
        self.is_running = True
        self._stopping.clear()
        for index in range(self.settings.concurrency):
            name = f"{self.worker_id}-{index}"
            self.worker_tasks[name] = asyncio.create_task(self._poll_loop(name), name=name)
        self.maintenance_task = asyncio.create_task(self._maintenance_loop(), name=f"{self.worker_id}-maintenance")
        logger.info("Dispatcher %s started with %d worker(s)", self.worker_id, len(self.worker_tasks))

    async def stop(self):
        """
        Stop polling. In-flight handlers see their cancel event set and get
        ``shutdown_timeout_seconds`` to finish before they are cancelled; a job
        interrupted that way keeps its lease and is reclaimed after it expires.
        """
        if not self.is_running:
            return
        self.is_running = False
        self._stopping.set()

        if self.maintenance_task:
            self.maintenance_task.cancel()
        tasks = list(self.worker_tasks.values())
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.settings.shutdown_timeout_seconds)
            for task in pending:
                logger.warning("Cancelling worker %s after shutdown timeout", task.get_name())
                task.cancel()
        await asyncio.gather(*tasks, *filter(None, [self.maintenance_task]), return_exceptions=True)
        self.worker_tasks.clear()
        self.maintenance_task = None
        logger.info("Dispatcher %s stopped", self.worker_id)

    async def run_once(self) -> Optional[JobRecord]:
        """
        Claim one due job, execute it and persist the outcome.

        Returns:
            Optional[JobRecord]: The job as persisted after the attempt, or None
            if no job was due.
        """
        lock_id = uuid.uuid4().hex
        record = await self.store.try_claim(lock_id, self.settings.lease)
        if record is None:
            return None
        logger.info("Processing job %s (%s) with handler '%s'", record.id, record.job_name, record.handler_id)
        await notify_listeners(self.listeners, record)

        result = await self._invoke(record)
        return await self._record_outcome(record, lock_id, result)

    async def run_until_idle(self, max_jobs: Optional[int] = None) -> int:
        """
        Process due jobs back to back until none is left (or ``max_jobs`` ran).
        """
        processed = 0
        while max_jobs is None or processed < max_jobs:
            if await self.run_once() is None:
                break
            processed += 1
        return processed

    async def perform_maintenance(self) -> None:
        released = await self.store.release_expired_locks(self.settings.stale_lock_age)
        purged = await self.store.purge_completed(self.settings.completed_retention)
        logger.info("Job maintenance completed: released %d stale lock(s), purged %d job(s)", released, purged)

    async def _invoke(self, record: JobRecord) -> HandlerResult:
        handler = self.registry.resolve(record.handler_id)
        if handler is None:
            logger.error("Handler not found: %s (job %s)", record.handler_id, record.id)
            return HandlerResult.failure(f"Handler not found: {record.handler_id}")

        timeout = self.settings.lease_seconds
        try:
            result = await asyncio.wait_for(
                handler.async_execute(record.payload, self._stopping),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Job %s exceeded its %ss lease", record.id, timeout)
            return HandlerResult.failure(f"Handler timed out after {timeout}s")
        except Exception as e:
            logger.exception("Error executing job %s", record.id)
            return HandlerResult.failure(str(e) or e.__class__.__name__)

        return self._normalize_result(record, result)

    @staticmethod
    def _normalize_result(record: JobRecord, result: Any) -> HandlerResult:
        """
        Map a handler's return value onto a ``HandlerResult``.

        Accepted: None or True (success), False, a ``HandlerResult``, or an
        ``(ok, error)`` tuple. Anything else fails the attempt.
        """
        if result is None or result is True:
            return HandlerResult.success()
        if result is False:
            return HandlerResult.failure("Handler reported failure")
        if isinstance(result, tuple) and len(result) == 2 and isinstance(result[0], bool):
            ok, error = result
            if ok:
                return HandlerResult.success()
            return HandlerResult.failure(str(error) if error else "Handler reported failure")
        if isinstance(result, HandlerResult):
            if not result.ok and not result.error:
                return HandlerResult.failure("Handler reported failure")
            return result
        logger.error("Handler '%s' returned an unsupported result for job %s: %r", record.handler_id, record.id, result)
        return HandlerResult.failure(f"Handler returned unsupported result of type {type(result).__name__}")

    async def _record_outcome(self, claimed: JobRecord, lock_id: str, result: HandlerResult) -> Optional[JobRecord]:
        now = self.clock()
        for _ in range(MAX_OUTCOME_ATTEMPTS):
            current = await self.store.get_by_id(claimed.id)
            if current is None or current.lock_id != lock_id:
                logger.warning("Lease on job %s was lost before its outcome could be recorded", claimed.id)
                return None

            expected_version = current.version
            if current.status == JobStatus.CANCELLED:
                current.clear_lock()
            elif result.ok:
                current.mark_succeeded(now)
            else:
                current.mark_failed(result.error, now, self.backoff)

            if await self.store.update(current, expected_version=expected_version, expected_lock_id=lock_id):
                self._log_outcome(current)
                await notify_listeners(self.listeners, current)
                return current
        logger.error("Could not record the outcome of job %s after %d attempts", claimed.id, MAX_OUTCOME_ATTEMPTS)
        return None

    def _log_outcome(self, record: JobRecord) -> None:
        if record.status == JobStatus.FAILED:
            logger.error("Job %s failed permanently after %d attempt(s): %s", record.id, record.retry_count, record.error_message)
        elif record.error_message:
            logger.warning(
                "Job %s failed (attempt %d of %d), retrying at %s: %s",
                record.id, record.retry_count, record.max_retries, record.scheduled_at.isoformat(), record.error_message,
            )
        elif record.is_recurring and record.status == JobStatus.PENDING:
            logger.info("Recurring job %s completed, next run at %s", record.id, record.next_run_at.isoformat())
        else:
            logger.info("Job %s is %s", record.id, record.status.value)

    async def _poll_loop(self, name: str):
        """
        Main worker loop; a failed iteration is logged and retried on the next tick.
        """
        while self.is_running:
            try:
                processed = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error in job processing loop of %s", name)
                processed = None
            if processed is None and self.is_running:
                await self._idle(self.settings.poll_interval_seconds)

    async def _maintenance_loop(self):
        while self.is_running:
            try:
                await self.perform_maintenance()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error during job maintenance")
            await self._idle(self.settings.cleanup_interval_seconds)

    async def _idle(self, seconds: float):
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
