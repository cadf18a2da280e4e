from datetime import datetime, timedelta, timezone
from typing import List

import pytest
from pydantic import BaseModel

from job_scheduler.domain.job import JobKind, JobRecord, JobStatus
from job_scheduler.errors import DuplicateJobError, InvalidJobError, NotFoundError
from job_scheduler.handlers.sample import SampleJobHandler
from job_scheduler.scheduler import JobScheduler


class RecordingListener:
    def __init__(self):
        self.seen: List[tuple] = []

    async def on_job_state_change(self, record: JobRecord) -> None:
        self.seen.append((record.id, record.status))


class BrokenListener:
    async def on_job_state_change(self, record: JobRecord) -> None:
        raise RuntimeError("sink is down")


class ReportRequest(BaseModel):
    course_id: int
    format: str = "pdf"


@pytest.fixture(scope="function")
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture(scope="function")
def scheduler(store, settings, clock, listener) -> JobScheduler:
    return JobScheduler(store, settings=settings, listeners=[listener, BrokenListener()], clock=clock)


@pytest.mark.asyncio
async def test_enqueue_once(scheduler: JobScheduler, clock, listener) -> None:
    record = await scheduler.enqueue_once("send_email", {"to": "student@example.com"})

    assert record.kind == JobKind.ONE_TIME
    assert record.status == JobStatus.PENDING
    assert record.job_name.startswith("send_email_")
    assert record.payload == '{"to": "student@example.com"}'
    assert record.scheduled_at == clock()
    assert record.max_retries == 3
    assert record.interval_seconds is None and record.next_run_at is None
    assert listener.seen == [(record.id, JobStatus.PENDING)]

    stored = await scheduler.get_by_id(record.id)
    assert stored.job_name == record.job_name


@pytest.mark.asyncio
async def test_enqueue_once_names_are_unique(scheduler: JobScheduler) -> None:
    first = await scheduler.enqueue_once("send_email")
    second = await scheduler.enqueue_once("send_email")
    assert first.job_name != second.job_name


@pytest.mark.asyncio
async def test_enqueue_once_with_handler_class_and_model_payload(scheduler: JobScheduler) -> None:
    record = await scheduler.enqueue_once(SampleJobHandler, ReportRequest(course_id=7), max_retries=5)
    assert record.handler_id == "sample"
    assert record.payload == '{"course_id":7,"format":"pdf"}'
    assert record.max_retries == 5


@pytest.mark.asyncio
async def test_enqueue_once_accepts_unknown_handler(scheduler: JobScheduler) -> None:
    record = await scheduler.enqueue_once("handler.from.next.release")
    assert record.status == JobStatus.PENDING


@pytest.mark.asyncio
@pytest.mark.parametrize("kwargs", [{"handler": ""}, {"handler": "h", "max_retries": 0}, {"handler": "h", "payload": {1, 2}}])
async def test_enqueue_once_rejects_invalid_parameters(scheduler: JobScheduler, kwargs) -> None:
    with pytest.raises(InvalidJobError):
        await scheduler.enqueue_once(**kwargs)


@pytest.mark.asyncio
async def test_enqueue_recurring(scheduler: JobScheduler, clock) -> None:
    start = clock() + timedelta(hours=1)
    record = await scheduler.enqueue_recurring("nightlyReport", "report", 86400, {"v": 1}, start_at=start)

    assert record.kind == JobKind.RECURRING
    assert record.job_name == "nightlyReport"
    assert record.interval_seconds == 86400
    assert record.scheduled_at == start
    assert record.next_run_at == start


@pytest.mark.asyncio
async def test_enqueue_recurring_is_idempotent(scheduler: JobScheduler) -> None:
    first = await scheduler.enqueue_recurring("nightlyReport", "report", 86400, {"v": 1})
    second = await scheduler.enqueue_recurring("nightlyReport", "report", 43200, {"v": 2})

    assert second.id == first.id
    records = await scheduler.list_by_name("nightlyReport")
    assert len(records) == 1
    assert records[0].interval_seconds == 43200
    assert records[0].payload == '{"v": 2}'


@pytest.mark.asyncio
async def test_enqueue_recurring_with_other_handler_conflicts(scheduler: JobScheduler) -> None:
    await scheduler.enqueue_recurring("nightlyReport", "report", 86400)
    with pytest.raises(DuplicateJobError):
        await scheduler.enqueue_recurring("nightlyReport", "cleanup", 86400)


@pytest.mark.asyncio
async def test_enqueue_recurring_rearms_failed_job(scheduler: JobScheduler, store, clock) -> None:
    record = await scheduler.enqueue_recurring("sync", "sync_grades", 60, max_retries=1)
    record.status = JobStatus.FAILED
    record.retry_count = 1
    record.error_message = "gave up"
    await store.update(record)

    clock.advance(days=1)
    revived = await scheduler.enqueue_recurring("sync", "sync_grades", 120)

    assert revived.id == record.id
    assert revived.status == JobStatus.PENDING
    assert revived.retry_count == 0
    assert revived.error_message is None
    assert revived.interval_seconds == 120
    assert revived.scheduled_at == clock()


@pytest.mark.asyncio
async def test_enqueue_recurring_after_cancel_creates_new_record(scheduler: JobScheduler, clock) -> None:
    first = await scheduler.enqueue_recurring("digest", "digest", 3600)
    await scheduler.cancel_recurring("digest")
    clock.advance(seconds=1)
    second = await scheduler.enqueue_recurring("digest", "digest", 3600)

    assert second.id != first.id
    statuses = [r.status for r in await scheduler.list_by_name("digest")]
    assert statuses == [JobStatus.CANCELLED, JobStatus.PENDING]


@pytest.mark.asyncio
@pytest.mark.parametrize("name, interval", [("", 60), ("job", 0), ("job", -5), ("job", 1.7), ("job", "60"), ("job", True)])
async def test_enqueue_recurring_rejects_invalid_parameters(scheduler: JobScheduler, name: str, interval: int) -> None:
    with pytest.raises(InvalidJobError):
        await scheduler.enqueue_recurring(name, "h", interval)


@pytest.mark.asyncio
async def test_cancel_pending_job(scheduler: JobScheduler, listener) -> None:
    record = await scheduler.enqueue_once("send_email")

    assert await scheduler.cancel(record.id) is True
    assert (await scheduler.get_by_id(record.id)).status == JobStatus.CANCELLED
    assert listener.seen[-1] == (record.id, JobStatus.CANCELLED)

    # Second cancel is a no-op
    assert await scheduler.cancel(record.id) is False


@pytest.mark.asyncio
async def test_cancel_refuses_processing_job(scheduler: JobScheduler, store) -> None:
    record = await scheduler.enqueue_once("send_email")
    claimed = await store.try_claim("worker-lock", timedelta(minutes=5))
    assert claimed.id == record.id

    assert await scheduler.cancel(record.id) is False
    unchanged = await scheduler.get_by_id(record.id)
    assert unchanged.status == JobStatus.PROCESSING
    assert unchanged.lock_id == "worker-lock"
    assert unchanged.version == claimed.version


@pytest.mark.asyncio
async def test_cancel_loses_race_with_claim(scheduler: JobScheduler, store) -> None:
    record = await scheduler.enqueue_once("send_email")
    stale = await store.get_by_id(record.id)

    # A worker claims between the read and the write
    await store.try_claim("worker-lock", timedelta(minutes=5))
    stale.mark_cancelled()
    assert await store.update(stale, expected_version=stale.version) is False
    assert (await store.get_by_id(record.id)).status == JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_cancel_unknown_job(scheduler: JobScheduler) -> None:
    with pytest.raises(NotFoundError):
        await scheduler.cancel("job_does_not_exist")


@pytest.mark.asyncio
async def test_cancel_recurring(scheduler: JobScheduler) -> None:
    await scheduler.enqueue_recurring("digest", "digest", 3600)
    await scheduler.enqueue_once("digest")

    assert await scheduler.cancel_recurring("digest") == 1
    assert await scheduler.cancel_recurring("digest") == 0
    assert await scheduler.cancel_recurring("unknown") == 0


@pytest.mark.asyncio
async def test_run_now_and_run_at(scheduler: JobScheduler, clock) -> None:
    now_job = await scheduler.run_now("h")
    assert now_job.scheduled_at == clock()

    at = datetime(2026, 12, 24, 18, 0, tzinfo=timezone.utc)
    at_job = await scheduler.run_at("h", at)
    assert at_job.scheduled_at == at


@pytest.mark.asyncio
async def test_run_after(scheduler: JobScheduler, clock) -> None:
    record = await scheduler.run_after("h", timedelta(minutes=5), {"x": 1})
    assert record.scheduled_at == clock() + timedelta(minutes=5)

    with pytest.raises(InvalidJobError):
        await scheduler.run_after("h", timedelta(seconds=-1))


@pytest.mark.asyncio
async def test_run_every_helpers(scheduler: JobScheduler) -> None:
    assert (await scheduler.run_every_seconds("a", "h", 30)).interval_seconds == 30
    assert (await scheduler.run_every_minutes("b", "h", 15)).interval_seconds == 900
    assert (await scheduler.run_every_hours("c", "h", 6)).interval_seconds == 21600


@pytest.mark.asyncio
async def test_run_daily(scheduler: JobScheduler, clock) -> None:
    # The clock reads 08:30
    later_today = await scheduler.run_daily("morning", "h", hour=9, minute=0)
    assert later_today.interval_seconds == 86400
    assert later_today.scheduled_at == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    tomorrow = await scheduler.run_daily("early", "h", hour=8, minute=0)
    assert tomorrow.scheduled_at == datetime(2026, 3, 3, 8, 0, tzinfo=timezone.utc)

    with pytest.raises(InvalidJobError):
        await scheduler.run_daily("bad", "h", hour=25)


@pytest.mark.asyncio
async def test_enqueue_recurring_accepts_whole_float_interval(scheduler: JobScheduler) -> None:
    record = await scheduler.enqueue_recurring("half_hourly", "h", 1800.0)
    assert record.interval_seconds == 1800
    assert isinstance(record.interval_seconds, int)
