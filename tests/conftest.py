from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from job_scheduler.config import SchedulerSettings
from job_scheduler.storages.sqlalchemy import InMemoryJobStore


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture(scope="function")
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 8, 30, tzinfo=timezone.utc))


@pytest.fixture(scope="function")
def settings() -> SchedulerSettings:
    return SchedulerSettings(
        _env_file=None,
        poll_interval_seconds=0.02,
        lease_seconds=5,
        shutdown_timeout_seconds=1,
        cleanup_interval_seconds=60,
    )


@pytest_asyncio.fixture(scope="function")
async def store(clock: FakeClock):
    store = InMemoryJobStore(clock=clock)
    await store.create_tables()
    yield store
    await store.close()
