import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence
from sqlalchemy import Column, String, Text, Integer, DateTime, Index, and_, or_, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.future import select
from job_scheduler.domain.job import Clock, JobKind, JobRecord, JobStatus, to_utc, utc_now
from job_scheduler.errors import DuplicateJobError
from job_scheduler.storages.protocol import JobStore

logger = logging.getLogger(__name__)

Base = declarative_base()

_LIVE_RECURRING = "kind = 'recurring' AND status != 'cancelled' AND deleted_at IS NULL"

class JobModel(Base):
    __tablename__ = 'job_requests'

    id = Column(String, primary_key=True)
    job_name = Column(String, nullable=False, index=True)
    handler_id = Column(String, nullable=False)
    payload = Column(Text)
    kind = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=False, index=True)
    interval_seconds = Column(Integer)
    next_run_at = Column(DateTime(timezone=True))
    last_run_at = Column(DateTime(timezone=True))
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    error_message = Column(Text)
    lock_id = Column(String)
    lock_expires_at = Column(DateTime(timezone=True))
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True))
    deleted_at = Column(DateTime(timezone=True))

    __table_args__ = (
        # At most one live recurring record per name.
        Index(
            'uq_job_requests_live_recurring_name', 'job_name', unique=True,
            sqlite_where=text(_LIVE_RECURRING),
            postgresql_where=text(_LIVE_RECURRING),
        ),
    )


class SqlAlchemyJobStore(JobStore):
    """
    Job store backed by any database SQLAlchemy's asyncio engine can reach.

    Claims are single conditional UPDATE statements guarded by the row version,
    so any number of dispatchers may share one database.
    """

    def __init__(self, db_url: str, clock: Clock = utc_now, claim_batch_size: int = 10, **engine_kwargs: Any):
        self.engine = create_async_engine(db_url, **engine_kwargs)
        self.async_session = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self.clock: Clock = clock
        self.claim_batch_size = claim_batch_size

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        await self.engine.dispose()

    async def insert(self, record: JobRecord) -> str:
        if record.is_recurring and record.status != JobStatus.CANCELLED:
            existing = await self._find_live_recurring(record.job_name)
            if existing is not None:
                raise DuplicateJobError(record.job_name)

        now = to_utc(self.clock())
        record.updated_at = now
        async with self.async_session() as session:
            session.add(JobModel(id=record.id, **self._record_values(record)))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                if record.is_recurring:
                    raise DuplicateJobError(record.job_name) from e
                raise
        return record.id

    async def find_pending_by_name(self, job_name: str) -> Optional[JobRecord]:
        async with self.async_session() as session:
            result = await session.execute(
                select(JobModel)
                .filter(
                    JobModel.job_name == job_name,
                    JobModel.deleted_at.is_(None),
                    JobModel.status.in_([JobStatus.PENDING.value, JobStatus.PROCESSING.value]),
                )
                .order_by(JobModel.created_at)
                .limit(1)
            )
            db_job = result.scalar_one_or_none()
            if db_job:
                return self._db_to_record(db_job)
            return None

    async def try_claim(self, lock_id: str, lease: timedelta, candidate_ids: Optional[Sequence[str]] = None) -> Optional[JobRecord]:
        now = to_utc(self.clock())
        query = (
            select(JobModel.id, JobModel.version)
            .filter(self._claimable(now))
            .order_by(JobModel.scheduled_at, JobModel.created_at)
            .limit(self.claim_batch_size)
        )
        if candidate_ids is not None:
            query = query.filter(JobModel.id.in_(list(candidate_ids)))

        async with self.async_session() as session:
            candidates = (await session.execute(query)).all()

        for job_id, version in candidates:
            async with self.async_session() as session:
                result = await session.execute(
                    update(JobModel)
                    .where(JobModel.id == job_id, JobModel.version == version, self._claimable(now))
                    .values(
                        status=JobStatus.PROCESSING.value,
                        lock_id=lock_id,
                        lock_expires_at=now + lease,
                        started_at=now,
                        updated_at=now,
                        version=JobModel.version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
            if result.rowcount == 1:
                return await self.get_by_id(job_id)
            logger.debug("Job %s was claimed by another worker, trying next candidate", job_id)
        return None

    async def update(self, record: JobRecord, expected_version: Optional[int] = None, expected_lock_id: Optional[str] = None) -> bool:
        now = to_utc(self.clock())
        conditions = [JobModel.id == record.id]
        if expected_version is not None:
            conditions.append(JobModel.version == expected_version)
        if expected_lock_id is not None:
            conditions.append(JobModel.lock_id == expected_lock_id)

        values = self._record_values(record)
        values['updated_at'] = now
        values['version'] = JobModel.version + 1
        async with self.async_session() as session:
            result = await session.execute(
                update(JobModel)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount != 1:
            return False
        record.updated_at = now
        record.version = (expected_version if expected_version is not None else record.version) + 1
        return True

    async def get_by_id(self, job_id: str) -> Optional[JobRecord]:
        async with self.async_session() as session:
            result = await session.execute(select(JobModel).filter_by(id=job_id))
            db_job = result.scalar_one_or_none()
            if db_job:
                return self._db_to_record(db_job)
            return None

    async def list_by_name(self, job_name: str) -> List[JobRecord]:
        async with self.async_session() as session:
            result = await session.execute(
                select(JobModel)
                .filter(JobModel.job_name == job_name, JobModel.deleted_at.is_(None))
                .order_by(JobModel.created_at, JobModel.id)
            )
            return [self._db_to_record(db_job) for db_job in result.scalars()]

    async def release_expired_locks(self, stale_after: timedelta) -> int:
        now = to_utc(self.clock())
        async with self.async_session() as session:
            result = await session.execute(
                update(JobModel)
                .where(
                    JobModel.status == JobStatus.PROCESSING.value,
                    JobModel.lock_expires_at < now - stale_after,
                    JobModel.deleted_at.is_(None),
                )
                .values(
                    status=JobStatus.PENDING.value,
                    lock_id=None,
                    lock_expires_at=None,
                    updated_at=now,
                    version=JobModel.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount

    async def purge_completed(self, older_than: timedelta) -> int:
        now = to_utc(self.clock())
        async with self.async_session() as session:
            result = await session.execute(
                update(JobModel)
                .where(
                    JobModel.status == JobStatus.COMPLETED.value,
                    JobModel.kind == JobKind.ONE_TIME.value,
                    JobModel.completed_at < now - older_than,
                    JobModel.deleted_at.is_(None),
                )
                .values(deleted_at=now, updated_at=now, version=JobModel.version + 1)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount

    async def _find_live_recurring(self, job_name: str) -> Optional[str]:
        async with self.async_session() as session:
            result = await session.execute(
                select(JobModel.id)
                .filter(
                    JobModel.job_name == job_name,
                    JobModel.kind == JobKind.RECURRING.value,
                    JobModel.status != JobStatus.CANCELLED.value,
                    JobModel.deleted_at.is_(None),
                )
                .limit(1)
            )
            return result.scalar_one_or_none()

    @staticmethod
    def _claimable(now):
        return and_(
            JobModel.deleted_at.is_(None),
            JobModel.scheduled_at <= now,
            or_(
                and_(
                    JobModel.status == JobStatus.PENDING.value,
                    or_(JobModel.lock_id.is_(None), JobModel.lock_expires_at < now),
                ),
                # Orphaned by a worker that crashed or overran its lease.
                and_(
                    JobModel.status == JobStatus.PROCESSING.value,
                    JobModel.lock_expires_at < now,
                ),
            ),
        )

    @staticmethod
    def _record_values(record: JobRecord) -> Dict[str, Any]:
        return dict(
            job_name=record.job_name,
            handler_id=record.handler_id,
            payload=record.payload,
            kind=record.kind.value,
            status=record.status.value,
            scheduled_at=to_utc(record.scheduled_at),
            interval_seconds=record.interval_seconds,
            next_run_at=to_utc(record.next_run_at),
            last_run_at=to_utc(record.last_run_at),
            started_at=to_utc(record.started_at),
            completed_at=to_utc(record.completed_at),
            retry_count=record.retry_count,
            max_retries=record.max_retries,
            error_message=record.error_message,
            lock_id=record.lock_id,
            lock_expires_at=to_utc(record.lock_expires_at),
            version=record.version,
            created_at=to_utc(record.created_at),
            updated_at=to_utc(record.updated_at),
            deleted_at=to_utc(record.deleted_at),
        )

    def _db_to_record(self, db_job: JobModel) -> JobRecord:
        return JobRecord(
            id=db_job.id,
            job_name=db_job.job_name,
            handler_id=db_job.handler_id,
            payload=db_job.payload,
            kind=JobKind(db_job.kind),
            status=JobStatus(db_job.status),
            scheduled_at=db_job.scheduled_at,
            interval_seconds=db_job.interval_seconds,
            next_run_at=db_job.next_run_at,
            last_run_at=db_job.last_run_at,
            started_at=db_job.started_at,
            completed_at=db_job.completed_at,
            retry_count=db_job.retry_count,
            max_retries=db_job.max_retries,
            error_message=db_job.error_message,
            lock_id=db_job.lock_id,
            lock_expires_at=db_job.lock_expires_at,
            version=db_job.version,
            created_at=db_job.created_at,
            updated_at=db_job.updated_at,
            deleted_at=db_job.deleted_at,
        )


class InMemoryJobStore(SqlAlchemyJobStore):
    def __init__(self, clock: Clock = utc_now, claim_batch_size: int = 10):
        super().__init__("sqlite+aiosqlite:///:memory:", clock=clock, claim_batch_size=claim_batch_size)
