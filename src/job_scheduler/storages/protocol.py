from datetime import timedelta
from typing import List, Optional, Protocol, Sequence
from job_scheduler.domain.job import JobRecord

class JobStore(Protocol):
    async def insert(self, record: JobRecord) -> str:
        """Persist a new record and return its ID. Raise DuplicateJobError if a live recurring job already uses its name."""
        ...

    async def find_pending_by_name(self, job_name: str) -> Optional[JobRecord]:
        """Return the live Pending or Processing record with this name, if any."""
        ...

    async def try_claim(self, lock_id: str, lease: timedelta, candidate_ids: Optional[Sequence[str]] = None) -> Optional[JobRecord]:
        """Atomically lease one due record to lock_id. Return the claimed record, or None if nothing was eligible."""
        ...

    async def update(self, record: JobRecord, expected_version: Optional[int] = None, expected_lock_id: Optional[str] = None) -> bool:
        """Persist all mutable fields. Return False if the record is gone or the expectations no longer hold."""
        ...

    async def get_by_id(self, job_id: str) -> Optional[JobRecord]:
        """Retrieve a record by its ID."""
        ...

    async def list_by_name(self, job_name: str) -> List[JobRecord]:
        """List live records sharing a job name, oldest first."""
        ...

    async def release_expired_locks(self, stale_after: timedelta) -> int:
        """Return Processing records whose lease expired more than stale_after ago to Pending."""
        ...

    async def purge_completed(self, older_than: timedelta) -> int:
        """Soft-delete completed one-time records older than older_than."""
        ...
