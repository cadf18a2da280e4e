import logging
from typing import Iterable, Protocol

from job_scheduler.domain.job import JobRecord

logger = logging.getLogger(__name__)


class JobStateListener(Protocol):
    async def on_job_state_change(self, record: JobRecord) -> None:
        """Called after a state transition of ``record`` has been persisted."""
        ...


class LoggingListener(JobStateListener):
    def __init__(self, level: int = logging.INFO, logger_name: str = "job_scheduler.jobs"):
        self.level = level
        self.logger = logging.getLogger(logger_name)

    async def on_job_state_change(self, record: JobRecord) -> None:
        self.logger.log(
            self.level,
            "Job %s (%s) is %s [retries=%d/%d]%s",
            record.id,
            record.job_name,
            record.status.value,
            record.retry_count,
            record.max_retries,
            f" error={record.error_message}" if record.error_message else "",
        )


async def notify_listeners(listeners: Iterable[JobStateListener], record: JobRecord) -> None:
    """
    Fan a state change out to every listener. A failing listener is logged and skipped.
    """
    for listener in listeners:
        try:
            await listener.on_job_state_change(record)
        except Exception:
            logger.exception("Job state listener %r failed for job %s", listener, record.id)
