import asyncio
import logging
from typing import Optional

from job_scheduler.handlers.protocol import HandlerResult, JobHandler

logger = logging.getLogger(__name__)


class SampleJobHandler(JobHandler):
    """
    Logs its payload and pauses briefly. Useful for smoke-testing a worker deployment.
    """

    @staticmethod
    def handler_id() -> str:
        return "sample"

    async def async_execute(self, payload: Optional[str], cancel_event: asyncio.Event) -> Optional[HandlerResult]:
        logger.info("SampleJob executing with payload: %s", payload or "null")
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=0.1)
        except asyncio.TimeoutError:
            logger.info("SampleJob completed successfully")
            return None
        return HandlerResult.failure("SampleJob interrupted by shutdown")

    def execute(self, payload: Optional[str], cancel_event: asyncio.Event) -> Optional[HandlerResult]:
        return asyncio.run(self.async_execute(payload, cancel_event))
