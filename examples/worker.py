"""
Handler registry for a worker process.

Run a worker against a shared database with:

    job-scheduler --database-url sqlite+aiosqlite:///jobs.db worker --registry examples.worker:registry

and enqueue from anywhere that can reach the same database:

    job-scheduler --database-url sqlite+aiosqlite:///jobs.db enqueue grade_submission --payload '{"submission_id": 7}'
"""
import asyncio
import json
import logging
from typing import Optional

from job_scheduler import HandlerRegistry
from job_scheduler.handlers import HandlerResult, HttpCallHandler, SampleJobHandler

logger = logging.getLogger(__name__)

registry = HandlerRegistry()
registry.register(SampleJobHandler)
registry.register(HttpCallHandler)

@registry.handler("grade_submission")
async def grade_submission(payload: Optional[str], cancel_event: asyncio.Event) -> HandlerResult:
    submission = json.loads(payload or "{}")
    if "submission_id" not in submission:
        return HandlerResult.failure("submission_id is required")
    logger.info("Grading submission %s", submission["submission_id"])
    await asyncio.sleep(1)
    return HandlerResult.success()
