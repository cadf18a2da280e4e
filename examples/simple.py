import asyncio
import logging
from typing import Optional

from pydantic import BaseModel, Field
from job_scheduler import Dispatcher, HandlerRegistry, InMemoryJobStore, JobScheduler, LoggingListener
from job_scheduler.config import SchedulerSettings
from job_scheduler.handlers import BaseJobHandler, HandlerResult

class ReminderPayload(BaseModel):
    student_id: int
    message: str = Field(..., description="Text of the reminder")

class ReminderHandler(BaseJobHandler):
    @staticmethod
    def handler_id() -> str:
        return "send_reminder"

    def execute(self, payload: Optional[str], cancel_event: asyncio.Event) -> HandlerResult:
        reminder = ReminderPayload.model_validate_json(payload)
        print(f"Reminding student {reminder.student_id}: {reminder.message}")
        return HandlerResult.success()

# Set up the registry, the store and both halves of the engine
registry = HandlerRegistry()
registry.register(ReminderHandler)

@registry.handler("refresh_leaderboard")
async def refresh_leaderboard(payload: Optional[str], cancel_event: asyncio.Event) -> None:
    print("Leaderboard refreshed")

settings = SchedulerSettings(_env_file=None, poll_interval_seconds=0.5)
store = InMemoryJobStore()
scheduler = JobScheduler(store, settings=settings)
dispatcher = Dispatcher(store, registry, settings=settings, listeners=[LoggingListener()])

async def main():
    logging.basicConfig(level=logging.INFO)
    await store.create_tables()

    await scheduler.run_now(ReminderHandler, ReminderPayload(student_id=42, message="Quiz 3 is due tonight"))
    await scheduler.run_every_seconds("leaderboard", "refresh_leaderboard", 2)

    await dispatcher.start()
    await asyncio.sleep(5)
    await dispatcher.stop()

    await scheduler.cancel_recurring("leaderboard")
    for record in await scheduler.list_by_name("leaderboard"):
        print(f"{record.job_name}: {record.status.value}, last run at {record.last_run_at}")
    await store.close()

if __name__ == "__main__":
    asyncio.run(main())
