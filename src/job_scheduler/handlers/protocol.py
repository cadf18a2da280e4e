import asyncio
from typing import Optional, Protocol

from pydantic import BaseModel


class HandlerResult(BaseModel):
    """
    Explicit outcome a handler may return instead of raising.
    """
    ok: bool = True
    error: Optional[str] = None

    @classmethod
    def success(cls) -> "HandlerResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, reason: str) -> "HandlerResult":
        return cls(ok=False, error=reason)


class JobHandler(Protocol):
    """
    Protocol class for job handlers.
    """

    def execute(self, payload: Optional[str], cancel_event: asyncio.Event) -> Optional[HandlerResult]:
        """
        Execute the unit of work.

        Args:
            payload (Optional[str]): The serialized argument stored with the job.
            cancel_event (asyncio.Event): Set when the dispatcher is shutting down.
        """
        ...

    async def async_execute(self, payload: Optional[str], cancel_event: asyncio.Event) -> Optional[HandlerResult]:
        """
        Asynchronously execute the unit of work.

        Args:
            payload (Optional[str]): The serialized argument stored with the job.
            cancel_event (asyncio.Event): Set when the dispatcher is shutting down.
        """
        ...

    @staticmethod
    def handler_id() -> str:
        """
        Return the stable identifier jobs use to reference this handler.
        """
        ...


class BaseJobHandler:
    """
    Convenience base for synchronous handlers: ``async_execute`` runs
    ``execute`` in a worker thread so it does not block the event loop.
    """

    def execute(self, payload: Optional[str], cancel_event: asyncio.Event) -> Optional[HandlerResult]:
        raise NotImplementedError

    async def async_execute(self, payload: Optional[str], cancel_event: asyncio.Event) -> Optional[HandlerResult]:
        return await asyncio.to_thread(self.execute, payload, cancel_event)
