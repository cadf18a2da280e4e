import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Type, Union

from job_scheduler.handlers.protocol import HandlerResult, JobHandler

logger = logging.getLogger(__name__)

HandlerFunction = Callable[[Optional[str], asyncio.Event], Awaitable[Optional[HandlerResult]]]


def handler_id_for(handler: Union[str, JobHandler, Type[JobHandler]]) -> str:
    """
    Derive the identifier a handler is registered under.

    Strings are taken as-is. Classes (or instances) that define a static
    ``handler_id()`` use it; anything else falls back to the fully-qualified
    class name.
    """
    if isinstance(handler, str):
        return handler
    handler_class = handler if inspect.isclass(handler) else type(handler)
    explicit = getattr(handler_class, "handler_id", None)
    if callable(explicit) and explicit():
        return explicit()
    return f"{handler_class.__module__}.{handler_class.__qualname__}"


class FunctionHandler:
    """
    Adapts a plain coroutine function to the handler protocol.
    """
    def __init__(self, func: HandlerFunction):
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"Handler function '{func.__name__}' must be a coroutine function")
        self._func = func

    def execute(self, payload: Optional[str], cancel_event: asyncio.Event) -> Optional[HandlerResult]:
        return asyncio.run(self._func(payload, cancel_event))

    async def async_execute(self, payload: Optional[str], cancel_event: asyncio.Event) -> Optional[HandlerResult]:
        return await self._func(payload, cancel_event)


class HandlerRegistry:
    """
    String-keyed table of job handlers, populated at process startup.
    """
    def __init__(self):
        self._handlers: Dict[str, JobHandler] = {}

    @property
    def handler_ids(self) -> List[str]:
        return list(self._handlers)

    def __contains__(self, handler_id: str) -> bool:
        return handler_id in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    def register(self, handler: Union[JobHandler, Type[JobHandler]], handler_id: Optional[str] = None) -> str:
        """
        Register a handler class (instantiated once, here) or a ready instance.

        Args:
            handler: The handler class or instance to register.
            handler_id (Optional[str]): Override for the derived identifier.

        Returns:
            str: The identifier the handler was registered under.
        """
        key = handler_id or handler_id_for(handler)
        if key in self._handlers:
            raise ValueError(f"A handler is already registered under '{key}'")
        instance = handler() if inspect.isclass(handler) else handler
        self._handlers[key] = instance
        logger.debug("Registered job handler '%s'", key)
        return key

    def register_function(self, handler_id: str, func: HandlerFunction) -> str:
        return self.register(FunctionHandler(func), handler_id=handler_id)

    def handler(self, handler_id: str) -> Callable[[HandlerFunction], HandlerFunction]:
        """
        Decorator form of ``register_function``.
        """
        def decorator(func: HandlerFunction) -> HandlerFunction:
            self.register_function(handler_id, func)
            return func
        return decorator

    def resolve(self, handler_id: str) -> Optional[JobHandler]:
        """
        Look up a handler by identifier. Returns None instead of raising, so a job
        referencing a handler this process does not know fails like any other job.
        """
        return self._handlers.get(handler_id)
