import asyncio
from typing import Optional

import pytest
from job_scheduler.handler_registry import FunctionHandler, HandlerRegistry, handler_id_for
from job_scheduler.handlers.protocol import BaseJobHandler, HandlerResult, JobHandler


class DummyHandler(JobHandler):
    @staticmethod
    def handler_id() -> str:
        return "dummy"

    def execute(self, payload: Optional[str], cancel_event: asyncio.Event) -> None:
        pass

    async def async_execute(self, payload: Optional[str], cancel_event: asyncio.Event) -> None:
        pass


class AnonymousHandler(BaseJobHandler):
    def execute(self, payload: Optional[str], cancel_event: asyncio.Event) -> HandlerResult:
        return HandlerResult.failure(f"got {payload}")


@pytest.fixture
def registry() -> HandlerRegistry:
    return HandlerRegistry()


def test_register_handler_class(registry: HandlerRegistry) -> None:
    assert registry.register(DummyHandler) == "dummy"
    assert "dummy" in registry
    assert isinstance(registry.resolve("dummy"), DummyHandler)


def test_register_instance_is_kept(registry: HandlerRegistry) -> None:
    handler = DummyHandler()
    registry.register(handler)
    assert registry.resolve("dummy") is handler


def test_register_falls_back_to_qualified_name(registry: HandlerRegistry) -> None:
    handler_id = registry.register(AnonymousHandler)
    assert handler_id == f"{AnonymousHandler.__module__}.AnonymousHandler"
    assert handler_id_for(AnonymousHandler) == handler_id


def test_register_with_explicit_id(registry: HandlerRegistry) -> None:
    registry.register(DummyHandler, handler_id="reports.nightly")
    assert registry.handler_ids == ["reports.nightly"]


def test_register_duplicate(registry: HandlerRegistry) -> None:
    registry.register(DummyHandler)
    with pytest.raises(ValueError, match="A handler is already registered under 'dummy'"):
        registry.register(DummyHandler)


def test_resolve_unknown_handler_returns_none(registry: HandlerRegistry) -> None:
    assert registry.resolve("not.deployed.yet") is None
    assert len(registry) == 0


def test_handler_id_for_string() -> None:
    assert handler_id_for("send_email") == "send_email"


@pytest.mark.asyncio
async def test_function_handler_decorator(registry: HandlerRegistry) -> None:
    seen = []

    @registry.handler("echo")
    async def echo(payload: Optional[str], cancel_event: asyncio.Event) -> None:
        seen.append(payload)

    handler = registry.resolve("echo")
    assert isinstance(handler, FunctionHandler)
    await handler.async_execute("hello", asyncio.Event())
    assert seen == ["hello"]


def test_function_handler_requires_coroutine(registry: HandlerRegistry) -> None:
    def not_async(payload, cancel_event):
        return None

    with pytest.raises(TypeError):
        registry.register_function("sync", not_async)


@pytest.mark.asyncio
async def test_base_handler_runs_sync_execute_in_thread() -> None:
    result = await AnonymousHandler().async_execute("x", asyncio.Event())
    assert result == HandlerResult.failure("got x")
