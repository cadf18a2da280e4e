import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp
from pydantic import BaseModel, Field, ValidationError

from job_scheduler.handlers.protocol import HandlerResult, JobHandler

logger = logging.getLogger(__name__)


class HttpCallPayload(BaseModel):
    url: str = Field(..., description="The URL to make the HTTP request to")
    method: str = Field("POST", description="The HTTP method to use (e.g. GET, POST, PUT, DELETE)")
    headers: Dict[str, str] = Field(default={}, description="Optional headers to include in the request")
    body: Optional[Dict[str, Any]] = Field(default=None, description="Optional JSON body for the request")
    params: Dict[str, str] = Field(default={}, description="Optional query parameters for the request")
    timeout_seconds: float = Field(default=30.0, gt=0, description="Total request timeout")


class HttpCallHandler(JobHandler):
    """
    Job handler that calls an HTTP endpoint described by an ``HttpCallPayload``.

    Any 2xx response is a success; other statuses and transport errors fail
    the job so the dispatcher can retry it.
    """

    @staticmethod
    def handler_id() -> str:
        return "http_call"

    async def async_execute(self, payload: Optional[str], cancel_event: asyncio.Event) -> HandlerResult:
        try:
            call = HttpCallPayload.model_validate_json(payload or "")
        except ValidationError as e:
            return HandlerResult.failure(f"Invalid payload: {str(e)}")

        try:
            timeout = aiohttp.ClientTimeout(total=call.timeout_seconds)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method=call.method,
                    url=call.url,
                    headers=call.headers,
                    params=call.params,
                    json=call.body
                ) as response:
                    if response.status >= 400:
                        body = await response.text()
                        return HandlerResult.failure(f"HTTP {response.status} from {call.url}: {body[:200]}")
                    logger.info("HTTP %s %s returned %s", call.method, call.url, response.status)
                    return HandlerResult.success()
        except Exception as e:
            return HandlerResult.failure(f"Unexpected error: {str(e)}")

    def execute(self, payload: Optional[str], cancel_event: asyncio.Event) -> HandlerResult:
        """
        Synchronous version of execute method.
        """
        return asyncio.run(self.async_execute(payload, cancel_event))
