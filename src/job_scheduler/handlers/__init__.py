from .protocol import BaseJobHandler, HandlerResult, JobHandler
from .sample import SampleJobHandler
from .http import HttpCallHandler, HttpCallPayload

__all__ = ["BaseJobHandler", "HandlerResult", "JobHandler", "SampleJobHandler", "HttpCallHandler", "HttpCallPayload"]
