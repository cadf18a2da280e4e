"""
Background Job Scheduling Engine

This module defines the core concepts and components of a persistent job queue.

Core Concepts:

JobRecord:
    A JobRecord is a unit of schedulable work kept in a shared store.
    It is either one-time (runs once, retried on failure) or recurring
    (re-armed every ``interval_seconds`` after each successful run).

Handler:
    The business logic a job runs, registered under a stable string id in a
    HandlerRegistry at process startup. Jobs reference handlers by id only.

JobScheduler:
    The application-facing API: enqueue, upsert recurring jobs, cancel, inspect.

Dispatcher:
    The polling worker loop. It leases due jobs through the store's atomic
    claim, runs their handlers and writes back the outcome. Several
    dispatchers may share one store; the lease is their only coordination.

Relationships:
    - JobScheduler writes JobRecords; Dispatchers claim and update them.
    - A failed job is retried with exponential backoff until its retry budget is spent.
"""

from .domain import JobRecord, JobKind, JobStatus
from .errors import JobSchedulerError, DuplicateJobError, NotFoundError, InvalidJobError
from .handlers import BaseJobHandler, HandlerResult, JobHandler
from .handler_registry import HandlerRegistry
from .scheduler import JobScheduler
from .dispatcher import Dispatcher
from .listeners import JobStateListener, LoggingListener
from .storages import JobStore, SqlAlchemyJobStore, InMemoryJobStore
from .config import SchedulerSettings, get_settings

__all__ = [
    "JobRecord", "JobKind", "JobStatus",
    "JobSchedulerError", "DuplicateJobError", "NotFoundError", "InvalidJobError",
    "BaseJobHandler", "HandlerResult", "JobHandler", "HandlerRegistry",
    "JobScheduler", "Dispatcher", "JobStateListener", "LoggingListener",
    "JobStore", "SqlAlchemyJobStore", "InMemoryJobStore", "SchedulerSettings", "get_settings",
]
