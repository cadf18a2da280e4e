import asyncio
import importlib
import json
import logging
import signal
from datetime import timedelta
from typing import Optional

import click

from job_scheduler.config import SchedulerSettings, get_settings
from job_scheduler.dispatcher import Dispatcher
from job_scheduler.domain.job import JobRecord
from job_scheduler.errors import JobSchedulerError
from job_scheduler.handler_registry import HandlerRegistry
from job_scheduler.handlers import HttpCallHandler, SampleJobHandler
from job_scheduler.listeners import LoggingListener
from job_scheduler.scheduler import JobScheduler
from job_scheduler.storages.sqlalchemy import SqlAlchemyJobStore

logger = logging.getLogger("job_scheduler.cli")


def load_registry(path: Optional[str]) -> HandlerRegistry:
    """
    Load a ``HandlerRegistry`` from ``"package.module:attribute"``; without a
    path, a registry holding only the built-in handlers is returned.
    """
    if not path:
        registry = HandlerRegistry()
        registry.register(SampleJobHandler)
        registry.register(HttpCallHandler)
        return registry

    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise click.BadParameter("Expected 'package.module:attribute'", param_hint="--registry")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise click.BadParameter(f"Cannot import '{module_name}': {e}", param_hint="--registry")
    registry = getattr(module, attribute, None)
    if callable(registry) and not isinstance(registry, HandlerRegistry):
        registry = registry()
    if not isinstance(registry, HandlerRegistry):
        raise click.BadParameter(f"'{path}' is not a HandlerRegistry", param_hint="--registry")
    return registry


def format_record(record: JobRecord) -> str:
    return json.dumps(record.model_dump(mode="json"), indent=2)


async def _open_store(settings: SchedulerSettings) -> SqlAlchemyJobStore:
    store = SqlAlchemyJobStore(settings.database_url, claim_batch_size=settings.claim_batch_size)
    await store.create_tables()
    return store


async def _run_worker(settings: SchedulerSettings, registry: HandlerRegistry):
    store = await _open_store(settings)
    dispatcher = Dispatcher(store, registry, settings=settings, listeners=[LoggingListener()])
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            pass
    try:
        await dispatcher.start()
        logger.info("Background job worker running; handlers: %s", ", ".join(registry.handler_ids) or "none")
        await stop_requested.wait()
    finally:
        await dispatcher.stop()
        await store.close()


async def _with_scheduler(settings: SchedulerSettings, action):
    store = await _open_store(settings)
    try:
        return await action(JobScheduler(store, settings=settings))
    finally:
        await store.close()


@click.group(help="job-scheduler: persistent background job engine")
@click.option("--database-url", default=None, help="Override the job store URL")
@click.option("--log-level", default=None, help="Override the logging level")
@click.pass_context
def cli(ctx: click.Context, database_url: Optional[str], log_level: Optional[str]):
    settings = get_settings()
    overrides = {}
    if database_url:
        overrides["database_url"] = database_url
    if log_level:
        overrides["log_level"] = log_level
    if overrides:
        settings = SchedulerSettings(**{**settings.model_dump(), **overrides})
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    ctx.obj = settings


@cli.command("init-db", help="Create the job tables")
@click.pass_obj
def init_db_cmd(settings: SchedulerSettings):
    async def _init():
        store = await _open_store(settings)
        await store.close()
    asyncio.run(_init())
    click.echo("Job store initialised.")


@cli.command("worker", help="Run a dispatcher until interrupted")
@click.option("--registry", "registry_path", default=None, help="Handler registry as 'package.module:attribute'")
@click.option("--concurrency", type=int, default=None, help="Override the number of polling workers")
@click.pass_obj
def worker_cmd(settings: SchedulerSettings, registry_path: Optional[str], concurrency: Optional[int]):
    registry = load_registry(registry_path)
    if concurrency is not None:
        settings = SchedulerSettings(**{**settings.model_dump(), "concurrency": concurrency})
    asyncio.run(_run_worker(settings, registry))


@cli.command("drain", help="Process every due job once, then exit")
@click.option("--registry", "registry_path", default=None, help="Handler registry as 'package.module:attribute'")
@click.option("--max-jobs", type=int, default=None, help="Stop after this many jobs")
@click.pass_obj
def drain_cmd(settings: SchedulerSettings, registry_path: Optional[str], max_jobs: Optional[int]):
    registry = load_registry(registry_path)

    async def _drain():
        store = await _open_store(settings)
        try:
            dispatcher = Dispatcher(store, registry, settings=settings, listeners=[LoggingListener()])
            return await dispatcher.run_until_idle(max_jobs)
        finally:
            await store.close()

    click.echo(f"Processed {asyncio.run(_drain())} job(s).")


@cli.command("enqueue", help="Enqueue a one-time job")
@click.argument("handler_id")
@click.option("--payload", default=None, help="Payload string stored with the job")
@click.option("--delay", type=float, default=0.0, show_default=True, help="Seconds to wait before the job is due")
@click.option("--max-retries", type=int, default=None, help="Override the retry budget")
@click.pass_obj
def enqueue_cmd(settings: SchedulerSettings, handler_id: str, payload: Optional[str], delay: float, max_retries: Optional[int]):
    async def _enqueue(scheduler: JobScheduler):
        run_at = scheduler.clock() + timedelta(seconds=delay)
        return await scheduler.enqueue_once(handler_id, payload, run_at=run_at, max_retries=max_retries)

    try:
        record = asyncio.run(_with_scheduler(settings, _enqueue))
    except JobSchedulerError as e:
        raise click.ClickException(str(e))
    click.echo(record.id)


@cli.command("show", help="Show a job by id")
@click.argument("job_id")
@click.pass_obj
def show_cmd(settings: SchedulerSettings, job_id: str):
    record = asyncio.run(_with_scheduler(settings, lambda s: s.get_by_id(job_id)))
    if record is None:
        raise click.ClickException(f"No job found with id '{job_id}'")
    click.echo(format_record(record))


@cli.command("list", help="List jobs sharing a job name")
@click.argument("job_name")
@click.pass_obj
def list_cmd(settings: SchedulerSettings, job_name: str):
    records = asyncio.run(_with_scheduler(settings, lambda s: s.list_by_name(job_name)))
    if not records:
        click.echo(f"No jobs named '{job_name}'.")
        return
    for record in records:
        click.echo(f"{record.id}  {record.kind.value:<9}  {record.status.value:<10}  "
                   f"retries={record.retry_count}/{record.max_retries}  scheduled={record.scheduled_at.isoformat()}")


@cli.command("cancel", help="Cancel a pending job")
@click.argument("job_id")
@click.pass_obj
def cancel_cmd(settings: SchedulerSettings, job_id: str):
    try:
        cancelled = asyncio.run(_with_scheduler(settings, lambda s: s.cancel(job_id)))
    except JobSchedulerError as e:
        raise click.ClickException(str(e))
    if not cancelled:
        raise click.ClickException(f"Job '{job_id}' is not pending and was left unchanged")
    click.echo(f"Cancelled {job_id}.")


@cli.command("cancel-recurring", help="Cancel a recurring job by name")
@click.argument("job_name")
@click.pass_obj
def cancel_recurring_cmd(settings: SchedulerSettings, job_name: str):
    count = asyncio.run(_with_scheduler(settings, lambda s: s.cancel_recurring(job_name)))
    click.echo(f"Cancelled {count} recurring job(s) named '{job_name}'.")


def main():
    cli()


if __name__ == "__main__":
    main()
