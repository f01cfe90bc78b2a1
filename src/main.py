"""Main entry point for the background job system."""

import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import structlog

from src.config import Settings, settings
from src.jobs import JobQueue, JobRegistry, JobService, Scheduler, WorkerPool
from src.storage import JobStore, create_store

logger = structlog.get_logger()


def configure_logging(config: Settings = settings) -> None:
    """Configure structured logging.

    Console output in development, JSON lines in production and staging.
    """
    renderer = (
        structlog.processors.JSONRenderer()
        if config.is_production
        else structlog.dev.ConsoleRenderer()
    )
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )


@dataclass
class JobSystem:
    """All job system components wired to one store."""
    config: Settings
    store: JobStore
    queue: JobQueue
    registry: JobRegistry
    pool: WorkerPool
    scheduler: Scheduler
    service: JobService

    async def start(self) -> None:
        await self.store.initialize()

        if self.config.jobs_enabled:
            await self.pool.start()
        if self.config.scheduler_enabled:
            await self.scheduler.start()

        logger.info(
            "job_system_started",
            job_store=self.config.job_store,
            workers=self.config.job_worker_count if self.config.jobs_enabled else 0,
            scheduler_enabled=self.config.scheduler_enabled,
            handlers=self.registry.get_registered_types(),
        )

    async def stop(self) -> None:
        # Stop producers first so nothing new is enqueued while draining
        await self.scheduler.shutdown()
        await self.pool.stop()
        await self.store.close()

        logger.info("job_system_stopped")


def create_job_system(config: Settings = settings, store: Optional[JobStore] = None) -> JobSystem:
    """Build every component from settings.

    Args:
        config: Settings to build from
        store: Store to use instead of the one selected by settings
    """
    store = store or create_store(config)
    queue = JobQueue(
        store,
        queue_key=config.job_queue_key,
        status_ttl=config.job_status_ttl_seconds,
    )
    registry = JobRegistry()
    pool = WorkerPool(
        queue,
        registry,
        workers=config.job_worker_count,
        retry_delay_seconds=config.job_retry_delay_seconds,
        dequeue_timeout=config.job_dequeue_timeout,
        job_timeout=config.job_execution_timeout,
        shutdown_timeout=config.job_shutdown_timeout,
        retry_dispatchers=config.job_retry_dispatchers,
    )
    scheduler = Scheduler(
        queue,
        max_retries=config.job_max_retries,
        enqueue_timeout=config.scheduler_enqueue_timeout,
        timezone=config.scheduler_timezone,
    )
    service = JobService(queue, max_retries=config.job_max_retries)

    return JobSystem(
        config=config,
        store=store,
        queue=queue,
        registry=registry,
        pool=pool,
        scheduler=scheduler,
        service=service,
    )


@asynccontextmanager
async def job_system(
    config: Settings = settings, store: Optional[JobStore] = None
) -> AsyncIterator[JobSystem]:
    """Manage the job system lifecycle.

    Handlers and schedules can be registered on the yielded system; the
    pool and scheduler pick them up while running.
    """
    system = create_job_system(config, store)
    await system.start()
    try:
        yield system
    finally:
        await system.stop()


async def main() -> None:
    configure_logging(settings)

    logger.info("job_system_starting", environment=settings.environment)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    async with job_system(settings):
        await stop_event.wait()
        logger.info("shutdown_signal_received")


if __name__ == "__main__":
    asyncio.run(main())
