import asyncio
import inspect
import time
from dataclasses import dataclass
from typing import Optional

import structlog

from src.jobs.errors import (
    HandlerExecutionError,
    HandlerNotFoundError,
    JobError,
    NoJobAvailableError,
    QueueUnavailableError,
)
from src.jobs.job import Job, JobStatus, calculate_retry_delay
from src.jobs.queue import JobQueue
from src.jobs.registry import JobHandler, JobRegistry
from src.jobs.retry import RetryDispatcher

logger = structlog.get_logger()

# Pause after a store failure so a broken backend does not spin the workers
DEQUEUE_ERROR_BACKOFF_SECONDS = 1.0
STATUS_UPDATE_TIMEOUT_SECONDS = 5.0


@dataclass
class JobContext:
    """Execution context handed to a handler together with its job.

    Cancellation is cooperative: handlers that run for a long time should
    check ``is_cancelled()`` and return early. Sync handlers may call it from
    their worker thread.
    """

    worker_id: int
    deadline: float
    shutdown: asyncio.Event

    def time_remaining(self) -> float:
        """Seconds left before the execution deadline."""
        return max(self.deadline - time.monotonic(), 0.0)

    def is_cancelled(self) -> bool:
        """True once the pool is shutting down or the deadline has passed."""
        return self.shutdown.is_set() or time.monotonic() >= self.deadline


class WorkerPool:
    """Fixed set of workers draining a JobQueue.

    Each worker dequeues a job, resolves its handler, runs it under a
    deadline and records the outcome. Failed attempts are retried with
    exponential backoff through a RetryDispatcher until ``max_retries`` is
    used up; jobs without a registered handler fail immediately.
    """

    def __init__(
        self,
        queue: JobQueue,
        registry: JobRegistry,
        workers: int = 5,
        retry_delay_seconds: float = 5.0,
        dequeue_timeout: float = 5.0,
        job_timeout: float = 600.0,
        shutdown_timeout: float = 30.0,
        retry_dispatchers: int = 2,
    ):
        """Initialize worker pool.

        Args:
            queue: JobQueue to pull jobs from
            registry: JobRegistry used to resolve handlers
            workers: Number of concurrent workers
            retry_delay_seconds: Base delay of the retry backoff
            dequeue_timeout: Seconds a worker blocks waiting for a job
            job_timeout: Execution deadline of a single attempt
            shutdown_timeout: Seconds stop() waits for in-flight jobs
            retry_dispatchers: Number of tasks re-enqueueing retries
        """
        if workers < 1:
            raise ValueError("workers must be at least 1")

        self.queue = queue
        self.registry = registry
        self.workers = workers
        self.retry_delay_seconds = retry_delay_seconds
        self.dequeue_timeout = dequeue_timeout
        self.job_timeout = job_timeout
        self.shutdown_timeout = shutdown_timeout
        self.retries = RetryDispatcher(queue, concurrency=retry_dispatchers)
        self._shutdown = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._shutdown.is_set()

    @property
    def pending_retries(self) -> int:
        return self.retries.pending

    async def start(self) -> None:
        """Start all workers in the pool.

        Example:
            pool = WorkerPool(queue, registry, workers=5)
            await pool.start()
            # ... application runs ...
            await pool.stop()
        """
        if self._tasks:
            return

        logger.info(
            "worker_pool_starting",
            workers=self.workers,
            retry_delay_seconds=self.retry_delay_seconds,
            job_timeout_seconds=self.job_timeout,
            source="worker",
        )

        self._shutdown.clear()
        await self.retries.start()
        self._tasks = [
            asyncio.create_task(self._worker_loop(i), name=f"job-worker-{i}")
            for i in range(self.workers)
        ]

    async def stop(self) -> None:
        """Stop all workers, letting in-flight jobs finish.

        Workers stop taking new jobs right away. Running handlers are not
        interrupted; if they do not return within the shutdown timeout a
        warning is logged and stop() returns anyway.
        """
        logger.info("worker_pool_stopping", source="worker")
        self._shutdown.set()

        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=self.shutdown_timeout)
            if pending:
                logger.warning(
                    "worker_pool_stop_timeout",
                    still_running=len(pending),
                    timeout_seconds=self.shutdown_timeout,
                    source="worker",
                )
            else:
                logger.info("worker_pool_stopped", source="worker")
        self._tasks = []

        await self.retries.stop()

    async def _worker_loop(self, worker_id: int) -> None:
        """Internal worker loop that processes jobs.

        This loop:
        1. Waits for the next job, or for the pool to shut down
        2. Runs the job through its handler
        3. Records completion, schedules a retry or records the failure

        Errors never escape the loop; the worker only exits on shutdown.
        """
        logger.debug("worker_started", worker_id=worker_id, source="worker")

        while not self._shutdown.is_set():
            try:
                job = await self._next_job()
            except NoJobAvailableError:
                continue
            except QueueUnavailableError as e:
                logger.error(
                    "worker_dequeue_failed",
                    worker_id=worker_id,
                    error=str(e),
                    source="worker",
                )
                await self._pause(DEQUEUE_ERROR_BACKOFF_SECONDS)
                continue

            if job is None:
                break

            try:
                await self.process_job(worker_id, job)
            except Exception as loop_error:
                # Unexpected error in worker loop itself
                # Log but don't crash the worker
                logger.error(
                    "worker_loop_error",
                    worker_id=worker_id,
                    job_id=job.id,
                    error=str(loop_error),
                    error_type=type(loop_error).__name__,
                    source="worker",
                    exc_info=True,
                )

        logger.debug("worker_stopping", worker_id=worker_id, source="worker")

    async def _next_job(self) -> Optional[Job]:
        """Dequeue a job, giving up as soon as the pool shuts down.

        Returns None when shutdown won the race.
        """
        dequeue = asyncio.ensure_future(self.queue.dequeue(self.dequeue_timeout))
        shutdown = asyncio.ensure_future(self._shutdown.wait())

        try:
            await asyncio.wait({dequeue, shutdown}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            dequeue.cancel()
            raise
        finally:
            shutdown.cancel()

        if not dequeue.done():
            dequeue.cancel()
            await asyncio.wait({dequeue})
        if dequeue.cancelled():
            return None
        return dequeue.result()

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def process_job(self, worker_id: int, job: Job) -> None:
        """Run a single dequeued job and record its outcome."""
        logger.info(
            "worker_processing_job",
            worker_id=worker_id,
            job_id=job.id,
            job_type=job.type,
            retries=job.retries,
            source="worker",
        )

        try:
            handler = self.registry.get_handler(job.type)
        except HandlerNotFoundError as e:
            # Retrying cannot fix a missing registration
            logger.error(
                "worker_handler_not_found",
                worker_id=worker_id,
                job_id=job.id,
                job_type=job.type,
                source="worker",
            )
            await self._handle_failure(job, f"no handler found: {e}")
            return

        ctx = JobContext(
            worker_id=worker_id,
            deadline=time.monotonic() + self.job_timeout,
            shutdown=self._shutdown,
        )

        try:
            await self._execute(handler, ctx, job)
        except HandlerExecutionError as job_error:
            should_retry = job.should_retry()

            logger.warning(
                "worker_job_failed",
                worker_id=worker_id,
                job_id=job.id,
                job_type=job.type,
                error=str(job_error),
                error_type=job_error.error_type,
                retries=job.retries,
                will_retry=should_retry,
                source="worker",
            )

            if should_retry:
                self._schedule_retry(job, str(job_error))
            else:
                await self._handle_failure(job, str(job_error))
            return

        await self._handle_success(job)

    async def _execute(self, handler: JobHandler, ctx: JobContext, job: Job) -> None:
        """Invoke a handler inside the fault boundary.

        Whatever the handler raises, and an elapsed deadline, comes out as
        HandlerExecutionError carrying the original message and type name.
        """
        if inspect.iscoroutinefunction(handler.handle):
            call = handler.handle(ctx, job)
        else:
            # Sync handlers run in a thread so the event loop stays free
            call = asyncio.to_thread(handler.handle, ctx, job)

        try:
            await asyncio.wait_for(call, timeout=self.job_timeout)
        except asyncio.TimeoutError as e:
            raise HandlerExecutionError(
                f"job exceeded execution deadline of {self.job_timeout}s",
                error_type="TimeoutError",
            ) from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Record the message only; the type goes to the logs
            raise HandlerExecutionError(
                str(e) or type(e).__name__, error_type=type(e).__name__
            ) from e

    def _schedule_retry(self, job: Job, error: str) -> None:
        job.increment_retry()
        delay = calculate_retry_delay(self.retry_delay_seconds, job.retries)

        logger.info(
            "worker_retrying_job",
            job_id=job.id,
            job_type=job.type,
            retry_count=job.retries,
            max_retries=job.max_retries,
            delay_seconds=delay,
            error=error,
            source="worker",
        )

        self.retries.schedule(job, delay)

    async def _handle_success(self, job: Job) -> None:
        try:
            await asyncio.wait_for(
                self.queue.update_status(job.id, JobStatus.COMPLETED),
                timeout=STATUS_UPDATE_TIMEOUT_SECONDS,
            )
        except (JobError, asyncio.TimeoutError) as e:
            logger.error(
                "worker_status_update_failed",
                job_id=job.id,
                status=JobStatus.COMPLETED.value,
                error=str(e) or type(e).__name__,
                source="worker",
            )
            return

        logger.info(
            "worker_job_completed",
            job_id=job.id,
            job_type=job.type,
            retries=job.retries,
            source="worker",
        )

    async def _handle_failure(self, job: Job, error: str) -> None:
        try:
            await asyncio.wait_for(
                self.queue.update_status(job.id, JobStatus.FAILED, error=error),
                timeout=STATUS_UPDATE_TIMEOUT_SECONDS,
            )
        except (JobError, asyncio.TimeoutError) as e:
            logger.error(
                "worker_status_update_failed",
                job_id=job.id,
                status=JobStatus.FAILED.value,
                error=str(e) or type(e).__name__,
                source="worker",
            )
            return

        logger.error(
            "worker_job_failed_permanently",
            job_id=job.id,
            job_type=job.type,
            retries=job.retries,
            max_retries=job.max_retries,
            error=error,
            source="worker",
        )
