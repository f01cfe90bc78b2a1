import asyncio
import heapq
import itertools
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Optional

import structlog

from src.jobs.errors import JobError
from src.jobs.job import Job

if TYPE_CHECKING:
    from src.jobs.queue import JobQueue

logger = structlog.get_logger()


@dataclass(order=True)
class _PendingRetry:
    due: float
    seq: int
    job: Job = field(compare=False)


class RetryDispatcher:
    """Delay queue that puts failed jobs back on the job queue.

    Retries are kept in a heap ordered by the time they become due and are
    drained by a fixed number of dispatcher tasks, so a burst of failures
    grows the heap instead of the number of running tasks.
    """

    def __init__(
        self,
        queue: "JobQueue",
        concurrency: int = 2,
        dispatch_timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize retry dispatcher.

        Args:
            queue: JobQueue the retries are re-enqueued on
            concurrency: Number of dispatcher tasks
            dispatch_timeout: Seconds allowed for one re-enqueue
            clock: Monotonic clock used for due times
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self.queue = queue
        self.concurrency = concurrency
        self.dispatch_timeout = dispatch_timeout
        self._clock = clock
        self._heap: list[_PendingRetry] = []
        self._counter = itertools.count()
        self._wakeup = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._late: set[asyncio.Task] = set()
        self._stopping = False

    @property
    def pending(self) -> int:
        """Number of retries waiting to become due."""
        return len(self._heap)

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping

    def schedule(self, job: Job, delay: float) -> None:
        """Queue ``job`` to be re-enqueued after ``delay`` seconds.

        While the dispatcher is not running nothing drains the heap, so the job
        is handed back to the queue right away instead.
        """
        if not self.running:
            self._dispatch_now(job)
            return

        due = self._clock() + max(delay, 0.0)
        heapq.heappush(self._heap, _PendingRetry(due, next(self._counter), job))
        self._wakeup.set()

        logger.debug(
            "retry_scheduled",
            job_id=job.id,
            delay_seconds=delay,
            pending=len(self._heap),
            source="retry",
        )

    def _dispatch_now(self, job: Job) -> None:
        task = asyncio.create_task(self._dispatch(job), name=f"retry-late-{job.id}")
        self._late.add(task)
        task.add_done_callback(self._late.discard)

        logger.info(
            "retry_dispatched_immediately",
            job_id=job.id,
            job_type=job.type,
            source="retry",
        )

    async def drain(self) -> None:
        """Wait for retries handed straight back to the queue to finish."""
        if self._late:
            await asyncio.gather(*self._late, return_exceptions=True)

    async def start(self) -> None:
        if self._tasks:
            return

        self._stopping = False
        self._tasks = [
            asyncio.create_task(self._run(i), name=f"retry-dispatcher-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("retry_dispatcher_started", concurrency=self.concurrency, source="retry")

    async def stop(self) -> None:
        """Stop the dispatcher tasks and hand pending retries back right away."""
        self._stopping = True
        self._wakeup.set()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        flushed = 0
        while self._heap:
            entry = heapq.heappop(self._heap)
            await self._dispatch(entry.job)
            flushed += 1
        await self.drain()

        logger.info("retry_dispatcher_stopped", flushed=flushed, source="retry")

    async def _run(self, dispatcher_id: int) -> None:
        while not self._stopping:
            job = await self._next_due()
            if job is None:
                break
            await self._dispatch(job)

        logger.debug("retry_dispatcher_exiting", dispatcher_id=dispatcher_id, source="retry")

    async def _next_due(self) -> Optional[Job]:
        """Wait until the earliest retry is due and pop it.

        Returns None once the dispatcher is stopping.
        """
        while not self._stopping:
            wait: Optional[float] = None
            if self._heap:
                wait = self._heap[0].due - self._clock()
                if wait <= 0:
                    return heapq.heappop(self._heap).job

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass

        return None

    async def _dispatch(self, job: Job) -> None:
        try:
            await asyncio.wait_for(self.queue.retry(job), timeout=self.dispatch_timeout)
        except (JobError, asyncio.TimeoutError) as e:
            logger.error(
                "retry_dispatch_failed",
                job_id=job.id,
                job_type=job.type,
                error=str(e) or type(e).__name__,
                source="retry",
            )
