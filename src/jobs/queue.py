import structlog
from typing import Optional

from src.jobs.errors import (
    InvalidStatusTransitionError,
    JobNotFoundError,
    NoJobAvailableError,
    QueueUnavailableError,
)
from src.jobs.job import Job, JobStatus, utcnow
from src.storage.base import JobStore, StorageError

logger = structlog.get_logger()

DEFAULT_STATUS_TTL_SECONDS = 24 * 60 * 60


class JobQueue:
    """Job queue on top of a list + cache store.

    The work list holds serialized jobs in FIFO order. Next to it every job
    has a status record (``<queue_key>:status:<job_id>``) with a TTL, which
    is what callers query. Dequeue is a destructive pop: there is no
    in-flight ledger, so a job popped by a worker that dies before
    finishing is not redelivered.
    """

    def __init__(
        self,
        store: JobStore,
        queue_key: str = "jobs:queue",
        status_ttl: float = DEFAULT_STATUS_TTL_SECONDS,
    ):
        """Initialize job queue.

        Args:
            store: Backing list + cache store
            queue_key: Key of the work list
            status_ttl: Seconds a status record stays readable
        """
        self.store = store
        self.queue_key = queue_key
        self.status_key = f"{queue_key}:status"
        self.status_ttl = status_ttl
        logger.info("job_queue_initialized", queue_key=queue_key, source="queue")

    async def enqueue(self, job: Job) -> None:
        """Append a job to the tail of the queue.

        Args:
            job: Job to enqueue

        Raises:
            QueueUnavailableError: If the job could not be written

        Example:
            await queue.enqueue(new_job('send_email', {'to': 'a@b.com'}))
        """
        try:
            data = job.serialize()
        except (TypeError, ValueError) as e:
            raise QueueUnavailableError(f"failed to serialize job: {e}") from e

        try:
            await self.store.push(self.queue_key, data)
        except StorageError as e:
            raise QueueUnavailableError(f"failed to enqueue job: {e}") from e

        # Status tracking is not needed to execute the job
        try:
            await self._store_status(job)
        except (StorageError, TypeError, ValueError) as e:
            logger.warning(
                "job_status_store_failed",
                job_id=job.id,
                error=str(e),
                source="queue",
            )

        logger.info(
            "job_enqueued",
            job_id=job.id,
            job_type=job.type,
            retries=job.retries,
            source="queue",
        )

    async def dequeue(self, timeout: float) -> Job:
        """Remove and return the job at the head of the queue.

        Blocks for up to ``timeout`` seconds. A timeout of zero or less
        checks the queue once without waiting.

        Raises:
            NoJobAvailableError: If nothing arrived within the timeout
            QueueUnavailableError: If the store failed or the item is corrupt
        """
        try:
            data = await self.store.pop(self.queue_key, timeout)
        except StorageError as e:
            raise QueueUnavailableError(f"failed to dequeue job: {e}") from e

        if data is None:
            raise NoJobAvailableError()

        try:
            job = Job.deserialize(data)
        except ValueError as e:
            raise QueueUnavailableError(str(e)) from e

        job.status = JobStatus.PROCESSING
        job.processed_at = utcnow()

        try:
            await self._store_status(job)
        except StorageError as e:
            logger.warning(
                "job_status_store_failed",
                job_id=job.id,
                error=str(e),
                source="queue",
            )

        logger.debug(
            "job_retrieved",
            job_id=job.id,
            job_type=job.type,
            source="queue",
        )

        return job

    async def get_status(self, job_id: str) -> Job:
        """Return the status record of a job.

        Raises:
            JobNotFoundError: If no record exists or it has expired
        """
        try:
            data = await self.store.get(self._status_key(job_id))
        except StorageError as e:
            raise QueueUnavailableError(f"failed to get job status: {e}") from e

        if data is None:
            raise JobNotFoundError(job_id)

        try:
            return Job.deserialize(data)
        except ValueError as e:
            raise QueueUnavailableError(str(e)) from e

    async def update_status(
        self, job_id: str, status: JobStatus, error: Optional[str] = None
    ) -> Job:
        """Move a job to a new status.

        Completed and failed are final: repeating the same final status is a
        no-op, asking for a different one raises.

        Args:
            job_id: ID of the job to update
            status: New status
            error: Error message to record with the update

        Returns:
            The stored job after the update
        """
        job = await self.get_status(job_id)
        status = JobStatus(status)

        if job.is_terminal:
            if job.status == status:
                return job
            raise InvalidStatusTransitionError(
                f"job {job_id} is already {job.status.value}, cannot move to {status.value}"
            )

        job.status = status
        now = utcnow()
        if status == JobStatus.COMPLETED:
            job.completed_at = now
        elif status == JobStatus.FAILED:
            job.failed_at = now
        if error is not None:
            job.error = error

        try:
            await self._store_status(job)
        except StorageError as e:
            raise QueueUnavailableError(f"failed to update job status: {e}") from e

        logger.info(
            "job_status_updated",
            job_id=job_id,
            status=status.value,
            source="queue",
        )

        return job

    async def retry(self, job: Job) -> None:
        """Put a failed job back at the tail of the queue.

        The retry count must already have been incremented by the caller.
        """
        job.status = JobStatus.PENDING
        job.processed_at = None
        job.failed_at = None
        job.error = None

        logger.info(
            "job_requeued",
            job_id=job.id,
            retries=job.retries,
            max_retries=job.max_retries,
            source="queue",
        )

        await self.enqueue(job)

    async def size(self) -> int:
        """Return the number of jobs waiting in the queue."""
        try:
            return await self.store.length(self.queue_key)
        except StorageError as e:
            raise QueueUnavailableError(f"failed to read queue size: {e}") from e

    async def _store_status(self, job: Job) -> None:
        await self.store.set(self._status_key(job.id), job.serialize(), ttl=self.status_ttl)

    def _status_key(self, job_id: str) -> str:
        return f"{self.status_key}:{job_id}"
