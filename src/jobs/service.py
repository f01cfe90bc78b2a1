import structlog
from typing import Any, Optional

from src.jobs.errors import JobError, ValidationError
from src.jobs.job import Job, new_job
from src.jobs.queue import JobQueue

logger = structlog.get_logger()


class JobService:
    """High level entry point for producers.

    Validates input, builds the job and hands it to the queue.
    """

    def __init__(self, queue: JobQueue, max_retries: int = 3):
        if max_retries < 0:
            raise ValidationError("max retries cannot be negative")
        self.queue = queue
        self.max_retries = max_retries

    async def enqueue(self, job_type: str, payload: Optional[dict[str, Any]] = None) -> str:
        """Enqueue a job with the default retry budget.

        Returns:
            ID of the new job
        """
        return await self.enqueue_with_retries(job_type, payload, self.max_retries)

    async def enqueue_with_retries(
        self,
        job_type: str,
        payload: Optional[dict[str, Any]] = None,
        max_retries: int = 3,
    ) -> str:
        """Enqueue a job with its own retry budget.

        Raises:
            ValidationError: If the type is empty or max_retries is negative
            QueueUnavailableError: If the queue could not accept the job
        """
        if not job_type:
            raise ValidationError("job type cannot be empty")
        if max_retries < 0:
            raise ValidationError("max retries cannot be negative")

        job = new_job(job_type, payload, max_retries)

        with structlog.contextvars.bound_contextvars(job_id=job.id, job_type=job_type):
            try:
                await self.queue.enqueue(job)
            except JobError as e:
                logger.error("job_enqueue_failed", error=str(e), source="service")
                raise

        return job.id

    async def get_status(self, job_id: str) -> Job:
        if not job_id:
            raise ValidationError("job ID cannot be empty")

        with structlog.contextvars.bound_contextvars(job_id=job_id):
            return await self.queue.get_status(job_id)
