"""Job queue system for background task processing."""

from .errors import (
    HandlerExecutionError,
    HandlerNotFoundError,
    HandlerRegistrationError,
    InvalidStatusTransitionError,
    JobError,
    JobNotFoundError,
    NoJobAvailableError,
    QueueUnavailableError,
    ValidationError,
)
from .job import Job, JobStatus, calculate_retry_delay, generate_job_id, new_job
from .queue import JobQueue
from .registry import FunctionHandler, JobHandler, JobRegistry, job_handler
from .retry import RetryDispatcher
from .scheduler import Scheduler, SchedulerState, parse_cron
from .service import JobService
from .worker import JobContext, WorkerPool

__all__ = [
    "Job",
    "JobStatus",
    "new_job",
    "generate_job_id",
    "calculate_retry_delay",
    "JobQueue",
    "JobRegistry",
    "JobHandler",
    "FunctionHandler",
    "job_handler",
    "RetryDispatcher",
    "WorkerPool",
    "JobContext",
    "Scheduler",
    "SchedulerState",
    "parse_cron",
    "JobService",
    "JobError",
    "ValidationError",
    "QueueUnavailableError",
    "NoJobAvailableError",
    "JobNotFoundError",
    "InvalidStatusTransitionError",
    "HandlerRegistrationError",
    "HandlerNotFoundError",
    "HandlerExecutionError",
]
