"""Exceptions raised by the job system."""


class JobError(Exception):
    """Base class for all job system errors."""


class ValidationError(JobError):
    """Input rejected before it reaches the queue."""


class QueueUnavailableError(JobError):
    """The backing store could not be read or written, or a job could not be (de)serialized."""


class NoJobAvailableError(JobError):
    """Dequeue timed out without receiving a job."""

    def __init__(self, message: str = "no job available within timeout"):
        super().__init__(message)


class JobNotFoundError(JobError):
    """No status record exists for the requested job."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"job not found: {job_id}")


class InvalidStatusTransitionError(JobError):
    """A completed or failed job was asked to move to another status."""


class HandlerRegistrationError(JobError):
    """A handler has an empty job type or its type is already taken."""


class HandlerNotFoundError(JobError):
    """No handler is registered for a job type."""

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"no handler registered for job type '{job_type}'")


class HandlerExecutionError(JobError):
    """A handler raised or ran past its execution deadline."""

    def __init__(self, message: str, error_type: str = "Exception"):
        self.error_type = error_type
        super().__init__(message)
