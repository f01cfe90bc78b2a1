import threading
from typing import TYPE_CHECKING, Any, Callable, Protocol, runtime_checkable

import structlog

from src.jobs.errors import HandlerNotFoundError, HandlerRegistrationError

if TYPE_CHECKING:
    from src.jobs.job import Job
    from src.jobs.worker import JobContext

logger = structlog.get_logger()


@runtime_checkable
class JobHandler(Protocol):
    """Performs the work for one job type.

    ``handle`` may be a coroutine function, which runs on the event loop, or
    a plain function, which the worker pool runs in a thread. Raising marks
    the attempt as failed.
    """

    job_type: str

    def handle(self, ctx: "JobContext", job: "Job") -> Any:
        ...


class FunctionHandler:
    """Adapts a plain callable ``func(ctx, job)`` to the JobHandler protocol."""

    def __init__(self, job_type: str, func: Callable[["JobContext", "Job"], Any]):
        self.job_type = job_type
        self.func = func
        # Lets the pool tell async callables from sync ones
        self.handle = func

    def __repr__(self) -> str:
        return f"FunctionHandler(job_type={self.job_type!r}, func={getattr(self.func, '__name__', self.func)!r})"


def job_handler(job_type: str) -> Callable[[Callable], FunctionHandler]:
    """Decorator turning a function into a handler for ``job_type``.

    Example:
        @job_handler("send_email")
        async def send_email(ctx, job):
            ...

        registry.register(send_email)
    """

    def decorator(func: Callable) -> FunctionHandler:
        return FunctionHandler(job_type, func)

    return decorator


class JobRegistry:
    """Maps job types to the handler responsible for them.

    Lookups happen on every dispatch, possibly from handler threads, so
    every access goes through one mutex. Readers are serialized with each
    other as well as with writers; the critical sections are a single dict
    operation.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[str, JobHandler] = {}

    def register(self, handler: JobHandler) -> None:
        """Register a handler under its ``job_type``.

        Raises:
            HandlerRegistrationError: If the type is empty or already taken
        """
        job_type = getattr(handler, "job_type", "")
        if not job_type:
            raise HandlerRegistrationError("handler must declare a non-empty job type")

        with self._lock:
            if job_type in self._handlers:
                raise HandlerRegistrationError(
                    f"handler for job type '{job_type}' is already registered"
                )
            self._handlers[job_type] = handler

        logger.info("job_handler_registered", job_type=job_type, source="registry")

    def unregister(self, job_type: str) -> bool:
        with self._lock:
            removed = self._handlers.pop(job_type, None) is not None

        if removed:
            logger.info("job_handler_unregistered", job_type=job_type, source="registry")
        return removed

    def get_handler(self, job_type: str) -> JobHandler:
        with self._lock:
            handler = self._handlers.get(job_type)

        if handler is None:
            raise HandlerNotFoundError(job_type)
        return handler

    def get_registered_types(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)

    def __contains__(self, job_type: str) -> bool:
        with self._lock:
            return job_type in self._handlers

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)
