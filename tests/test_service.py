"""Tests for JobService."""

import pytest
import structlog

from src.jobs.errors import JobNotFoundError, QueueUnavailableError, ValidationError
from src.jobs.job import JobStatus
from src.jobs.queue import JobQueue
from src.jobs.service import JobService
from tests.conftest import FlakyStore


class ContextRecordingStore(FlakyStore):
    """Records the bound log context seen by each store call."""

    def __init__(self, inner):
        super().__init__(inner)
        self.seen = []

    async def push(self, key, value):
        self.seen.append(("push", structlog.contextvars.get_contextvars()))
        await super().push(key, value)

    async def get(self, key):
        self.seen.append(("get", structlog.contextvars.get_contextvars()))
        return await super().get(key)


@pytest.fixture
def service(queue):
    return JobService(queue, max_retries=3)


class TestEnqueue:
    """Test job submission."""

    @pytest.mark.asyncio
    async def test_enqueue_uses_default_retries(self, service, queue):
        job_id = await service.enqueue("send_email", {"to": "a@b.com"})

        job = await service.get_status(job_id)
        assert job.type == "send_email"
        assert job.payload == {"to": "a@b.com"}
        assert job.status == JobStatus.PENDING
        assert job.max_retries == 3
        assert await queue.size() == 1

    @pytest.mark.asyncio
    async def test_enqueue_with_custom_retries(self, service):
        job_id = await service.enqueue_with_retries("report", {"month": "2024-05"}, max_retries=0)

        assert (await service.get_status(job_id)).max_retries == 0

    @pytest.mark.asyncio
    async def test_each_enqueue_creates_a_new_job(self, service):
        first = await service.enqueue("cleanup")
        second = await service.enqueue("cleanup")

        assert first != second

    @pytest.mark.parametrize(
        "job_type,max_retries,message",
        [
            ("", 3, "job type cannot be empty"),
            ("cleanup", -1, "max retries cannot be negative"),
        ],
    )
    @pytest.mark.asyncio
    async def test_invalid_input_leaves_queue_untouched(self, service, queue, job_type, max_retries, message):
        with pytest.raises(ValidationError, match=message):
            await service.enqueue_with_retries(job_type, {}, max_retries=max_retries)

        assert await queue.size() == 0

    @pytest.mark.asyncio
    async def test_queue_failure_propagates(self, flaky_store, flaky_queue):
        service = JobService(flaky_queue)
        flaky_store.fail_push = True

        with pytest.raises(QueueUnavailableError):
            await service.enqueue("cleanup")

    def test_negative_default_rejected(self, queue):
        with pytest.raises(ValidationError):
            JobService(queue, max_retries=-1)


class TestGetStatus:
    """Test status lookups."""

    @pytest.mark.asyncio
    async def test_empty_id(self, service):
        with pytest.raises(ValidationError, match="job ID cannot be empty"):
            await service.get_status("")

    @pytest.mark.asyncio
    async def test_unknown_id(self, service):
        with pytest.raises(JobNotFoundError):
            await service.get_status("0123456789abcdef")


class TestLogContext:
    """Test that service calls bind the job to the log context."""

    @pytest.mark.asyncio
    async def test_enqueue_and_status_bind_job_fields(self, sqlite_store):
        store = ContextRecordingStore(sqlite_store)
        service = JobService(JobQueue(store, queue_key="test:jobs:context"))

        job_id = await service.enqueue("send_email", {"to": "a@b.com"})
        await service.get_status(job_id)

        push_context = dict(store.seen)["push"]
        get_context = dict(store.seen)["get"]
        assert push_context == {"job_id": job_id, "job_type": "send_email"}
        assert get_context == {"job_id": job_id}
        assert structlog.contextvars.get_contextvars() == {}
