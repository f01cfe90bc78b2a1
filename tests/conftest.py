"""Pytest configuration and fixtures for job system tests"""

import asyncio
import time
from typing import Iterable, Optional

import fakeredis
import pytest

from src.jobs.job import Job, JobStatus
from src.jobs.queue import JobQueue
from src.jobs.registry import JobRegistry
from src.storage.base import StorageError
from src.storage.redis_store import RedisJobStore
from src.storage.sqlite_store import SQLiteJobStore


class FlakyStore:
    """Wraps a real store and fails selected operations on demand."""

    def __init__(self, inner):
        self.inner = inner
        self.fail_push = False
        self.fail_pop = False
        self.fail_get = False
        self.fail_set = False

    async def initialize(self):
        await self.inner.initialize()

    async def push(self, key, value):
        if self.fail_push:
            raise StorageError("push failed")
        await self.inner.push(key, value)

    async def pop(self, key, timeout):
        if self.fail_pop:
            raise StorageError("pop failed")
        return await self.inner.pop(key, timeout)

    async def length(self, key):
        return await self.inner.length(key)

    async def get(self, key):
        if self.fail_get:
            raise StorageError("get failed")
        return await self.inner.get(key)

    async def set(self, key, value, ttl=None):
        if self.fail_set:
            raise StorageError("set failed")
        await self.inner.set(key, value, ttl)

    async def close(self):
        await self.inner.close()


@pytest.fixture
async def sqlite_store(tmp_path):
    """Fresh SQLite store for each test"""
    store = SQLiteJobStore(str(tmp_path / "jobs.db"), poll_interval=0.01)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
async def redis_store():
    """Redis store running against fakeredis"""
    store = RedisJobStore(client=fakeredis.FakeAsyncRedis(decode_responses=True))
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def flaky_store(sqlite_store):
    return FlakyStore(sqlite_store)


@pytest.fixture
def queue(sqlite_store):
    return JobQueue(sqlite_store, queue_key="test:jobs:queue")


@pytest.fixture
def flaky_queue(flaky_store):
    return JobQueue(flaky_store, queue_key="test:jobs:flaky")


@pytest.fixture
def registry():
    return JobRegistry()


async def wait_for_status(
    queue: JobQueue,
    job_id: str,
    statuses: Iterable[JobStatus] = (JobStatus.COMPLETED, JobStatus.FAILED),
    timeout: float = 5.0,
) -> Job:
    """Poll the status record until it reaches one of ``statuses``."""
    wanted = set(statuses)
    deadline = time.monotonic() + timeout
    last: Optional[Job] = None

    while time.monotonic() < deadline:
        try:
            last = await queue.get_status(job_id)
        except Exception:
            last = None
        if last is not None and last.status in wanted:
            return last
        await asyncio.sleep(0.02)

    raise AssertionError(
        f"job {job_id} did not reach {sorted(s.value for s in wanted)}; "
        f"last status: {last.status.value if last else 'unknown'}"
    )
