"""Storage backends for the job queue."""

from typing import TYPE_CHECKING

from .base import JobStore, StorageError
from .redis_store import RedisJobStore
from .sqlite_store import SQLiteJobStore

if TYPE_CHECKING:
    from src.config import Settings

__all__ = ["JobStore", "StorageError", "RedisJobStore", "SQLiteJobStore", "create_store"]


def create_store(settings: "Settings") -> JobStore:
    """Build the store selected by ``settings.job_store``."""
    if settings.job_store == "redis":
        return RedisJobStore(redis_url=settings.redis_url)
    return SQLiteJobStore(db_path=settings.sqlite_path)
