import asyncio
import time
from pathlib import Path
from typing import Optional

import aiosqlite
import structlog

from src.storage.base import StorageError

logger = structlog.get_logger()


class SQLiteJobStore:
    """Job store backed by a local SQLite database.

    Lists are rows in ``queue_items`` ordered by their autoincrement id, and
    cache entries are rows in ``kv_entries`` with an optional expiry. Every
    operation opens its own connection, so several workers can share one
    database file.
    """

    def __init__(self, db_path: str, poll_interval: float = 0.05) -> None:
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file
            poll_interval: Seconds between attempts while a pop is blocking
        """
        self.db_path = db_path
        self.poll_interval = poll_interval
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        logger.info("sqlite_job_store_initialized", db_path=self.db_path, source="storage")

    def _connect(self) -> aiosqlite.Connection:
        # Autocommit mode; pops manage their own IMMEDIATE transaction
        return aiosqlite.connect(self.db_path, timeout=30.0, isolation_level=None)

    async def initialize(self) -> None:
        """Initialize database schema."""
        try:
            async with self._connect() as db:
                await db.execute("PRAGMA journal_mode=WAL")

                await db.execute("""
                    CREATE TABLE IF NOT EXISTS queue_items (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        queue_key TEXT NOT NULL,
                        value TEXT NOT NULL,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_queue_items_key_id
                    ON queue_items(queue_key, id ASC)
                """)

                await db.execute("""
                    CREATE TABLE IF NOT EXISTS kv_entries (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        expires_at REAL
                    )
                """)
        except aiosqlite.Error as e:
            raise StorageError(f"failed to initialize sqlite store: {e}") from e

        logger.info("database_initialized", db_path=self.db_path, source="storage")

    async def push(self, key: str, value: str) -> None:
        try:
            async with self._connect() as db:
                await db.execute(
                    "INSERT INTO queue_items (queue_key, value) VALUES (?, ?)",
                    (key, value),
                )
        except aiosqlite.Error as e:
            raise StorageError(f"failed to push to '{key}': {e}") from e

    async def pop(self, key: str, timeout: float) -> Optional[str]:
        deadline = time.monotonic() + max(timeout, 0.0)

        while True:
            value = await self._pop_once(key)
            if value is not None:
                return value

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def _pop_once(self, key: str) -> Optional[str]:
        """Atomically remove the oldest item of a list, if any."""
        try:
            async with self._connect() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    async with db.execute(
                        """
                        SELECT id, value FROM queue_items
                        WHERE queue_key = ?
                        ORDER BY id ASC
                        LIMIT 1
                        """,
                        (key,),
                    ) as cursor:
                        row = await cursor.fetchone()

                    if row is None:
                        await db.execute("COMMIT")
                        return None

                    await db.execute("DELETE FROM queue_items WHERE id = ?", (row[0],))
                    await db.execute("COMMIT")
                    return row[1]
                except BaseException:
                    await db.execute("ROLLBACK")
                    raise
        except aiosqlite.Error as e:
            raise StorageError(f"failed to pop from '{key}': {e}") from e

    async def length(self, key: str) -> int:
        try:
            async with self._connect() as db:
                async with db.execute(
                    "SELECT COUNT(*) FROM queue_items WHERE queue_key = ?", (key,)
                ) as cursor:
                    row = await cursor.fetchone()
                    return row[0] if row else 0
        except aiosqlite.Error as e:
            raise StorageError(f"failed to read length of '{key}': {e}") from e

    async def get(self, key: str) -> Optional[str]:
        now = time.time()
        try:
            async with self._connect() as db:
                async with db.execute(
                    "SELECT value, expires_at FROM kv_entries WHERE key = ?", (key,)
                ) as cursor:
                    row = await cursor.fetchone()

                if row is None:
                    return None

                value, expires_at = row
                if expires_at is not None and expires_at <= now:
                    await db.execute(
                        "DELETE FROM kv_entries WHERE key = ? AND expires_at <= ?",
                        (key, now),
                    )
                    return None

                return value
        except aiosqlite.Error as e:
            raise StorageError(f"failed to get '{key}': {e}") from e

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        expires_at = time.time() + ttl if ttl else None
        try:
            async with self._connect() as db:
                await db.execute(
                    """
                    INSERT INTO kv_entries (key, value, expires_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        expires_at = excluded.expires_at
                    """,
                    (key, value, expires_at),
                )
        except aiosqlite.Error as e:
            raise StorageError(f"failed to set '{key}': {e}") from e

    async def purge_expired(self) -> int:
        """Remove cache entries whose TTL has passed.

        Returns:
            Number of entries deleted
        """
        now = time.time()
        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    "DELETE FROM kv_entries WHERE expires_at IS NOT NULL AND expires_at <= ?",
                    (now,),
                )
                deleted_count = cursor.rowcount
        except aiosqlite.Error as e:
            raise StorageError(f"failed to purge expired entries: {e}") from e

        logger.info("expired_entries_purged", deleted_count=deleted_count, source="storage")

        return deleted_count

    async def close(self) -> None:
        # Connections are per operation; nothing is held open
        return None
