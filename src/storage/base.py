from typing import Optional, Protocol, runtime_checkable


class StorageError(Exception):
    """Raised when the backing store fails an operation."""


@runtime_checkable
class JobStore(Protocol):
    """List + cache capability the job queue is built on.

    Lists are FIFO: push appends at the tail, pop removes from the head.
    Cache entries may carry a TTL after which they are no longer readable.
    All methods raise StorageError on backend failures.
    """

    async def initialize(self) -> None:
        ...

    async def push(self, key: str, value: str) -> None:
        ...

    async def pop(self, key: str, timeout: float) -> Optional[str]:
        """Remove and return the head of a list.

        Blocks up to ``timeout`` seconds waiting for an item. A timeout of
        zero or less makes a single non-blocking attempt. Returns None when
        nothing arrived in time.
        """
        ...

    async def length(self, key: str) -> int:
        ...

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        ...

    async def close(self) -> None:
        ...
