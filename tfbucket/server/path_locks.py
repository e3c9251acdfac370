import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class PathLocks:
    """Process local mutual exclusion per object key.

    A lock is created on first access to a key and kept for the lifetime of the registry -
    which lives as long as the server does.

    This only serializes requests handled by the same server instance.
    Running several instances against the same bucket requires a storage provider with conditional writes.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()

        return lock

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        async with self._get(key):
            yield
