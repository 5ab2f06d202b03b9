"""Per-key asyncio locks.

Used to serialize work on one booking or one webhook endpoint. A key's
lock exists only while some task holds or awaits it, so keys taken from
requests (including unknown IDs) do not accumulate.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLocks:
    """Reference-counted asyncio locks keyed by string.

    Example:
        locks = KeyedLocks()
        async with locks.hold("B1"):
            ...
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def keys(self) -> list[str]:
        """Keys whose lock is currently held or awaited."""
        return list(self._locks)

    def locked(self, key: str) -> bool:
        """Whether the lock for ``key`` is held."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]
