"""
Per-scene upload locks.

Serializes asset writes for the same scene; uploads for different scenes
never wait on each other.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class SceneUploadLocks:
    """Registry of asyncio locks keyed by scene id, dropped when unused."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, scene_id: str) -> AsyncIterator[None]:
        """Hold the lock for scene_id; later callers queue in arrival order."""
        lock = self._locks.setdefault(scene_id, asyncio.Lock())
        self._waiters[scene_id] = self._waiters.get(scene_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[scene_id] -= 1
            if self._waiters[scene_id] == 0:
                del self._waiters[scene_id]
                del self._locks[scene_id]

    def is_locked(self, scene_id: str) -> bool:
        lock = self._locks.get(scene_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
