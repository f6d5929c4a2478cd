"""
Per-project serialization of repository mutations.

Each project path owns one ``asyncio.Lock``. Waiters are woken in the order
they started waiting and a newcomer never overtakes a queued waiter, so
operations on one project are served in submission order. Different
projects never contend.
"""

import asyncio
import os
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

log = structlog.get_logger(__name__)


def project_key(project_path: str) -> str:
    """Normalize a project path so aliases share one lock."""
    return os.path.normpath(os.path.abspath(os.path.expanduser(project_path)))


class ProjectLockRegistry:
    """FIFO mutex per project path.

    Locks are created lazily and kept for the lifetime of the registry.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, project_path: str) -> asyncio.Lock:
        # No await between lookup and insert.
        return self._locks.setdefault(project_key(project_path), asyncio.Lock())

    @asynccontextmanager
    async def hold(self, project_path: str, operation: str = "") -> AsyncIterator[None]:
        """Hold the project's lock for the duration of one operation."""
        lock = self._get_lock(project_path)
        started = time.monotonic()
        await lock.acquire()
        waited_ms = (time.monotonic() - started) * 1000
        if waited_ms >= 1:
            log.debug("project_lock_acquired", project_path=project_path, operation=operation, waited_ms=waited_ms)
        try:
            yield
        finally:
            lock.release()

    def is_locked(self, project_path: str) -> bool:
        lock = self._locks.get(project_key(project_path))
        return lock is not None and lock.locked()
