"""
valleydrop/locks.py

In-process mutual exclusion keyed by session id.

Each AirdropEngine owns its own SessionLockManager, so two engines (for
example in tests) never share locks. This does not protect against two
separate processes working on the same session directory.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict

import trio

logger = logging.getLogger("valleydrop.locks")


class SessionLockManager:
    """
    Registry of trio locks, one per session id.

    Usage:
        locks = SessionLockManager()

        release = await locks.acquire(session_id)
        try:
            ...
        finally:
            release()

        async with locks.hold(session_id):
            ...
    """

    def __init__(self):
        self._locks: Dict[str, trio.Lock] = {}

    def _lock_for(self, session_id: str) -> trio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = trio.Lock()
            self._locks[session_id] = lock
        return lock

    async def acquire(self, session_id: str) -> Callable[[], None]:
        """
        Block until the session is free, then take it.

        Returns:
            Release function. Must be called from the acquiring task.
        """
        lock = self._lock_for(session_id)
        await lock.acquire()
        logger.debug(f"Acquired lock for session {session_id}")

        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            lock.release()
            # Drop idle locks so the registry does not grow forever
            if not lock.locked() and lock.statistics().tasks_waiting == 0:
                if self._locks.get(session_id) is lock:
                    del self._locks[session_id]
            logger.debug(f"Released lock for session {session_id}")

        return release

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[None]:
        release = await self.acquire(session_id)
        try:
            yield
        finally:
            release()

    def locked(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    def active_sessions(self) -> list:
        return sorted(sid for sid, lock in self._locks.items() if lock.locked())
