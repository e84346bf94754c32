"""
valleydrop/tests/test_locks.py

Tests for the per-session lock manager.
"""

import pytest
import trio

from valleydrop.locks import SessionLockManager


class TestSessionLockManager:
    """Test per-session mutual exclusion."""

    @pytest.mark.trio
    async def test_mutual_exclusion(self):
        """Two tasks on the same session never overlap."""
        locks = SessionLockManager()
        events = []

        async def worker(name):
            async with locks.hold("s1"):
                events.append(f"{name} in")
                await trio.sleep(0.01)
                events.append(f"{name} out")

        async with trio.open_nursery() as nursery:
            nursery.start_soon(worker, "a")
            nursery.start_soon(worker, "b")

        assert events[0].endswith("in") and events[1].endswith("out")
        assert events[0].split()[0] == events[1].split()[0]

    @pytest.mark.trio
    async def test_independent_sessions(self):
        """Different session ids do not block each other."""
        locks = SessionLockManager()
        async with locks.hold("s1"):
            with trio.fail_after(1):
                async with locks.hold("s2"):
                    assert locks.active_sessions() == ["s1", "s2"]

    @pytest.mark.trio
    async def test_release_is_idempotent(self):
        """Releasing twice is harmless and idle locks are dropped."""
        locks = SessionLockManager()
        release = await locks.acquire("s1")
        assert locks.locked("s1")

        release()
        release()

        assert not locks.locked("s1")
        assert locks.active_sessions() == []

    @pytest.mark.trio
    async def test_separate_managers(self):
        """Two managers do not share locks."""
        first = SessionLockManager()
        second = SessionLockManager()
        async with first.hold("s1"):
            assert not second.locked("s1")
