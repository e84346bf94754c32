"""
valleydrop/tests/test_watcher.py

Tests for the deposit watcher.
"""

import pytest
import trio

from valleydrop.errors import (
    ManualInterventionRequired,
    SessionCancelled,
    TransientInfrastructureError,
)
from valleydrop.session import Stage
from valleydrop.store import SessionStore
from valleydrop.watcher import DepositWatcher

from fakes import FakeBalanceQuery, make_session


class TestDepositWatcher:
    """Test deposit polling."""

    @pytest.fixture
    def store(self, tmp_path):
        return SessionStore(tmp_path / "sessions")

    @pytest.fixture
    def session(self, store):
        session = make_session()
        store.save(session)
        return session

    @pytest.mark.trio
    async def test_waits_until_funded(self, autojump_clock, store, session):
        """Short balances keep polling; the first full balance transitions once."""
        required = session.required_amount
        balances = FakeBalanceQuery()
        balances.script(session.funding_address, required - 1, required - 1, required - 1, required)

        watcher = DepositWatcher(store)
        observed = await watcher.await_funds(session, balances, poll_interval=60)

        assert observed == required
        assert len(balances.calls) == 4
        assert session.stage == Stage.BUILDING_TX
        assert store.load(session.session_id).stage == Stage.BUILDING_TX

    @pytest.mark.trio
    async def test_sleeps_before_each_poll(self, autojump_clock, store, session):
        """One poll interval elapses per balance check."""
        balances = FakeBalanceQuery()
        balances.script(session.funding_address, 0, 0, session.required_amount)

        start = trio.current_time()
        await DepositWatcher(store).await_funds(session, balances, poll_interval=60)
        assert trio.current_time() - start == pytest.approx(180)

    @pytest.mark.trio
    async def test_overfunded(self, autojump_clock, store, session):
        """More than required is fine."""
        balances = FakeBalanceQuery({session.funding_address: session.required_amount * 2})
        observed = await DepositWatcher(store).await_funds(session, balances, poll_interval=1)
        assert observed == session.required_amount * 2

    @pytest.mark.trio
    async def test_transient_errors_retried(self, autojump_clock, store, session):
        """Lookup failures are recorded and polling continues."""
        balances = FakeBalanceQuery()
        balances.script(
            session.funding_address,
            TransientInfrastructureError("blockfrost 502"),
            session.required_amount,
        )

        await DepositWatcher(store).await_funds(session, balances, poll_interval=1)

        assert session.stage == Stage.BUILDING_TX
        assert "blockfrost 502" in store.load(session.session_id).last_error

    @pytest.mark.trio
    async def test_cancellation_observed(self, autojump_clock, store, session):
        """Cancelling the stored record stops the watcher on its next poll."""
        balances = FakeBalanceQuery()
        watcher = DepositWatcher(store)
        errors = []

        async def watch():
            try:
                await watcher.await_funds(session, balances, poll_interval=60)
            except SessionCancelled as e:
                errors.append(e)

        async with trio.open_nursery() as nursery:
            nursery.start_soon(watch)
            await trio.sleep(150)
            stored = store.load(session.session_id)
            stored.stage = Stage.CANCELLED
            store.save(stored)

        assert len(errors) == 1
        assert session.stage == Stage.CANCELLED
        assert store.load(session.session_id).stage == Stage.CANCELLED
        assert len(balances.calls) == 2

    @pytest.mark.trio
    async def test_external_stage_change(self, autojump_clock, store, session):
        """A record moved forward by someone else is not touched."""
        stored = store.load(session.session_id)
        stored.stage = Stage.DISTRIBUTING
        store.save(stored)

        with pytest.raises(ManualInterventionRequired):
            await DepositWatcher(store).await_funds(session, FakeBalanceQuery(), poll_interval=1)
        assert store.load(session.session_id).stage == Stage.DISTRIBUTING

    @pytest.mark.trio
    async def test_wrong_stage(self, store):
        """The watcher only runs for sessions awaiting funds."""
        session = make_session(stage=Stage.BUILDING_TX)
        with pytest.raises(ValueError):
            await DepositWatcher(store).await_funds(session, FakeBalanceQuery())
