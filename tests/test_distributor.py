"""
valleydrop/tests/test_distributor.py

Tests for batched distribution and the fee & drain step.
"""

import pytest

from valleydrop.distributor import BatchSettlementBuilder
from valleydrop.errors import (
    InsufficientForFee,
    ManualInterventionRequired,
    SettlementFailure,
    TransientInfrastructureError,
)
from valleydrop.fees import FeeStep
from valleydrop.session import Stage
from valleydrop.settlement import TxOutput
from valleydrop.store import SessionStore

from fakes import FakeBalanceQuery, FakeSettlementTool, make_session


@pytest.fixture
def store(tmp_path):
    return SessionStore(tmp_path / "sessions")


class TestBatchSettlementBuilder:
    """Test batched distribution."""

    @pytest.mark.trio
    async def test_single_batch(self, store):
        """A small recipient set settles in one transaction."""
        session = make_session(count=3, total_budget=30_000_000, stage=Stage.BUILDING_TX)
        tool = FakeSettlementTool()

        tx_ids = await BatchSettlementBuilder(store).distribute(session, tool, 120)

        assert tx_ids == ["tx000"]
        outputs, change = tool.built[0]
        assert outputs == [TxOutput(f"addr1holder{i:04d}", 10_000_000) for i in range(3)]
        assert change == session.funding_address
        assert tool.signed_with == [session.signing_key_file]

        stored = store.load(session.session_id)
        assert stored.stage == Stage.DISTRIBUTING
        assert stored.distribution_tx_ids == ["tx000"]

    @pytest.mark.trio
    async def test_batches_respect_ceiling(self, store):
        """250 recipients at 120 per tx gives batches of 120, 120 and 10."""
        session = make_session(count=250, total_budget=250_000_000, stage=Stage.BUILDING_TX)
        tool = FakeSettlementTool()

        tx_ids = await BatchSettlementBuilder(store).distribute(session, tool, 120)

        assert tx_ids == ["tx000", "tx001", "tx002"]
        assert [len(outputs) for outputs, _ in tool.built] == [120, 120, 10]
        assert sum(o.amount for outputs, _ in tool.built for o in outputs) <= session.total_budget

    @pytest.mark.trio
    async def test_each_id_persisted_before_next_batch(self, store):
        """The stored record gains one id per submitted batch."""
        session = make_session(count=5, total_budget=5_000_000, stage=Stage.BUILDING_TX)
        seen = []

        class ObservingTool(FakeSettlementTool):
            async def build(self, outputs, change_address):
                stored = store.load(session.session_id)
                seen.append((stored.stage, list(stored.distribution_tx_ids)))
                return await super().build(outputs, change_address)

        await BatchSettlementBuilder(store).distribute(session, ObservingTool(), 2)

        assert seen == [
            (Stage.DISTRIBUTING, []),
            (Stage.DISTRIBUTING, ["tx000"]),
            (Stage.DISTRIBUTING, ["tx000", "tx001"]),
        ]

    @pytest.mark.trio
    async def test_failure_stops_further_batches(self, store):
        """A failed batch records the error and nothing after it runs."""
        session = make_session(count=5, total_budget=5_000_000, stage=Stage.BUILDING_TX)
        tool = FakeSettlementTool(failures={1: "submit"})

        with pytest.raises(SettlementFailure) as exc_info:
            await BatchSettlementBuilder(store).distribute(session, tool, 2)

        assert exc_info.value.step == "submit"
        assert exc_info.value.batch_index == 1
        assert "node said no" in str(exc_info.value)
        assert len(tool.built) == 2
        assert tool.submitted == [0]

        stored = store.load(session.session_id)
        assert stored.stage == Stage.DISTRIBUTING
        assert stored.distribution_tx_ids == ["tx000"]
        assert "batch 2/3" in stored.last_error

    @pytest.mark.trio
    async def test_unexpected_error_wrapped(self, store):
        """Non-settlement errors from the tool are reported as failures."""
        session = make_session(stage=Stage.BUILDING_TX)

        class BrokenTool(FakeSettlementTool):
            async def build(self, outputs, change_address):
                raise RuntimeError("segfault")

        with pytest.raises(SettlementFailure) as exc_info:
            await BatchSettlementBuilder(store).distribute(session, BrokenTool(), 120)
        assert exc_info.value.batch_index == 0
        assert "segfault" in store.load(session.session_id).last_error

    @pytest.mark.trio
    async def test_empty_tx_id_is_failure(self, store):
        """A blank id from the tool is never recorded."""
        session = make_session(stage=Stage.BUILDING_TX)

        class BlankTool(FakeSettlementTool):
            async def fetch_id(self, signed):
                return "  \n"

        with pytest.raises(SettlementFailure):
            await BatchSettlementBuilder(store).distribute(session, BlankTool(), 120)
        assert store.load(session.session_id).distribution_tx_ids == []

    @pytest.mark.trio
    async def test_refuses_with_recorded_ids(self, store):
        """A partially settled session is never distributed again."""
        session = make_session(stage=Stage.DISTRIBUTING, distribution_tx_ids=["tx000"])
        tool = FakeSettlementTool()

        with pytest.raises(ManualInterventionRequired):
            await BatchSettlementBuilder(store).distribute(session, tool, 120)
        assert tool.built == []

    @pytest.mark.trio
    async def test_restart_without_ids(self, store):
        """Distributing with no ids recorded is safe to restart."""
        session = make_session(stage=Stage.DISTRIBUTING)
        tx_ids = await BatchSettlementBuilder(store).distribute(session, FakeSettlementTool(), 120)
        assert tx_ids == ["tx000"]

    @pytest.mark.trio
    async def test_wrong_stage(self, store):
        session = make_session(stage=Stage.AWAITING_FUNDS)
        with pytest.raises(ValueError):
            await BatchSettlementBuilder(store).distribute(session, FakeSettlementTool(), 120)


class TestFeeStep:
    """Test service fee collection and drain."""

    @pytest.fixture
    def session(self, store):
        session = make_session(stage=Stage.DISTRIBUTING, distribution_tx_ids=["tx000"])
        store.save(session)
        return session

    @pytest.mark.trio
    async def test_empty_address_completes(self, store, session):
        """Zero balance means no fee transaction and a completed session."""
        tool = FakeSettlementTool()
        step = FeeStep(store, settle_delay=0)

        result = await step.settle_fee(session, FakeBalanceQuery(), tool, 20_000_000, "addr1valley")

        assert result is None
        assert tool.built == []
        stored = store.load(session.session_id)
        assert stored.stage == Stage.COMPLETED
        assert stored.service_fee_tx_id == ""

    @pytest.mark.trio
    async def test_fee_and_drain(self, autojump_clock, store, session):
        """The fee goes to the treasury and the change to the drain address."""
        balances = FakeBalanceQuery()
        balances.script(session.funding_address, 26_000_000, 0)
        tool = FakeSettlementTool()

        result = await FeeStep(store, settle_delay=60).settle_fee(
            session, balances, tool, 20_000_000, "addr1valley"
        )

        assert result == "tx000"
        outputs, change = tool.built[0]
        assert outputs == [TxOutput("addr1valley", 20_000_000)]
        assert change == session.drain_address
        assert len(tool.built) == 1

        stored = store.load(session.session_id)
        assert stored.stage == Stage.COMPLETED
        assert stored.service_fee_tx_id == "tx000"

    @pytest.mark.trio
    async def test_drain_defaults_to_fee_destination(self, store):
        """Without a drain address the leftovers go with the fee."""
        session = make_session(stage=Stage.PAYING_FEE, drain_address="")
        balances = FakeBalanceQuery()
        balances.script(session.funding_address, 21_000_000, 0)
        tool = FakeSettlementTool()

        await FeeStep(store, settle_delay=0).settle_fee(session, balances, tool, 20_000_000, "addr1valley")
        assert tool.built[0][1] == "addr1valley"

    @pytest.mark.trio
    async def test_leftover_dust_swept(self, store, session):
        """A final sweep runs when something is left after the fee."""
        balances = FakeBalanceQuery()
        balances.script(session.funding_address, 26_000_000, 150_000)
        tool = FakeSettlementTool()

        await FeeStep(store, settle_delay=0).settle_fee(session, balances, tool, 20_000_000, "addr1valley")

        assert len(tool.built) == 2
        assert tool.built[1] == ([], "addr1valley")

    @pytest.mark.trio
    async def test_sweep_failure_not_fatal(self, store, session):
        """A failing final sweep still completes the session."""
        balances = FakeBalanceQuery()
        balances.script(session.funding_address, 26_000_000, 150_000)
        tool = FakeSettlementTool(failures={1: "build"})

        result = await FeeStep(store, settle_delay=0).settle_fee(
            session, balances, tool, 20_000_000, "addr1valley"
        )

        assert result == "tx000"
        assert store.load(session.session_id).stage == Stage.COMPLETED

    @pytest.mark.trio
    async def test_insufficient_for_fee(self, store, session):
        """A balance below the fee stops in paying_fee with the error recorded."""
        balances = FakeBalanceQuery({session.funding_address: 5_000_000})

        with pytest.raises(InsufficientForFee) as exc_info:
            await FeeStep(store, settle_delay=0).settle_fee(
                session, balances, FakeSettlementTool(), 20_000_000, "addr1valley"
            )

        assert exc_info.value.have == 5_000_000
        assert exc_info.value.need == 20_000_000
        stored = store.load(session.session_id)
        assert stored.stage == Stage.PAYING_FEE
        assert "insufficient balance" in stored.last_error

    @pytest.mark.trio
    async def test_fee_tx_failure(self, store, session):
        """A failed fee transaction leaves the session in paying_fee."""
        balances = FakeBalanceQuery({session.funding_address: 26_000_000})
        tool = FakeSettlementTool(failures={0: "sign"})

        with pytest.raises(SettlementFailure):
            await FeeStep(store, settle_delay=0).settle_fee(
                session, balances, tool, 20_000_000, "addr1valley"
            )

        stored = store.load(session.session_id)
        assert stored.stage == Stage.PAYING_FEE
        assert stored.service_fee_tx_id == ""
        assert "service fee failed" in stored.last_error

    @pytest.mark.trio
    async def test_balance_error_propagates(self, store, session):
        """A failing balance lookup is not swallowed."""
        balances = FakeBalanceQuery()
        balances.script(session.funding_address, TransientInfrastructureError("timeout"))

        with pytest.raises(TransientInfrastructureError):
            await FeeStep(store, settle_delay=0).settle_fee(
                session, balances, FakeSettlementTool(), 20_000_000, "addr1valley"
            )
        assert store.load(session.session_id).stage == Stage.PAYING_FEE

    @pytest.mark.trio
    async def test_wrong_stage(self, store):
        session = make_session(stage=Stage.BUILDING_TX)
        with pytest.raises(ValueError):
            await FeeStep(store).settle_fee(
                session, FakeBalanceQuery(), FakeSettlementTool(), 1, "addr1valley"
            )

    @pytest.mark.trio
    async def test_recorded_fee_only_sweeps_dust(self, store):
        """A fee recorded before a restart is not charged again for leftover dust."""
        session = make_session(stage=Stage.PAYING_FEE, distribution_tx_ids=["tx000"],
                               service_fee_tx_id="feepaid")
        store.save(session)
        balances = FakeBalanceQuery({session.funding_address: 150_000})
        tool = FakeSettlementTool()

        result = await FeeStep(store, settle_delay=0).settle_fee(
            session, balances, tool, 20_000_000, "addr1valley"
        )

        assert result == "feepaid"
        assert tool.built == [([], "addr1valley")]
        stored = store.load(session.session_id)
        assert stored.stage == Stage.COMPLETED
        assert stored.service_fee_tx_id == "feepaid"
        assert stored.last_error == ""

    @pytest.mark.trio
    async def test_recorded_fee_never_paid_twice(self, store):
        """A lagging balance after a recorded fee builds no second fee output."""
        session = make_session(stage=Stage.PAYING_FEE, distribution_tx_ids=["tx000"],
                               service_fee_tx_id="feepaid")
        store.save(session)
        balances = FakeBalanceQuery({session.funding_address: 26_000_000})
        tool = FakeSettlementTool()

        result = await FeeStep(store, settle_delay=0).settle_fee(
            session, balances, tool, 20_000_000, "addr1valley"
        )

        assert result == "feepaid"
        assert all(outputs == [] for outputs, _ in tool.built)
        assert store.load(session.session_id).service_fee_tx_id == "feepaid"
        assert store.load(session.session_id).stage == Stage.COMPLETED
