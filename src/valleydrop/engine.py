"""
valleydrop/engine.py

AirdropEngine: wires the workflow components together.

    open_session  validate recipients -> temp wallet -> persist (awaiting_funds)
    run           lock -> watcher -> distributor -> fee step -> announce
    resume_all    recovery scan, restart every auto-resumable session
    cancel        move a waiting session to cancelled

Each session runs as its own trio task. The engine owns its lock registry,
so several engines in one process (tests) never interfere. Every decision
re-reads the session store; nothing is cached between calls.

Usage:
    config = AirdropConfig.from_env()
    engine = AirdropEngine(
        config,
        balance_query=BlockfrostClient(config.blockfrost_api_key),
        settlement_tool_factory=lambda s: CardanoCli(s.funding_address, s.wallet_dir),
    )

    async with trio.open_nursery() as nursery:
        engine.resume_all(nursery)
        session, _ = await engine.open_session("user_1", holders, 500_000_000)
        engine.start(nursery, session.session_id)
"""

import logging
import os
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import trio

from .config import AirdropConfig
from .distributor import BatchSettlementBuilder
from .errors import (
    AirdropError,
    SessionBusy,
    SessionCancelled,
    ValidationError,
)
from .fees import FeeStep
from .locks import SessionLockManager
from .notify import (
    NotificationSink,
    completion_receipt,
    deposit_instructions,
    failure_message,
    public_summary,
    send_owner,
    send_public,
)
from .recipients import RawEntry, RecipientSet, build, write_manifest
from .recovery import RecoveryAnalysis, RecoveryAnalyzer, classify
from .session import AirdropSession, FundingWallet, Stage
from .settlement import BalanceQuery, SettlementTool
from .store import SessionStore
from .watcher import DepositWatcher

logger = logging.getLogger("valleydrop.engine")

SettlementToolFactory = Callable[[AirdropSession], SettlementTool]
WalletFactory = Callable[[str, str], Awaitable[FundingWallet]]


def compute_required_amount(total_budget: int, fee_buffer: int, service_fee: int) -> int:
    """Deposit needed: the budget, the network fee buffer and the service fee."""
    return total_budget + fee_buffer + service_fee


class AirdropEngine:
    """Runs settlement sessions end to end."""

    def __init__(
        self,
        config: AirdropConfig,
        balance_query: BalanceQuery,
        settlement_tool_factory: SettlementToolFactory,
        store: Optional[SessionStore] = None,
        notifier: Optional[NotificationSink] = None,
        wallet_factory: Optional[WalletFactory] = None,
    ):
        self.config = config
        self.balance_query = balance_query
        self.settlement_tool_factory = settlement_tool_factory
        self.store = store or SessionStore(config.sessions_dir)
        self.notifier = notifier
        self.wallet_factory = wallet_factory

        self.locks = SessionLockManager()
        self.watcher = DepositWatcher(self.store)
        self.distributor = BatchSettlementBuilder(self.store)
        self.fee_step = FeeStep(self.store, settle_delay=config.settle_delay)
        self.analyzer = RecoveryAnalyzer(self.store)

    # ========================================================================
    # SESSION CREATION
    # ========================================================================

    def prepare(self, raw_entries: Iterable[RawEntry], total_budget: int) -> RecipientSet:
        """Validate recipients. Nothing is persisted."""
        return build(
            raw_entries,
            total_budget,
            min_payout=self.config.min_payout,
            address_prefix=self.config.address_prefix,
        )

    def create_session(
        self,
        owner_id: str,
        recipient_set: RecipientSet,
        wallet: FundingWallet,
        policy_id: str = "",
        drain_address: str = "",
        created_at: Optional[int] = None,
    ) -> AirdropSession:
        """Persist a new session in awaiting_funds."""
        created_at = int(time.time()) if created_at is None else created_at
        session_id = AirdropSession.make_id(owner_id, created_at)
        if self.store.exists(session_id):
            raise ValidationError(f"Session {session_id} already exists")

        session = AirdropSession(
            session_id=session_id,
            owner_id=owner_id,
            created_at=created_at,
            funding_address=wallet.address,
            recipients=list(recipient_set.recipients),
            total_budget=recipient_set.total_budget,
            total_weight=recipient_set.total_weight,
            required_amount=compute_required_amount(
                recipient_set.total_budget, self.config.fee_buffer, self.config.service_fee
            ),
            drain_address=drain_address or self.config.require_treasury(),
            fee_buffer=self.config.fee_buffer,
            service_fee=self.config.service_fee,
            policy_id=policy_id,
            wallet_dir=wallet.wallet_dir,
            signing_key_file=wallet.signing_key_file,
            max_outputs_per_batch=self.config.max_outputs_per_tx,
            stage=Stage.AWAITING_FUNDS,
        )
        self.store.save(session)
        logger.info(
            f"Created session {session_id} for {owner_id}: {len(session.recipients)} recipients, "
            f"deposit {session.required_amount} to {session.funding_address}"
        )
        return session

    async def open_session(
        self,
        owner_id: str,
        raw_entries: Iterable[RawEntry],
        total_budget: int,
        policy_id: str = "",
        drain_address: str = "",
    ) -> Tuple[AirdropSession, RecipientSet]:
        """
        Validate, create the deposit wallet, persist and send deposit instructions.

        Raises:
            ValidationError: bad input or session id collision; nothing was created
        """
        if self.wallet_factory is None:
            raise AirdropError("No wallet factory configured")

        recipient_set = self.prepare(raw_entries, total_budget)
        self.config.require_treasury()

        created_at = int(time.time())
        session_id = AirdropSession.make_id(owner_id, created_at)
        label = f"airdrop_{owner_id}_{created_at}"
        wallet_dir = os.path.join(self.config.wallets_dir, session_id)
        # Key generation would overwrite the signing key of a live session
        if self.store.exists(session_id) or os.path.exists(wallet_dir):
            raise ValidationError(f"Session {session_id} already exists; retry in a moment")
        wallet = await self.wallet_factory(wallet_dir, label)

        session = self.create_session(
            owner_id, recipient_set, wallet,
            policy_id=policy_id, drain_address=drain_address, created_at=created_at,
        )
        if wallet.wallet_dir:
            write_manifest(os.path.join(wallet.wallet_dir, "holders.json"), session.recipients)

        await send_owner(
            self.notifier,
            owner_id,
            deposit_instructions(session, recipient_set.invalid_dropped, recipient_set.dust_dropped),
        )
        return session, recipient_set

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def start(self, nursery: trio.Nursery, session_id: str) -> None:
        """Run a session as its own task in nursery."""
        nursery.start_soon(self._run_guarded, session_id)

    async def _run_guarded(self, session_id: str) -> None:
        """Task body: a failing session never takes down its siblings."""
        try:
            await self.run(session_id)
        except AirdropError as e:
            logger.error(f"Session {session_id} stopped: {e}")
        except Exception:
            logger.exception(f"Session {session_id} crashed")

    async def run(self, session_id: str) -> AirdropSession:
        """
        Drive a session from its persisted stage to completion.

        Returns:
            The session as last persisted

        Raises:
            AirdropError: the session stopped and needs attention
        """
        async with self.locks.hold(session_id):
            session = self.store.load(session_id)
            logger.info(f"Running session {session_id} from stage {session.stage}")
            try:
                await self._drive(session)
            except SessionCancelled:
                logger.info(f"Session {session_id} cancelled while waiting for funds")
                await send_owner(self.notifier, session.owner_id, f"Airdrop {session_id} was cancelled.")
                return self.store.load(session_id)
            except AirdropError as e:
                self._record_failure(session_id, session.stage, e)
                await send_owner(self.notifier, session.owner_id, failure_message(session, e))
                raise
            return session

    async def _drive(self, session: AirdropSession) -> None:
        if session.stage == Stage.CANCELLED:
            logger.info(f"Session {session.session_id} is cancelled; nothing to do")
            return

        if session.stage == Stage.AWAITING_FUNDS:
            await self.watcher.await_funds(session, self.balance_query, self.config.poll_interval)

        tool: Optional[SettlementTool] = None
        if session.stage in (Stage.BUILDING_TX, Stage.DISTRIBUTING):
            # Distributing with ids recorded is refused inside distribute()
            tool = self.settlement_tool_factory(session)
            await self.distributor.distribute(session, tool, self.config.max_outputs_per_tx)

        if session.stage in (Stage.DISTRIBUTING, Stage.PAYING_FEE):
            tool = tool or self.settlement_tool_factory(session)
            await self.fee_step.settle_fee(
                session,
                self.balance_query,
                tool,
                session.service_fee,
                self.config.require_treasury(),
            )

        if session.stage == Stage.COMPLETED:
            await self._announce(session)

    async def _announce(self, session: AirdropSession) -> None:
        await send_owner(self.notifier, session.owner_id, completion_receipt(session))
        if session.announcement_url:
            return
        url = await send_public(self.notifier, self.config.public_channel_id, public_summary(session))
        if url:
            session.announcement_url = url
            self.store.save(session)

    def _record_failure(self, session_id: str, stage: Stage, error: Exception) -> None:
        """Write the error into the stored record unless a step already did."""
        try:
            current = self.store.load(session_id)
        except AirdropError:
            return
        if str(error) in current.last_error:
            return
        current.last_error = f"{stage}: {error}"
        self.store.save(current)

    # ========================================================================
    # OPERATOR ACTIONS
    # ========================================================================

    def resume_all(self, nursery: Optional[trio.Nursery] = None) -> List[RecoveryAnalysis]:
        """
        Scan the store and restart every session that is safe to resume.

        Sessions needing review are only reported. Completed sessions are
        not re-announced.
        """
        results = self.analyzer.analyze_all()
        for analysis in results:
            if not (analysis.recoverable and analysis.action.needs_execution):
                continue
            if self.locks.locked(analysis.session_id):
                continue
            logger.info(f"Resuming session {analysis.session_id}: {analysis.action.value}")
            if nursery is not None:
                self.start(nursery, analysis.session_id)
        return results

    def analyze(self, session_id: str) -> RecoveryAnalysis:
        return self.analyzer.analyze(session_id)

    def cancel(self, session_id: str, reason: str = "") -> AirdropSession:
        """
        Cancel a session.

        A session waiting for funds can be cancelled while its watcher runs;
        the watcher exits on its next poll. Past that point an active executor
        cannot be interrupted.

        Raises:
            SessionBusy: an executor is building, distributing or paying the fee
            AirdropError: the session is already completed or cancelled
        """
        session = self.store.load(session_id)
        if session.stage.is_terminal:
            raise AirdropError(f"Session {session_id} is already {session.stage}")
        if session.stage != Stage.AWAITING_FUNDS and self.locks.locked(session_id):
            raise SessionBusy(f"Session {session_id} is executing stage {session.stage}")

        previous = session.stage
        session.stage = Stage.CANCELLED
        session.last_error = f"cancelled at {previous}" + (f": {reason}" if reason else "")
        self.store.save(session)
        logger.info(f"Cancelled session {session_id} (was {previous})")
        return session

    def status(self, session_id: str) -> Dict[str, Any]:
        session = self.store.load(session_id)
        analysis = classify(session)
        return {
            "session": session.to_dict(),
            "running": self.locks.locked(session_id),
            "recovery": analysis.to_dict(),
        }
