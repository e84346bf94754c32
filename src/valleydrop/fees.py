"""
valleydrop/fees.py

Fee & Drain Step.

After distribution, the funding address pays the flat service fee and
sends everything else to the drain address in one transaction. A final
best-effort sweep picks up any dust left behind.
"""

import logging
from typing import Optional

import trio

from .config import SETTLE_DELAY
from .errors import InsufficientForFee, SettlementFailure
from .session import AirdropSession, Stage
from .settlement import BalanceQuery, SettlementTool, TxOutput, settle
from .store import SessionStore

logger = logging.getLogger("valleydrop.fees")


class FeeStep:
    """Collects the service fee and drains the funding address."""

    def __init__(self, store: SessionStore, settle_delay: float = SETTLE_DELAY):
        self.store = store
        self.settle_delay = settle_delay

    async def settle_fee(
        self,
        session: AirdropSession,
        balance_query: BalanceQuery,
        settlement_tool: SettlementTool,
        fee_amount: int,
        fee_destination: str,
        signing_key: Optional[str] = None,
    ) -> Optional[str]:
        """
        Pay the service fee, drain the remainder, and complete the session.

        Returns:
            Service fee tx id, or None if the address was already empty

        Raises:
            InsufficientForFee: balance is below the fee (terminal)
            SettlementFailure: fee transaction failed
            TransientInfrastructureError: balance query failed
        """
        if session.stage not in (Stage.DISTRIBUTING, Stage.PAYING_FEE):
            raise ValueError(f"Cannot pay fee for session at stage {session.stage}")

        if session.stage != Stage.PAYING_FEE:
            session.stage = Stage.PAYING_FEE
            self.store.save(session)

        key = signing_key or session.signing_key_file
        drain_address = session.drain_address or fee_destination

        if session.service_fee_tx_id:
            # Fee already broadcast before a restart; it is never paid twice
            logger.info(
                f"Session {session.session_id}: service fee already paid in "
                f"{session.service_fee_tx_id}, finishing drain"
            )
            await self._drain_dust(session, balance_query, settlement_tool, fee_destination, key)
            self._complete(session)
            return session.service_fee_tx_id

        balance = await balance_query.query(session.funding_address)
        if balance <= 0:
            logger.info(f"Session {session.session_id}: funding address already empty, no fee tx")
            self._complete(session)
            return None

        if balance < fee_amount:
            error = InsufficientForFee(
                f"insufficient balance for service fee: have {balance}, need {fee_amount}",
                have=balance,
                need=fee_amount,
            )
            session.record_error(f"service fee failed: {error}")
            self.store.save(session)
            raise error

        logger.info(
            f"Session {session.session_id}: paying fee {fee_amount} to {fee_destination}, "
            f"remainder of {balance} to {drain_address}"
        )
        try:
            fee_tx_id = await settle(
                settlement_tool,
                [TxOutput(fee_destination, fee_amount)],
                drain_address,
                key,
            )
        except SettlementFailure as e:
            session.record_error(f"service fee failed: {e}")
            self.store.save(session)
            raise

        session.service_fee_tx_id = fee_tx_id
        self.store.save(session)
        logger.info(f"Session {session.session_id}: service fee tx {fee_tx_id}")

        await self._drain_dust(session, balance_query, settlement_tool, fee_destination, key)

        self._complete(session)
        return fee_tx_id

    async def _drain_dust(
        self,
        session: AirdropSession,
        balance_query: BalanceQuery,
        settlement_tool: SettlementTool,
        destination: str,
        key: str,
    ) -> None:
        """One final sweep. Failures are logged; dust never blocks completion."""
        await trio.sleep(self.settle_delay)
        try:
            left = await balance_query.query(session.funding_address)
        except Exception as e:
            logger.warning(f"Session {session.session_id}: post-fee balance check failed: {e}")
            return

        if left <= 0:
            return

        logger.info(f"Session {session.session_id}: draining {left} dust to {destination}")
        try:
            tx_id = await settle(settlement_tool, [], destination, key)
            logger.info(f"Session {session.session_id}: drain tx {tx_id}")
        except Exception as e:
            logger.warning(f"Session {session.session_id}: final drain failed: {e}")

    def _complete(self, session: AirdropSession) -> None:
        session.stage = Stage.COMPLETED
        session.last_error = ""
        self.store.save(session)
        logger.info(f"Session {session.session_id} completed")
