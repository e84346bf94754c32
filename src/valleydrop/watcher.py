"""
valleydrop/watcher.py

Deposit Watcher.

Polls the funding address until it holds the session's required amount.
The wait is unbounded on purpose: funding is a manual user action, and the
only way out other than funding is an explicit cancellation, which the
watcher observes by re-reading the persisted stage on every poll.
"""

import logging

import trio

from .config import DEPOSIT_POLL_INTERVAL
from .errors import SessionCancelled, TransientInfrastructureError, ManualInterventionRequired
from .session import AirdropSession, Stage
from .settlement import BalanceQuery
from .store import SessionStore

logger = logging.getLogger("valleydrop.watcher")


class DepositWatcher:
    """Waits for a session's funding deposit."""

    def __init__(self, store: SessionStore):
        self.store = store

    def _check_persisted_stage(self, session: AirdropSession) -> None:
        """
        Raise if the stored record moved away from awaiting_funds.

        Synchronous, so a following save happens without a checkpoint in
        between and cannot overwrite a cancellation made by another task.
        """
        current = self.store.load(session.session_id)
        if current.stage == Stage.CANCELLED:
            session.stage = Stage.CANCELLED
            raise SessionCancelled(session.session_id)
        if current.stage != Stage.AWAITING_FUNDS:
            raise ManualInterventionRequired(
                f"Session {session.session_id} left awaiting_funds externally "
                f"(now {current.stage})"
            )

    async def await_funds(
        self,
        session: AirdropSession,
        balance_query: BalanceQuery,
        poll_interval: float = DEPOSIT_POLL_INTERVAL,
    ) -> int:
        """
        Block until balance >= session.required_amount.

        Returns:
            The balance observed on the satisfying poll

        Raises:
            SessionCancelled: the session was cancelled while waiting
        """
        if session.stage != Stage.AWAITING_FUNDS:
            raise ValueError(
                f"Deposit watcher needs stage {Stage.AWAITING_FUNDS}, got {session.stage}"
            )

        address = session.funding_address
        required = session.required_amount
        logger.info(
            f"Watching {address} for session {session.session_id}: "
            f"need {required}, polling every {poll_interval}s"
        )

        polls = 0
        while True:
            await trio.sleep(poll_interval)
            polls += 1
            self._check_persisted_stage(session)

            try:
                balance = await balance_query.query(address)
            except TransientInfrastructureError as e:
                logger.warning(f"Balance check failed for session {session.session_id}: {e}")
                self._check_persisted_stage(session)
                session.record_error(f"balance check: {e}")
                self.store.save(session)
                continue

            if balance >= required:
                break
            logger.debug(
                f"Session {session.session_id} poll {polls}: have {balance}, need {required}"
            )

        self._check_persisted_stage(session)
        session.stage = Stage.BUILDING_TX
        self.store.save(session)
        logger.info(
            f"Deposit detected for session {session.session_id}: {balance} after {polls} polls"
        )
        return balance
