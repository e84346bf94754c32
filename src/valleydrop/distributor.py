"""
valleydrop/distributor.py

Batch Settlement Builder.

Splits a session's payouts into consecutive batches of at most
max_outputs_per_batch outputs and settles them one at a time:

    build -> sign -> submit -> fetch_id -> append id -> save

The id of every submitted batch is persisted before the next batch starts.
After a crash those ids are the only record of which payouts already went
out, which is why a session in the distributing stage with ids recorded
is never resumed automatically.

Batches are strictly sequential. Each batch spends the change output of
the previous one, so they cannot run in parallel.
"""

import logging
from typing import List, Optional

from .config import MAX_OUTPUTS_PER_TX
from .errors import ManualInterventionRequired, SettlementFailure
from .session import AirdropSession, Stage
from .settlement import SettlementTool, TxOutput, partition, settle
from .store import SessionStore

logger = logging.getLogger("valleydrop.distributor")


class BatchSettlementBuilder:
    """Drives the distribution transactions of a session."""

    def __init__(self, store: SessionStore):
        self.store = store

    def plan(self, session: AirdropSession, max_outputs_per_batch: int) -> List[List[TxOutput]]:
        """Partition the session's payouts into batches."""
        return partition(session.outputs(), max_outputs_per_batch)

    async def distribute(
        self,
        session: AirdropSession,
        settlement_tool: SettlementTool,
        max_outputs_per_batch: int = MAX_OUTPUTS_PER_TX,
        signing_key: Optional[str] = None,
    ) -> List[str]:
        """
        Settle every batch of the session.

        Args:
            session: Session in building_tx (or distributing with no ids)
            settlement_tool: Transaction tool
            max_outputs_per_batch: Protocol output ceiling per transaction
            signing_key: Key reference; defaults to session.signing_key_file

        Returns:
            Transaction ids, one per batch, in submission order

        Raises:
            ManualInterventionRequired: ids already recorded (partial settlement)
            SettlementFailure: a step failed; no further batches attempted
        """
        if session.stage not in (Stage.BUILDING_TX, Stage.DISTRIBUTING):
            raise ValueError(f"Cannot distribute session at stage {session.stage}")
        if session.has_distribution_ids:
            raise ManualInterventionRequired(
                f"Session {session.session_id} already has "
                f"{len(session.distribution_tx_ids)} distribution tx(s) recorded; "
                f"verify on-chain state before continuing"
            )

        key = signing_key or session.signing_key_file
        batches = self.plan(session, max_outputs_per_batch)
        session.max_outputs_per_batch = max_outputs_per_batch

        logger.info(
            f"Distributing session {session.session_id}: "
            f"{sum(len(b) for b in batches)} outputs in {len(batches)} batch(es)"
        )

        # Persisted before anything is broadcast
        session.stage = Stage.DISTRIBUTING
        self.store.save(session)

        for index, batch in enumerate(batches):
            total = sum(o.amount for o in batch)
            logger.info(
                f"Session {session.session_id} batch {index + 1}/{len(batches)}: "
                f"{len(batch)} outputs, {total} total"
            )
            try:
                tx_id = await settle(settlement_tool, batch, session.funding_address, key)
            except SettlementFailure as e:
                e.batch_index = index
                self._fail(session, index, len(batches), e)
                raise
            except Exception as e:
                failure = SettlementFailure(str(e), step="unknown", batch_index=index)
                self._fail(session, index, len(batches), failure)
                raise failure from e

            if not tx_id:
                failure = SettlementFailure("Settlement tool returned an empty tx id",
                                            step="fetch_id", batch_index=index)
                self._fail(session, index, len(batches), failure)
                raise failure

            session.distribution_tx_ids.append(tx_id)
            self.store.save(session)
            logger.info(f"Session {session.session_id} batch {index + 1} submitted: {tx_id}")

        session.last_error = ""
        self.store.save(session)
        return list(session.distribution_tx_ids)

    def _fail(
        self,
        session: AirdropSession,
        index: int,
        batch_total: int,
        error: SettlementFailure,
    ) -> None:
        session.record_error(
            f"distribution failed at batch {index + 1}/{batch_total}: {error}"
        )
        self.store.save(session)
        logger.error(
            f"Session {session.session_id} batch {index + 1} failed at step "
            f"{error.step or 'unknown'}: {error}; "
            f"{len(session.distribution_tx_ids)} batch(es) already submitted"
        )
