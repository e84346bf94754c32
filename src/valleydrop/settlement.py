"""
valleydrop/settlement.py

Collaborator contracts consumed by the workflow.

    BalanceQuery    - how much does an address hold (smallest unit)
    SettlementTool  - build / sign / submit / fetch_id of a transaction

The workflow never talks to a chain directly; it only sees these two
interfaces. CardanoCli (valleydrop.cardano) and BlockfrostClient
(valleydrop.chain) are the shipped implementations, and tests swap in
in-memory fakes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Sequence


@dataclass(frozen=True)
class TxOutput:
    """A single payment instruction."""
    address: str
    amount: int

    def to_cli_arg(self) -> str:
        return f"{self.address}+{self.amount}"


class BalanceQuery(ABC):
    """Side-effect-free balance lookup."""

    @abstractmethod
    async def query(self, address: str) -> int:
        """
        Return the balance of an address in the smallest unit.

        Raises:
            TransientInfrastructureError: lookup failed; safe to retry
        """
        pass


class SettlementTool(ABC):
    """
    External transaction tool.

    Each call may fail independently and raises SettlementFailure with the
    tool's output attached.
    """

    @abstractmethod
    async def build(self, outputs: Sequence[TxOutput], change_address: str) -> Any:
        """Build an unsigned transaction, returning an opaque artifact."""
        pass

    @abstractmethod
    async def sign(self, artifact: Any, key: str) -> Any:
        """Sign a built artifact with the given key reference."""
        pass

    @abstractmethod
    async def submit(self, signed: Any) -> Any:
        """Broadcast a signed artifact, returning a receipt."""
        pass

    @abstractmethod
    async def fetch_id(self, signed: Any) -> str:
        """Return the transaction id of a signed artifact."""
        pass


async def settle(
    tool: SettlementTool,
    outputs: Sequence[TxOutput],
    change_address: str,
    key: str,
) -> str:
    """Run build -> sign -> submit -> fetch_id for one transaction."""
    artifact = await tool.build(list(outputs), change_address)
    signed = await tool.sign(artifact, key)
    await tool.submit(signed)
    tx_id = await tool.fetch_id(signed)
    return tx_id.strip()


def partition(items: Sequence[Any], size: int) -> List[List[Any]]:
    """Split items into consecutive chunks of at most size entries."""
    if size <= 0:
        raise ValueError(f"Batch size must be positive, got {size}")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]
