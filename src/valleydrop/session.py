"""
valleydrop/session.py

Data model for the settlement workflow: Recipient, Stage and the
AirdropSession aggregate that is persisted after every transition.
"""

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from fractions import Fraction
from typing import Any, Dict, List, Optional

from .settlement import TxOutput


# ============================================================================
# STAGE
# ============================================================================

class Stage(Enum):
    """Position of a session in its lifecycle. Persisted by value."""
    AWAITING_FUNDS = "awaiting_funds"
    BUILDING_TX = "building_tx"
    DISTRIBUTING = "distributing"
    PAYING_FEE = "paying_service_fee"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.COMPLETED, Stage.CANCELLED)

    def __str__(self) -> str:
        return self.value


# ============================================================================
# RECIPIENT
# ============================================================================

@dataclass(frozen=True)
class Recipient:
    """A payout target and its share weight (e.g. NFTs held)."""
    address: str
    weight: int

    def to_dict(self) -> dict:
        return {"address": self.address, "weight": self.weight}

    @classmethod
    def from_dict(cls, data: dict) -> "Recipient":
        weight = data.get("weight", data.get("quantity"))
        if not isinstance(data.get("address"), str) or weight is None:
            raise ValueError(f"Malformed recipient record: {data!r}")
        return cls(address=data["address"], weight=int(weight))


@dataclass
class FundingWallet:
    """A single-use deposit address and the key that controls it."""
    address: str
    signing_key_file: str
    verification_key_file: str = ""
    wallet_dir: str = ""


# ============================================================================
# SESSION
# ============================================================================

@dataclass
class AirdropSession:
    """
    One complete run of the settlement workflow.

    Payouts are derived from total_budget / total_weight with floor
    rounding per recipient, so they never sum past the budget.
    """
    session_id: str
    owner_id: str
    funding_address: str
    recipients: List[Recipient]
    total_budget: int
    total_weight: int
    required_amount: int
    created_at: int = field(default_factory=lambda: int(time.time()))

    # configuration
    drain_address: str = ""
    fee_buffer: int = 0
    service_fee: int = 0
    policy_id: str = ""
    wallet_dir: str = ""
    signing_key_file: str = ""
    max_outputs_per_batch: int = 0

    # progress
    stage: Stage = Stage.AWAITING_FUNDS
    distribution_tx_ids: List[str] = field(default_factory=list)
    service_fee_tx_id: str = ""
    last_error: str = ""
    announcement_url: str = ""
    updated_at: int = 0

    @staticmethod
    def make_id(owner_id: str, created_at: Optional[int] = None) -> str:
        created_at = int(time.time()) if created_at is None else created_at
        return f"{owner_id}_{created_at}"

    @property
    def rate(self) -> Fraction:
        """Payout units per weight unit."""
        if self.total_weight <= 0:
            return Fraction(0)
        return Fraction(self.total_budget, self.total_weight)

    def payout_for(self, recipient: Recipient) -> int:
        if self.total_weight <= 0:
            return 0
        return recipient.weight * self.total_budget // self.total_weight

    def outputs(self) -> List[TxOutput]:
        """Payment instructions in recipient order, zero payouts skipped."""
        result = []
        for recipient in self.recipients:
            amount = self.payout_for(recipient)
            if amount > 0:
                result.append(TxOutput(recipient.address, amount))
        return result

    @property
    def total_payout(self) -> int:
        return sum(o.amount for o in self.outputs())

    def batch_count(self, max_outputs: Optional[int] = None) -> int:
        size = max_outputs or self.max_outputs_per_batch
        if not size:
            raise ValueError("max_outputs_per_batch is not set")
        return math.ceil(len(self.outputs()) / size)

    @property
    def has_distribution_ids(self) -> bool:
        return len(self.distribution_tx_ids) > 0

    def record_error(self, message: str) -> None:
        self.last_error = message

    def touch(self) -> None:
        self.updated_at = int(time.time())

    # ------------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "owner_id": self.owner_id,
            "created_at": self.created_at,
            "funding_address": self.funding_address,
            "recipients": [r.to_dict() for r in self.recipients],
            "total_budget": self.total_budget,
            "total_weight": self.total_weight,
            "rate": float(self.rate),
            "required_amount": self.required_amount,
            "drain_address": self.drain_address,
            "fee_buffer": self.fee_buffer,
            "service_fee": self.service_fee,
            "policy_id": self.policy_id,
            "wallet_dir": self.wallet_dir,
            "signing_key_file": self.signing_key_file,
            "max_outputs_per_batch": self.max_outputs_per_batch,
            "stage": self.stage.value,
            "distribution_tx_ids": list(self.distribution_tx_ids),
            "service_fee_tx_id": self.service_fee_tx_id,
            "last_error": self.last_error,
            "announcement_url": self.announcement_url,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AirdropSession":
        """
        Rebuild a session from its persisted form.

        Raises:
            KeyError, ValueError, TypeError: record is not a valid session
        """
        if not isinstance(data, dict):
            raise TypeError(f"Session record must be an object, got {type(data).__name__}")

        tx_ids = data.get("distribution_tx_ids") or []
        if not isinstance(tx_ids, list):
            raise TypeError("distribution_tx_ids must be a list")

        return cls(
            session_id=str(data["session_id"]),
            owner_id=str(data["owner_id"]),
            created_at=int(data.get("created_at", 0)),
            funding_address=str(data["funding_address"]),
            recipients=[Recipient.from_dict(r) for r in data.get("recipients") or []],
            total_budget=int(data["total_budget"]),
            total_weight=int(data["total_weight"]),
            required_amount=int(data["required_amount"]),
            drain_address=data.get("drain_address", ""),
            fee_buffer=int(data.get("fee_buffer", 0)),
            service_fee=int(data.get("service_fee", 0)),
            policy_id=data.get("policy_id", ""),
            wallet_dir=data.get("wallet_dir", ""),
            signing_key_file=data.get("signing_key_file", ""),
            max_outputs_per_batch=int(data.get("max_outputs_per_batch", 0)),
            stage=Stage(data["stage"]),
            distribution_tx_ids=[str(t) for t in tx_ids],
            service_fee_tx_id=data.get("service_fee_tx_id", ""),
            last_error=data.get("last_error", ""),
            announcement_url=data.get("announcement_url", ""),
            updated_at=int(data.get("updated_at", 0)),
        )
