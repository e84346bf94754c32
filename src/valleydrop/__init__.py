"""
valleydrop - Durable airdrop settlement workflow

Takes (address, weight) pairs and a total budget, waits for a deposit to a
single-use funding address, pays every recipient in batched transactions,
collects a flat service fee and drains the leftovers. Every stage is
persisted, so a restarted process knows exactly what is safe to resume.

Built on trio with:
- JSON session records written atomically (temp file + rename)
- Blockfrost for balances and policy holder lookups
- cardano-cli (subprocess) for building, signing and submitting
- A crash recovery analyzer that refuses to auto-resume partial payouts

Usage:
    from valleydrop import AirdropConfig, AirdropEngine, BlockfrostClient, CardanoCli

    config = AirdropConfig.from_env()
    engine = AirdropEngine(
        config,
        balance_query=BlockfrostClient(config.blockfrost_api_key),
        settlement_tool_factory=lambda s: CardanoCli(s.funding_address, s.wallet_dir),
    )

    async with trio.open_nursery() as nursery:
        engine.resume_all(nursery)
"""

from .config import AirdropConfig
from .session import AirdropSession, Recipient, Stage, FundingWallet
from .settlement import BalanceQuery, SettlementTool, TxOutput
from .recipients import RecipientSet, build as build_recipients
from .store import SessionStore
from .locks import SessionLockManager
from .watcher import DepositWatcher
from .distributor import BatchSettlementBuilder
from .fees import FeeStep
from .recovery import RecoveryAnalyzer, RecoveryAnalysis, RecoveryAction, RiskLevel
from .chain import BlockfrostClient
from .cardano import CardanoCli
from .notify import NotificationSink, LoggingNotificationSink
from .engine import AirdropEngine
from .errors import (
    AirdropError,
    ValidationError,
    NoEligibleRecipients,
    ConfigurationError,
    TransientInfrastructureError,
    InsufficientFundsError,
    InsufficientForFee,
    SettlementFailure,
    CorruptStateError,
    SessionNotFound,
    SessionCancelled,
    SessionBusy,
    ManualInterventionRequired,
)

__version__ = "0.1.0"

__all__ = [
    "AirdropConfig",
    "AirdropSession",
    "Recipient",
    "Stage",
    "FundingWallet",
    "BalanceQuery",
    "SettlementTool",
    "TxOutput",
    "RecipientSet",
    "build_recipients",
    "SessionStore",
    "SessionLockManager",
    "DepositWatcher",
    "BatchSettlementBuilder",
    "FeeStep",
    "RecoveryAnalyzer",
    "RecoveryAnalysis",
    "RecoveryAction",
    "RiskLevel",
    "BlockfrostClient",
    "CardanoCli",
    "NotificationSink",
    "LoggingNotificationSink",
    "AirdropEngine",
    "AirdropError",
    "ValidationError",
    "NoEligibleRecipients",
    "ConfigurationError",
    "TransientInfrastructureError",
    "InsufficientFundsError",
    "InsufficientForFee",
    "SettlementFailure",
    "CorruptStateError",
    "SessionNotFound",
    "SessionCancelled",
    "SessionBusy",
    "ManualInterventionRequired",
]
