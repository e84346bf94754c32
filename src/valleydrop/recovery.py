"""
valleydrop/recovery.py

Crash Recovery Analyzer.

Classifies a persisted session after a restart:

    Stage            ids    Recoverable  Risk      Action
    awaiting_funds   -      yes          low       resume waiting
    building_tx      -      yes          medium    rebuild from scratch
    distributing     none   yes          medium    restart distribution
    distributing     >= 1   NO           high      manual verification
    paying_fee       -      yes          low       resume fee + drain
    completed        -      yes          none      notify only
    cancelled        -      no           variable  investigate cancellation
    (corrupt)        -      no           unknown   manual investigation

The only discriminator between automatic resumption and human review is
whether any settlement batch was recorded while distributing.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import CorruptStateError, SessionNotFound
from .session import AirdropSession, Stage
from .store import SessionStore

logger = logging.getLogger("valleydrop.recovery")


class RecoveryAction(Enum):
    RESUME_WAITING = "resume_waiting_for_funds"
    REBUILD_FROM_SCRATCH = "rebuild_from_scratch"
    RESTART_DISTRIBUTION = "restart_distribution"
    MANUAL_VERIFICATION = "manual_verification_required"
    RESUME_FEE_PAYMENT = "resume_fee_payment"
    NOTIFY_ONLY = "notify_only"
    INVESTIGATE_CANCELLATION = "investigate_cancellation"
    INVESTIGATE_CORRUPTION = "investigate_corruption"
    INVESTIGATE_MISSING = "investigate_missing_record"

    @property
    def needs_execution(self) -> bool:
        """True when resuming means re-running the workflow."""
        return self in (
            RecoveryAction.RESUME_WAITING,
            RecoveryAction.REBUILD_FROM_SCRATCH,
            RecoveryAction.RESTART_DISTRIBUTION,
            RecoveryAction.RESUME_FEE_PAYMENT,
        )


class RiskLevel(Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VARIABLE = "variable"
    UNKNOWN = "unknown"


@dataclass
class SessionSummary:
    """Facts an operator needs for a recovery decision."""
    session_id: str
    owner_id: str
    stage: str
    funding_address: str
    required_amount: int
    recipients: int
    tx_ids: List[str] = field(default_factory=list)
    service_fee_tx_id: str = ""
    last_error: str = ""

    @classmethod
    def of(cls, session: AirdropSession) -> "SessionSummary":
        return cls(
            session_id=session.session_id,
            owner_id=session.owner_id,
            stage=session.stage.value,
            funding_address=session.funding_address,
            required_amount=session.required_amount,
            recipients=len(session.recipients),
            tx_ids=list(session.distribution_tx_ids),
            service_fee_tx_id=session.service_fee_tx_id,
            last_error=session.last_error,
        )


@dataclass
class RecoveryAnalysis:
    session_id: str
    recoverable: bool
    action: RecoveryAction
    risk_level: RiskLevel
    reason: str
    summary: Optional[SessionSummary] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "recoverable": self.recoverable,
            "action": self.action.value,
            "risk_level": self.risk_level.value,
            "reason": self.reason,
            "summary": self.summary.__dict__ if self.summary else None,
        }


def classify(session: AirdropSession) -> RecoveryAnalysis:
    """Apply the stage table to a loaded session."""
    summary = SessionSummary.of(session)
    sid = session.session_id

    def result(recoverable: bool, action: RecoveryAction, risk: RiskLevel, reason: str):
        return RecoveryAnalysis(sid, recoverable, action, risk, reason, summary)

    stage = session.stage
    if stage == Stage.AWAITING_FUNDS:
        return result(True, RecoveryAction.RESUME_WAITING, RiskLevel.LOW,
                      "No funds committed; safe to resume waiting for the deposit")
    if stage == Stage.BUILDING_TX:
        return result(True, RecoveryAction.REBUILD_FROM_SCRATCH, RiskLevel.MEDIUM,
                      "Funds deposited but no transaction broadcast; safe to rebuild from scratch")
    if stage == Stage.DISTRIBUTING:
        if session.has_distribution_ids:
            return result(
                False, RecoveryAction.MANUAL_VERIFICATION, RiskLevel.HIGH,
                f"Partial settlement: {len(session.distribution_tx_ids)} batch(es) submitted; "
                f"some recipients may already be paid. Verify on-chain state before continuing",
            )
        return result(True, RecoveryAction.RESTART_DISTRIBUTION, RiskLevel.MEDIUM,
                      "Distribution started but no batch succeeded; safe to restart distribution")
    if stage == Stage.PAYING_FEE:
        return result(True, RecoveryAction.RESUME_FEE_PAYMENT, RiskLevel.LOW,
                      "Distribution complete; only service fee and drain remain")
    if stage == Stage.COMPLETED:
        return result(True, RecoveryAction.NOTIFY_ONLY, RiskLevel.NONE,
                      "Airdrop already complete; at most resend the notification")
    return result(False, RecoveryAction.INVESTIGATE_CANCELLATION, RiskLevel.VARIABLE,
                  "Airdrop was cancelled; investigate the reason before any action")


class RecoveryAnalyzer:
    """
    Runs the stage table against persisted sessions.

    Read-only: analyzing never modifies the store, so repeated calls on an
    unchanged record give the same answer.
    """

    def __init__(self, store: SessionStore):
        self.store = store

    def analyze(self, session_id: str) -> RecoveryAnalysis:
        try:
            session = self.store.load(session_id)
        except CorruptStateError as e:
            return RecoveryAnalysis(
                session_id, False, RecoveryAction.INVESTIGATE_CORRUPTION, RiskLevel.UNKNOWN,
                f"Session unreadable; manual investigation required ({e})",
            )
        except SessionNotFound:
            return RecoveryAnalysis(
                session_id, False, RecoveryAction.INVESTIGATE_MISSING, RiskLevel.UNKNOWN,
                "Session record missing; manual investigation required",
            )
        return classify(session)

    def analyze_all(self) -> List[RecoveryAnalysis]:
        results = [self.analyze(sid) for sid in self.store.list_ids()]
        manual = [r for r in results if not r.recoverable]
        logger.info(
            f"Recovery scan: {len(results)} session(s), "
            f"{len(results) - len(manual)} recoverable, {len(manual)} need review"
        )
        for r in manual:
            logger.warning(f"Session {r.session_id} needs review ({r.risk_level.value}): {r.reason}")
        return results
