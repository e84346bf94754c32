"""
valleydrop/errors.py

Exception hierarchy for the airdrop settlement workflow.

    AirdropError
    ├── ValidationError
    │   └── NoEligibleRecipients
    ├── ConfigurationError
    ├── TransientInfrastructureError
    ├── InsufficientFundsError
    │   └── InsufficientForFee
    ├── SettlementFailure
    ├── CorruptStateError
    ├── SessionNotFound
    ├── SessionCancelled
    ├── SessionBusy
    └── ManualInterventionRequired

Only TransientInfrastructureError is retried in place (by the deposit
watcher). Everything else stops forward progress for the session.
"""

from typing import Optional


class AirdropError(Exception):
    """Base class for all workflow errors."""
    pass


class ValidationError(AirdropError):
    """Bad recipient input. Raised before a session is ever persisted."""
    pass


class NoEligibleRecipients(ValidationError):
    """Nothing left to pay after address/weight and dust filtering."""

    def __init__(self, message: str, invalid_dropped: int = 0, dust_dropped: int = 0):
        super().__init__(message)
        self.invalid_dropped = invalid_dropped
        self.dust_dropped = dust_dropped


class ConfigurationError(AirdropError):
    """A required setting (env var, treasury address, ...) is missing."""
    pass


class TransientInfrastructureError(AirdropError):
    """Balance query or network blip. Safe to retry."""
    pass


class InsufficientFundsError(AirdropError):
    """Deposit or fee shortfall. Requires user action."""

    def __init__(self, message: str, have: int = 0, need: int = 0):
        super().__init__(message)
        self.have = have
        self.need = need


class InsufficientForFee(InsufficientFundsError):
    """Post-distribution balance cannot cover the flat service fee."""
    pass


class SettlementFailure(AirdropError):
    """
    A build/sign/submit/id step of the settlement tool failed.

    Carries the tool output verbatim for operator diagnosis.
    """

    def __init__(
        self,
        message: str,
        step: str = "",
        stdout: str = "",
        stderr: str = "",
        batch_index: Optional[int] = None,
    ):
        super().__init__(message)
        self.step = step
        self.stdout = stdout
        self.stderr = stderr
        self.batch_index = batch_index

    def __str__(self) -> str:
        text = super().__str__()
        if self.stderr:
            text = f"{text} ({self.stderr.strip()})"
        return text


class CorruptStateError(AirdropError):
    """A persisted session record could not be parsed."""

    def __init__(self, message: str, session_id: str = ""):
        super().__init__(message)
        self.session_id = session_id


class SessionNotFound(AirdropError):
    """No persisted record for the requested session id."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionCancelled(AirdropError):
    """The session was moved to the cancelled stage while waiting."""

    def __init__(self, session_id: str):
        super().__init__(f"Session cancelled: {session_id}")
        self.session_id = session_id


class SessionBusy(AirdropError):
    """An executor is past the deposit wait and cannot be interrupted."""
    pass


class ManualInterventionRequired(AirdropError):
    """Automatic progress would risk paying recipients twice."""
    pass
