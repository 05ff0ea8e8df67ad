from enum import Enum
from typing import Optional


class RejectionReason(str, Enum):
    INVALID_CHOICE = "InvalidChoice"
    STAKE_OUT_OF_RANGE = "StakeOutOfRange"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    PENDING_BET_EXISTS = "PendingBetExists"
    INVALID_AMOUNT = "InvalidAmount"
    USER_REJECTED = "UserRejected"
    LEDGER_UNAVAILABLE = "LedgerUnavailable"


class ExecutionFailure(str, Enum):
    SIGNER_UNAVAILABLE = "SignerUnavailable"
    REJECTED = "Rejected"
    SUBMISSION_FAILED = "SubmissionFailed"
    TIMEOUT = "Timeout"
    REVERTED = "Reverted"


class LedgerErrorCode(str, Enum):
    USER_REJECTED = "USER_REJECTED"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    REVERTED = "REVERTED"
    UNKNOWN_METHOD = "UNKNOWN_METHOD"
    UNAVAILABLE = "UNAVAILABLE"


class DiceBetError(Exception):
    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class BetRejection(DiceBetError):
    """A place-bet attempt that did not (or no longer) hold the pending slot."""

    def __init__(self, reason: RejectionReason, message: str = ""):
        super().__init__(message or reason.value)
        self.reason = reason

    def __repr__(self) -> str:
        return f"{type(self).__name__}(reason={self.reason.value!r}, message={self.message!r})"


class ValidationError(BetRejection):
    """Local precondition failure. Raised before any network access."""


class QuoteError(ValidationError):
    def __init__(self, message: str = ""):
        super().__init__(RejectionReason.INVALID_AMOUNT, message)


class SourceUnavailable(DiceBetError):
    def __init__(self, provider: str, message: str = ""):
        super().__init__(message or f"{provider} unavailable")
        self.provider = provider


class ExecutionError(DiceBetError):
    def __init__(self, kind: ExecutionFailure, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind

    def __repr__(self) -> str:
        return f"ExecutionError(kind={self.kind.value!r}, message={self.message!r})"


class ProtocolViolation(DiceBetError):
    """An inbound ledger event that does not fit the tracked wager."""


class LedgerError(DiceBetError):
    def __init__(self, code: str, message: str = "", status_code: Optional[int] = None):
        super().__init__(message or code)
        self.code = code
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"LedgerError(code={self.code!r}, message={self.message!r}, status_code={self.status_code!r})"
