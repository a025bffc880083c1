"""
Error Classification

Defines the error taxonomy of the transaction lifecycle.
Errors are classified as recoverable (handled locally, retried or requeued)
or unrecoverable (surfaced to the caller with enough detail to act on).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from ..execution.models import BlockReference


class ErrorCategory(str, Enum):
    """Categories of errors for recovery decisions."""

    NETWORK = "network"                       # Transport or node errors
    ESTIMATION = "estimation"                 # Simulation reverted before submission
    NONCE = "nonce"                           # Nonce collided with chain state
    UNDERPRICED = "underpriced"               # Gas price below node/replacement floor
    INSUFFICIENT_FUNDS = "insufficient_funds"
    SUBMISSION = "submission"                 # Unclassified broadcast rejection
    EXHAUSTED = "exhausted"                   # Retry policy bound reached
    TIMEOUT = "timeout"                       # No receipt within policy timeout
    REORG = "reorg"                           # Inclusion block displaced
    TRANSACTION_REVERTED = "transaction_reverted"
    VERIFICATION = "verification"             # Caller-declared checks failed
    STATE = "state"                           # Lifecycle state machine misuse
    CANCELLED = "cancelled"                   # Local watch cancelled
    UNKNOWN = "unknown"


class SubmissionErrorKind(str, Enum):
    """How the network rejected a broadcast."""

    NONCE_TOO_LOW = "nonce_too_low"
    UNDERPRICED = "underpriced"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    UNKNOWN = "unknown"


class VerificationFailureKind(str, Enum):
    MISSING_EVENT = "missing_event"
    STATE_MISMATCH = "state_mismatch"


@dataclass
class ErrorContext:
    """Additional context about an error."""

    category: ErrorCategory = ErrorCategory.UNKNOWN
    recoverable: bool = True
    suggested_action: Optional[str] = None
    tx_hash: Optional[str] = None
    block: Optional["BlockReference"] = None
    details: Dict[str, Any] = field(default_factory=dict)


class RecoverableError(Exception):
    """
    Base class for conditions the engine handles locally.

    These errors are transient or have a defined remediation:
    - Network issues
    - Nonce refresh / gas price bump
    - Confirmation timeouts (stuck handling)
    - Reorgs (requeue)
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        context: Optional[ErrorContext] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.context = context or ErrorContext(category=category, recoverable=True)


class UnrecoverableError(Exception):
    """
    Base class for outcomes that are always surfaced to the caller.

    These errors are never retried automatically:
    - Reverted simulation or execution
    - Insufficient funds
    - Exhausted retry budget
    - Failed verification
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        context: Optional[ErrorContext] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.context = context or ErrorContext(category=category, recoverable=False)


class RpcError(RecoverableError):
    """The ledger node or the transport failed a request."""

    REVERT_CODES = {3}

    def __init__(
        self,
        message: str = "RPC error",
        code: Optional[int] = None,
        data: Any = None,
        method: Optional[str] = None,
    ):
        super().__init__(
            message,
            category=ErrorCategory.NETWORK,
            context=ErrorContext(
                category=ErrorCategory.NETWORK,
                recoverable=True,
                suggested_action="Retry on the next poll cycle",
                details={"code": code, "data": data, "method": method},
            ),
        )
        self.code = code
        self.data = data
        self.method = method

    @property
    def is_revert(self) -> bool:
        if self.code in self.REVERT_CODES:
            return True
        return "revert" in self.message.lower()


class EstimationError(UnrecoverableError):
    """Gas estimation simulated a revert; the call would fail on-chain."""

    def __init__(self, message: str = "Gas estimation reverted", reason: Optional[str] = None):
        super().__init__(
            message,
            category=ErrorCategory.ESTIMATION,
            context=ErrorContext(
                category=ErrorCategory.ESTIMATION,
                recoverable=False,
                suggested_action="Fix the call inputs; do not resubmit unchanged",
                details={"revert_reason": reason} if reason else {},
            ),
        )
        self.reason = reason


class SubmissionError(Exception):
    """The network refused a signed transaction."""

    kind: SubmissionErrorKind = SubmissionErrorKind.UNKNOWN

    def __init__(self, message: str, nonce: Optional[int] = None, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.nonce = nonce
        self.tx_hash = tx_hash


class NonceTooLow(SubmissionError, RecoverableError):
    """The nonce is already used on-chain; refresh it and rebuild."""

    kind = SubmissionErrorKind.NONCE_TOO_LOW

    def __init__(self, message: str = "Nonce too low", nonce: Optional[int] = None, tx_hash: Optional[str] = None):
        RecoverableError.__init__(
            self,
            message,
            category=ErrorCategory.NONCE,
            context=ErrorContext(
                category=ErrorCategory.NONCE,
                recoverable=True,
                tx_hash=tx_hash,
                suggested_action="Refresh nonce from chain and rebuild",
                details={"nonce": nonce},
            ),
        )
        self.nonce = nonce
        self.tx_hash = tx_hash


class Underpriced(SubmissionError, RecoverableError):
    """Gas price too low for the node or for replacing the pending attempt."""

    kind = SubmissionErrorKind.UNDERPRICED

    def __init__(self, message: str = "Transaction underpriced", nonce: Optional[int] = None, tx_hash: Optional[str] = None):
        RecoverableError.__init__(
            self,
            message,
            category=ErrorCategory.UNDERPRICED,
            context=ErrorContext(
                category=ErrorCategory.UNDERPRICED,
                recoverable=True,
                tx_hash=tx_hash,
                suggested_action="Bump gas price and resubmit at the same nonce",
                details={"nonce": nonce},
            ),
        )
        self.nonce = nonce
        self.tx_hash = tx_hash


class InsufficientFunds(SubmissionError, UnrecoverableError):
    """Account cannot cover value plus gas."""

    kind = SubmissionErrorKind.INSUFFICIENT_FUNDS

    def __init__(self, message: str = "Insufficient funds", nonce: Optional[int] = None, tx_hash: Optional[str] = None):
        UnrecoverableError.__init__(
            self,
            message,
            category=ErrorCategory.INSUFFICIENT_FUNDS,
            context=ErrorContext(
                category=ErrorCategory.INSUFFICIENT_FUNDS,
                recoverable=False,
                tx_hash=tx_hash,
                suggested_action="Add funds to the account or reduce value",
                details={"nonce": nonce},
            ),
        )
        self.nonce = nonce
        self.tx_hash = tx_hash


class UnknownSubmissionError(SubmissionError, UnrecoverableError):
    """Unclassified rejection; surfaced without automatic retry."""

    kind = SubmissionErrorKind.UNKNOWN

    def __init__(self, message: str = "Submission rejected", nonce: Optional[int] = None, tx_hash: Optional[str] = None):
        UnrecoverableError.__init__(
            self,
            message,
            category=ErrorCategory.SUBMISSION,
            context=ErrorContext(
                category=ErrorCategory.SUBMISSION,
                recoverable=False,
                tx_hash=tx_hash,
                suggested_action="Inspect the node's rejection message",
                details={"nonce": nonce},
            ),
        )
        self.nonce = nonce
        self.tx_hash = tx_hash


class SubmissionExhausted(UnrecoverableError):
    """Retry policy bound reached for a nonce."""

    def __init__(
        self,
        message: str = "Submission attempts exhausted",
        attempts: int = 0,
        nonce: Optional[int] = None,
        last_error: Optional[Exception] = None,
    ):
        super().__init__(
            message,
            category=ErrorCategory.EXHAUSTED,
            context=ErrorContext(
                category=ErrorCategory.EXHAUSTED,
                recoverable=False,
                suggested_action="Nonce released; start a fresh manual attempt",
                details={
                    "attempts": attempts,
                    "nonce": nonce,
                    "last_error": str(last_error) if last_error else None,
                },
            ),
        )
        self.attempts = attempts
        self.nonce = nonce
        self.last_error = last_error


class ConfirmationTimeout(RecoverableError):
    """No receipt within the confirmation policy timeout."""

    def __init__(
        self,
        message: str = "No receipt within timeout",
        tx_hash: Optional[str] = None,
        waited_seconds: Optional[float] = None,
    ):
        super().__init__(
            message,
            category=ErrorCategory.TIMEOUT,
            context=ErrorContext(
                category=ErrorCategory.TIMEOUT,
                recoverable=True,
                tx_hash=tx_hash,
                suggested_action="Accelerate or cancel the stalled nonce",
                details={"waited_seconds": waited_seconds},
            ),
        )
        self.tx_hash = tx_hash
        self.waited_seconds = waited_seconds


class ReorgDetected(RecoverableError):
    """The block that included a transaction is no longer canonical."""

    def __init__(
        self,
        message: str = "Inclusion block displaced",
        tx_hash: Optional[str] = None,
        stale_block: Optional["BlockReference"] = None,
        current_hash: Optional[str] = None,
    ):
        super().__init__(
            message,
            category=ErrorCategory.REORG,
            context=ErrorContext(
                category=ErrorCategory.REORG,
                recoverable=True,
                tx_hash=tx_hash,
                block=stale_block,
                suggested_action="Requeued to pending; receipt will be re-discovered",
                details={"current_hash": current_hash},
            ),
        )
        self.tx_hash = tx_hash
        self.stale_block = stale_block
        self.current_hash = current_hash


class ExecutionReverted(UnrecoverableError):
    """Receipt status reports failed execution."""

    def __init__(
        self,
        message: str = "Transaction reverted",
        tx_hash: Optional[str] = None,
        block: Optional["BlockReference"] = None,
        gas_used: Optional[int] = None,
        gas_limit: Optional[int] = None,
    ):
        super().__init__(
            message,
            category=ErrorCategory.TRANSACTION_REVERTED,
            context=ErrorContext(
                category=ErrorCategory.TRANSACTION_REVERTED,
                recoverable=False,
                tx_hash=tx_hash,
                block=block,
                suggested_action="Review transaction inputs; retrying unchanged reverts again",
                details={"gas_used": gas_used, "gas_limit": gas_limit},
            ),
        )
        self.tx_hash = tx_hash
        self.block = block
        self.gas_used = gas_used
        self.gas_limit = gas_limit


class VerificationFailed(UnrecoverableError):
    """A caller-declared event or post-state check did not hold."""

    def __init__(
        self,
        kind: VerificationFailureKind,
        failures: List[str],
        tx_hash: Optional[str] = None,
        block: Optional["BlockReference"] = None,
    ):
        message = f"Verification failed ({kind.value}): {'; '.join(failures)}"
        super().__init__(
            message,
            category=ErrorCategory.VERIFICATION,
            context=ErrorContext(
                category=ErrorCategory.VERIFICATION,
                recoverable=False,
                tx_hash=tx_hash,
                block=block,
                suggested_action="Transaction is confirmed on-chain; review the failed checks",
                details={"kind": kind.value, "failures": list(failures)},
            ),
        )
        self.kind = kind
        self.failures = list(failures)
        self.tx_hash = tx_hash
        self.block = block


class InvalidTransitionError(UnrecoverableError):
    """A lifecycle transition outside the allowed map was requested."""

    def __init__(self, from_state: Any, to_state: Any, message: Optional[str] = None):
        super().__init__(
            message or f"Invalid transition from {from_state} to {to_state}",
            category=ErrorCategory.STATE,
        )
        self.from_state = from_state
        self.to_state = to_state


class WatchCancelled(UnrecoverableError):
    """The caller stopped waiting; the broadcast transaction is untouched."""

    def __init__(self, record_id: str, tx_hash: Optional[str] = None):
        super().__init__(
            f"Watch for {record_id} cancelled locally",
            category=ErrorCategory.CANCELLED,
            context=ErrorContext(
                category=ErrorCategory.CANCELLED,
                recoverable=False,
                tx_hash=tx_hash,
                suggested_action="Use an on-chain cancellation to retract the transaction",
            ),
        )
        self.record_id = record_id
        self.tx_hash = tx_hash


_SUBMISSION_PATTERNS = [
    (SubmissionErrorKind.NONCE_TOO_LOW, ("nonce too low", "nonce is too low", "invalid nonce", "nonce has already been used")),
    (SubmissionErrorKind.UNDERPRICED, ("underpriced", "fee too low", "max fee per gas less than block base fee", "gas price too low")),
    (SubmissionErrorKind.INSUFFICIENT_FUNDS, ("insufficient funds", "insufficient balance", "exceeds balance")),
]

_SUBMISSION_ERRORS = {
    SubmissionErrorKind.NONCE_TOO_LOW: NonceTooLow,
    SubmissionErrorKind.UNDERPRICED: Underpriced,
    SubmissionErrorKind.INSUFFICIENT_FUNDS: InsufficientFunds,
    SubmissionErrorKind.UNKNOWN: UnknownSubmissionError,
}


def is_already_known(error: Exception) -> bool:
    """Node already holds this exact payload in its mempool."""
    message = str(error).lower()
    return "already known" in message or "already imported" in message


def classify_submission_error(error: Exception) -> SubmissionErrorKind:
    """
    Classify a broadcast rejection by the node's message.

    Nodes disagree on wording, so this matches on known fragments.
    """
    if isinstance(error, SubmissionError):
        return error.kind

    message = str(error).lower()
    for kind, patterns in _SUBMISSION_PATTERNS:
        if any(p in message for p in patterns):
            return kind
    return SubmissionErrorKind.UNKNOWN


def to_submission_error(
    error: Exception,
    nonce: Optional[int] = None,
    tx_hash: Optional[str] = None,
) -> SubmissionError:
    """Wrap a raw rejection in the matching SubmissionError subclass."""
    if isinstance(error, SubmissionError):
        return error
    kind = classify_submission_error(error)
    return _SUBMISSION_ERRORS[kind](str(error), nonce=nonce, tx_hash=tx_hash)
