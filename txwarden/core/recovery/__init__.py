"""
Error Recovery Module

Error taxonomy and classification for the transaction lifecycle.
"""

from .errors import (
    ErrorCategory,
    ErrorContext,
    RecoverableError,
    UnrecoverableError,
    RpcError,
    EstimationError,
    SubmissionError,
    SubmissionErrorKind,
    NonceTooLow,
    Underpriced,
    InsufficientFunds,
    UnknownSubmissionError,
    SubmissionExhausted,
    ConfirmationTimeout,
    ReorgDetected,
    ExecutionReverted,
    VerificationFailed,
    VerificationFailureKind,
    InvalidTransitionError,
    WatchCancelled,
    classify_submission_error,
    is_already_known,
    to_submission_error,
)

__all__ = [
    # Bases
    "ErrorCategory",
    "ErrorContext",
    "RecoverableError",
    "UnrecoverableError",
    # Network
    "RpcError",
    # Pre-submission
    "EstimationError",
    # Submission
    "SubmissionError",
    "SubmissionErrorKind",
    "NonceTooLow",
    "Underpriced",
    "InsufficientFunds",
    "UnknownSubmissionError",
    "SubmissionExhausted",
    # Tracking
    "ConfirmationTimeout",
    "ReorgDetected",
    "ExecutionReverted",
    "VerificationFailed",
    "VerificationFailureKind",
    "InvalidTransitionError",
    "WatchCancelled",
    # Classification
    "classify_submission_error",
    "is_already_known",
    "to_submission_error",
]
