"""
Transaction Execution Layer

Drives transactions from caller intent to a terminal outcome:
- TransactionEngine: submit / execute, accelerate, cancel
- NonceManager: gap-free nonces per account
- TransactionBuilder: requests with buffered gas and current prices
- Broadcaster: exactly-once submission per attempt
- ConfirmationTracker: per-record watch loops with reorg and stuck handling
- ExecutionVerifier: event and post-state checks after confirmation

Usage:
    from txwarden.core.execution import (
        EngineContext,
        TransactionEngine,
        TransactionIntent,
        VerificationSpec,
    )

    engine = TransactionEngine(EngineContext.create(), signer)

    handle = await engine.submit(
        TransactionIntent(account="0x...", destination="0x...", value=10**17),
        verification=VerificationSpec(events=["Transfer(address,address,uint256)"]),
    )
    async for update in handle.updates():
        print(update.kind, update.state)
    outcome = await handle.result()
"""

from .models import (
    AttemptKind,
    AttemptStatus,
    Block,
    BlockReference,
    BroadcastAttempt,
    ConfirmationPolicy,
    EventExpectation,
    ExecutionWarning,
    FeeParams,
    LogEntry,
    ReadCall,
    ReadResult,
    Receipt,
    RetryPolicy,
    SignedTransaction,
    StateExpectation,
    StateTransition,
    TransactionIntent,
    TransactionOutcome,
    TransactionRecord,
    TransactionRequest,
    TransactionState,
    UpdateKind,
    VerificationReport,
    VerificationSpec,
    WatchUpdate,
)

from .state_machine import (
    TERMINAL_STATES,
    TRANSITIONS,
    can_transition,
    validate_transition,
)

from .nonce_manager import (
    NonceManager,
    NonceState,
)

from .tx_builder import TransactionBuilder
from .signer import Signer
from .broadcaster import Broadcaster
from .reorg_monitor import ReorgMonitor
from .stuck_handler import StuckTransactionHandler
from .verifier import ExecutionVerifier
from .tracker import ConfirmationTracker, WatchHandle

from .executor import (
    EngineContext,
    TransactionEngine,
)

__all__ = [
    # Models
    "AttemptKind",
    "AttemptStatus",
    "Block",
    "BlockReference",
    "BroadcastAttempt",
    "ConfirmationPolicy",
    "EventExpectation",
    "ExecutionWarning",
    "FeeParams",
    "LogEntry",
    "ReadCall",
    "ReadResult",
    "Receipt",
    "RetryPolicy",
    "SignedTransaction",
    "StateExpectation",
    "StateTransition",
    "TransactionIntent",
    "TransactionOutcome",
    "TransactionRecord",
    "TransactionRequest",
    "TransactionState",
    "UpdateKind",
    "VerificationReport",
    "VerificationSpec",
    "WatchUpdate",
    # State machine
    "TERMINAL_STATES",
    "TRANSITIONS",
    "can_transition",
    "validate_transition",
    # Components
    "NonceManager",
    "NonceState",
    "TransactionBuilder",
    "Signer",
    "Broadcaster",
    "ReorgMonitor",
    "StuckTransactionHandler",
    "ExecutionVerifier",
    "ConfirmationTracker",
    "WatchHandle",
    "EngineContext",
    "TransactionEngine",
]
