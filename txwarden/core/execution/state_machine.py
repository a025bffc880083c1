"""
Transaction State Machine

Allowed lifecycle transitions for a TransactionRecord. The map is bounded:
every path ends in confirmed, failed or replaced, and the only backward
edges are rebuilds before acceptance and reorg requeues.
"""

from typing import Dict, FrozenSet, Set

import structlog

from ..recovery.errors import InvalidTransitionError
from .models import StateTransition, TransactionRecord, TransactionState


logger = structlog.stdlib.get_logger("txwarden.lifecycle")


TERMINAL_STATES: FrozenSet[TransactionState] = frozenset({
    TransactionState.CONFIRMED,
    TransactionState.FAILED,
    TransactionState.REPLACED,
})


TRANSITIONS: Dict[TransactionState, Set[TransactionState]] = {
    TransactionState.BUILT: {
        TransactionState.SIGNED,
        TransactionState.FAILED,      # Signer refused
    },
    TransactionState.SIGNED: {
        TransactionState.BROADCAST,
        TransactionState.FAILED,
    },
    TransactionState.BROADCAST: {
        TransactionState.PENDING,     # Accepted
        TransactionState.BUILT,       # Rebuilt after NonceTooLow / Underpriced
        TransactionState.FAILED,      # InsufficientFunds / Unknown / exhausted
    },
    TransactionState.PENDING: {
        TransactionState.INCLUDED,
        TransactionState.REPLACED,    # Cancellation consumed the nonce
        TransactionState.FAILED,      # Stuck handling exhausted
    },
    TransactionState.INCLUDED: {
        TransactionState.CONFIRMING,
        TransactionState.PENDING,     # Reorg displaced the inclusion
        TransactionState.FAILED,      # Execution reverted
    },
    TransactionState.CONFIRMING: {
        TransactionState.CONFIRMED,
        TransactionState.PENDING,     # Reorg detected while verifying
        TransactionState.FAILED,
    },
    TransactionState.CONFIRMED: set(),
    TransactionState.FAILED: set(),
    TransactionState.REPLACED: set(),
}


def can_transition(from_state: TransactionState, to_state: TransactionState) -> bool:
    return to_state in TRANSITIONS.get(from_state, set())


def validate_transition(from_state: TransactionState, to_state: TransactionState) -> None:
    if not can_transition(from_state, to_state):
        allowed = sorted(s.value for s in TRANSITIONS.get(from_state, set()))
        raise InvalidTransitionError(
            from_state=from_state,
            to_state=to_state,
            message=f"Invalid transition from {from_state.value} to {to_state.value}. "
                    f"Allowed: {allowed}",
        )


def log_transition(record: TransactionRecord, transition: StateTransition) -> None:
    """Record listener that logs every lifecycle transition."""
    fields = dict(
        record_id=record.record_id,
        account=record.account,
        nonce=record.nonce,
        from_state=transition.from_state.value,
        to_state=transition.to_state.value,
        reason=transition.reason,
    )
    if transition.to_state == TransactionState.FAILED:
        logger.error("tx_state_transition", error=transition.error, **fields)
    else:
        logger.info("tx_state_transition", **fields)
