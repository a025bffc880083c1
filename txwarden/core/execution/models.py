"""
Transaction lifecycle models and policies.
"""

import random
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import ROUND_CEILING, Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from eth_utils import keccak

if TYPE_CHECKING:
    from ...config import Settings
    from ..recovery.errors import VerificationFailed


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def scale_price(value: int, factor: float) -> int:
    """Scale a wei amount, rounding up; always moves by at least one wei."""
    scaled = (Decimal(value) * Decimal(str(factor))).to_integral_value(rounding=ROUND_CEILING)
    return max(int(scaled), value + 1)


class TransactionState(str, Enum):
    """Lifecycle state of a logical transaction (one caller intent)."""
    BUILT = "built"              # Unsigned request assembled, nonce reserved
    SIGNED = "signed"            # Signer produced the raw payload
    BROADCAST = "broadcast"      # Handed to the network client
    PENDING = "pending"          # Accepted, waiting in the mempool
    INCLUDED = "included"        # Receipt seen in a block
    CONFIRMING = "confirming"    # Required depth reached, verifying
    CONFIRMED = "confirmed"      # Terminal success
    REPLACED = "replaced"        # Nonce consumed by a cancellation
    FAILED = "failed"            # Terminal failure


class AttemptKind(str, Enum):
    ORIGINAL = "original"
    ACCELERATE = "accelerate"
    CANCEL = "cancel"


class AttemptStatus(str, Enum):
    PENDING = "pending"
    INCLUDED = "included"
    REPLACED = "replaced"


class UpdateKind(str, Enum):
    """Events published on a watch's update channel."""
    STATE = "state"
    ATTEMPT = "attempt"
    DEPTH = "depth"
    REORG = "reorg"
    STUCK = "stuck"
    WARNING = "warning"


@dataclass(frozen=True)
class FeeParams:
    """Fee-market (EIP-1559 style) pricing."""
    max_fee_per_gas: int
    max_priority_fee_per_gas: int

    def scaled(self, factor: float) -> "FeeParams":
        return FeeParams(
            max_fee_per_gas=scale_price(self.max_fee_per_gas, factor),
            max_priority_fee_per_gas=scale_price(self.max_priority_fee_per_gas, factor),
        )


@dataclass
class TransactionIntent:
    """What the caller wants done; the builder turns it into a request."""
    account: str
    destination: str
    value: int = 0
    payload: bytes = b""

    # Explicit overrides; fetched from the network when absent
    gas_limit: Optional[int] = None
    gas_price: Optional[int] = None
    fees: Optional[FeeParams] = None
    chain_id: Optional[int] = None

    description: str = ""

    @property
    def is_contract_call(self) -> bool:
        return bool(self.payload)


@dataclass(frozen=True)
class TransactionRequest:
    """An unsigned transaction. Immutable once built."""
    account: str
    destination: str
    value: int
    payload: bytes
    gas_limit: int
    nonce: int
    gas_price: Optional[int] = None
    fees: Optional[FeeParams] = None
    chain_id: Optional[int] = None

    @property
    def price(self) -> int:
        """Highest per-gas price this request may pay."""
        if self.fees is not None:
            return self.fees.max_fee_per_gas
        return self.gas_price or 0

    def bumped(self, factor: float) -> "TransactionRequest":
        if self.fees is not None:
            return replace(self, fees=self.fees.scaled(factor))
        return replace(self, gas_price=scale_price(self.gas_price or 0, factor))

    def with_nonce(self, nonce: int) -> "TransactionRequest":
        return replace(self, nonce=nonce)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-RPC style dictionary for signing."""
        tx = {
            "from": self.account,
            "to": self.destination,
            "data": "0x" + self.payload.hex(),
            "value": hex(self.value),
            "nonce": hex(self.nonce),
            "gas": hex(self.gas_limit),
        }
        if self.chain_id is not None:
            tx["chainId"] = hex(self.chain_id)
        if self.fees is not None:
            tx["maxFeePerGas"] = hex(self.fees.max_fee_per_gas)
            tx["maxPriorityFeePerGas"] = hex(self.fees.max_priority_fee_per_gas)
        elif self.gas_price is not None:
            tx["gasPrice"] = hex(self.gas_price)
        return tx


@dataclass(frozen=True)
class SignedTransaction:
    """Raw signed payload plus the request it was produced from."""
    request: TransactionRequest
    raw: bytes
    tx_hash: str

    @classmethod
    def from_raw(cls, request: TransactionRequest, raw: bytes) -> "SignedTransaction":
        return cls(request=request, raw=raw, tx_hash="0x" + keccak(raw).hex())


@dataclass(frozen=True)
class BlockReference:
    number: int
    hash: str

    def matches(self, block_hash: Optional[str]) -> bool:
        return block_hash is not None and block_hash.lower() == self.hash.lower()


@dataclass(frozen=True)
class Block:
    number: int
    hash: str
    parent_hash: str

    @property
    def reference(self) -> BlockReference:
        return BlockReference(number=self.number, hash=self.hash)


@dataclass(frozen=True)
class LogEntry:
    address: str
    topics: Tuple[str, ...] = ()
    data: str = "0x"

    @property
    def first_topic(self) -> Optional[str]:
        return self.topics[0] if self.topics else None


@dataclass(frozen=True)
class Receipt:
    transaction_hash: str
    status: bool
    gas_used: int
    block_number: int
    block_hash: str
    logs: Tuple[LogEntry, ...] = ()
    effective_gas_price: Optional[int] = None

    @property
    def block_reference(self) -> BlockReference:
        return BlockReference(number=self.block_number, hash=self.block_hash)


@dataclass
class BroadcastAttempt:
    """One signed submission under the record's nonce."""
    number: int
    kind: AttemptKind
    request: TransactionRequest
    tx_hash: str
    status: AttemptStatus = AttemptStatus.PENDING
    submitted_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "kind": self.kind.value,
            "txHash": self.tx_hash,
            "status": self.status.value,
            "nonce": self.request.nonce,
            "price": self.request.price,
            "submittedAt": self.submitted_at.isoformat(),
        }


@dataclass
class StateTransition:
    """Record of a lifecycle transition."""
    from_state: TransactionState
    to_state: TransactionState
    reason: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fromState": self.from_state.value,
            "toState": self.to_state.value,
            "reason": self.reason,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ExecutionWarning:
    """Advisory finding that does not change the chain-level outcome."""
    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


RecordListener = Callable[["TransactionRecord", StateTransition], None]


@dataclass
class TransactionRecord:
    """
    Mutable lifecycle state for one caller intent.

    A record may reference several broadcast attempts that share a nonce
    (accelerations, a cancellation); at most one of them can be included.
    """
    intent: TransactionIntent
    request: TransactionRequest
    record_id: str = field(default_factory=lambda: f"tx_{uuid4().hex}")
    state: TransactionState = TransactionState.BUILT

    tx_hash: Optional[str] = None               # Hash of the latest signed payload
    block_ref: Optional[BlockReference] = None  # Set while included
    receipt: Optional[Receipt] = None
    confirmations: int = 0

    attempt_count: int = 0
    attempts: List[BroadcastAttempt] = field(default_factory=list)
    cancel_requested: bool = False

    history: List[StateTransition] = field(default_factory=list)
    warnings: List[ExecutionWarning] = field(default_factory=list)
    reason: Optional[str] = None
    error: Optional[Exception] = None

    created_at: datetime = field(default_factory=_utcnow)
    listeners: List[RecordListener] = field(default_factory=list, repr=False, compare=False)

    @property
    def account(self) -> str:
        return self.request.account

    @property
    def nonce(self) -> int:
        return self.request.nonce

    @property
    def is_terminal(self) -> bool:
        from .state_machine import TERMINAL_STATES

        return self.state in TERMINAL_STATES

    @property
    def live_attempts(self) -> List[BroadcastAttempt]:
        """Attempts that may still be (or are) included, newest first."""
        return [a for a in reversed(self.attempts) if a.status != AttemptStatus.REPLACED]

    @property
    def latest_attempt(self) -> Optional[BroadcastAttempt]:
        return self.attempts[-1] if self.attempts else None

    @property
    def included_attempt(self) -> Optional[BroadcastAttempt]:
        for attempt in self.attempts:
            if attempt.status == AttemptStatus.INCLUDED:
                return attempt
        return None

    def next_attempt_number(self) -> int:
        self.attempt_count += 1
        return self.attempt_count

    def transition_to(
        self,
        to_state: TransactionState,
        reason: Optional[str] = None,
        error: Optional[Exception] = None,
    ) -> StateTransition:
        """Move to a new state; raises InvalidTransitionError if not allowed."""
        from .state_machine import TERMINAL_STATES, validate_transition

        validate_transition(self.state, to_state)

        transition = StateTransition(
            from_state=self.state,
            to_state=to_state,
            reason=reason,
            error=str(error) if error else None,
        )
        self.state = to_state
        self.history.append(transition)

        if to_state in TERMINAL_STATES:
            self.reason = reason
            self.error = error

        for listener in self.listeners:
            listener(self, transition)

        return transition

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recordId": self.record_id,
            "state": self.state.value,
            "account": self.account,
            "nonce": self.nonce,
            "txHash": self.tx_hash,
            "block": {"number": self.block_ref.number, "hash": self.block_ref.hash} if self.block_ref else None,
            "confirmations": self.confirmations,
            "attempts": [a.to_dict() for a in self.attempts],
            "history": [t.to_dict() for t in self.history],
            "warnings": [w.code for w in self.warnings],
            "reason": self.reason,
            "error": str(self.error) if self.error else None,
        }


@dataclass
class ConfirmationPolicy:
    """How deep, how long, how often."""
    required_confirmations: int = 3
    timeout_seconds: float = 60.0               # Stuck threshold without a receipt
    poll_interval_seconds: float = 2.0
    max_consecutive_poll_errors: int = 10

    @classmethod
    def from_settings(cls, settings: "Settings", required_confirmations: Optional[int] = None) -> "ConfirmationPolicy":
        return cls(
            required_confirmations=(
                required_confirmations
                if required_confirmations is not None
                else settings.confirmations_default
            ),
            timeout_seconds=settings.stuck_timeout_seconds,
            poll_interval_seconds=settings.poll_interval_seconds,
            max_consecutive_poll_errors=settings.max_consecutive_poll_errors,
        )

    @classmethod
    def for_intent(cls, intent: TransactionIntent, settings: "Settings") -> "ConfirmationPolicy":
        """
        Default depth tiered by value and effect:
        large value 12, contract call 6, negligible transfer 1, otherwise 3.
        """
        if intent.value >= settings.large_value_wei:
            depth = settings.confirmations_large
        elif intent.is_contract_call:
            depth = settings.confirmations_contract
        elif intent.value <= settings.negligible_value_wei:
            depth = settings.confirmations_negligible
        else:
            depth = settings.confirmations_default
        return cls.from_settings(settings, required_confirmations=depth)


@dataclass
class RetryPolicy:
    """Gas bumps and bounds for resubmissions under one nonce."""
    bump_factor: float = 1.2
    cancel_bump_factor: float = 1.2
    max_attempts: int = 5
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True
    jitter_factor: float = 0.1
    max_gas_price: Optional[int] = None

    @classmethod
    def from_settings(cls, settings: "Settings") -> "RetryPolicy":
        return cls(
            bump_factor=settings.gas_bump_factor,
            cancel_bump_factor=settings.cancel_bump_factor,
            max_attempts=settings.max_submission_attempts,
            initial_delay_seconds=settings.retry_initial_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
            max_gas_price=settings.max_gas_price_wei,
        )

    def get_delay(self, attempt: int) -> float:
        """Backoff before resubmission number ``attempt`` (0-based)."""
        delay = min(
            self.initial_delay_seconds * (self.exponential_base ** attempt),
            self.max_delay_seconds,
        )
        if self.jitter:
            jitter_range = delay * self.jitter_factor
            delay += random.uniform(-jitter_range, jitter_range)
        return max(delay, 0)

    def allows_price(self, price: int) -> bool:
        return self.max_gas_price is None or price <= self.max_gas_price


@dataclass(frozen=True)
class EventExpectation:
    """An event that must appear as the first topic of some receipt log."""
    signature_hash: str
    name: Optional[str] = None

    @classmethod
    def of(cls, value: Union[str, "EventExpectation"]) -> "EventExpectation":
        """Accept a topic hash (``0x`` + 64 hex) or a text signature."""
        if isinstance(value, EventExpectation):
            return value
        if value.startswith("0x") and len(value) == 66:
            return cls(signature_hash=value.lower())
        return cls(signature_hash="0x" + keccak(text=value).hex(), name=value)

    def matches(self, topic: Optional[str]) -> bool:
        return topic is not None and topic.lower() == self.signature_hash

    @property
    def label(self) -> str:
        return self.name or self.signature_hash


BlockTag = Union[int, str]


@dataclass(frozen=True)
class ReadCall:
    """A read-only call; never changes state, costs the caller no gas."""
    to: str
    data: bytes = b""
    block: BlockTag = "latest"
    sender: Optional[str] = None

    @property
    def is_pinned(self) -> bool:
        """Pinned to a block number, so the answer never changes."""
        return isinstance(self.block, int)

    @property
    def cache_key(self) -> str:
        return f"call:{self.to.lower()}:{self.data.hex()}:{self.block}"

    def at_block(self, block: BlockTag) -> "ReadCall":
        return replace(self, block=block)


@dataclass(frozen=True)
class ReadResult:
    call: ReadCall
    value: Optional[bytes] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class StateExpectation:
    """Expected return bytes of a read-only call after inclusion."""
    call: ReadCall
    expected: bytes
    label: str = ""
    pin_to_inclusion: bool = True

    @property
    def name(self) -> str:
        return self.label or f"{self.call.to}:{self.call.data.hex()[:8]}"


@dataclass
class VerificationSpec:
    """Caller-declared checks run after the transaction reaches its depth."""
    events: List[EventExpectation] = field(default_factory=list)
    ordered_events: bool = False
    state_checks: List[StateExpectation] = field(default_factory=list)

    def __post_init__(self):
        self.events = [EventExpectation.of(e) for e in self.events]

    @property
    def is_empty(self) -> bool:
        return not self.events and not self.state_checks


@dataclass
class VerificationReport:
    warnings: List[ExecutionWarning] = field(default_factory=list)
    error: Optional["VerificationFailed"] = None

    @property
    def passed(self) -> bool:
        return self.error is None


@dataclass
class TransactionOutcome:
    """Result delivered to the caller when a watch ends."""
    record: TransactionRecord
    state: TransactionState
    receipt: Optional[Receipt] = None
    confirmations: int = 0
    warnings: List[ExecutionWarning] = field(default_factory=list)
    verification_error: Optional["VerificationFailed"] = None
    error: Optional[Exception] = None

    @property
    def is_success(self) -> bool:
        """Chain-level success, independent of caller verification."""
        return self.state == TransactionState.CONFIRMED

    @property
    def verified(self) -> bool:
        return self.is_success and self.verification_error is None

    @property
    def tx_hash(self) -> Optional[str]:
        return self.receipt.transaction_hash if self.receipt else self.record.tx_hash


@dataclass
class WatchUpdate:
    kind: UpdateKind
    record_id: str
    state: TransactionState
    tx_hash: Optional[str] = None
    confirmations: int = 0
    detail: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)
