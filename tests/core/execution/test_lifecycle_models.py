"""
Tests for lifecycle models, policies and the transaction state machine.
"""

import pytest

from txwarden.config import Settings
from txwarden.core.execution import (
    AttemptKind,
    AttemptStatus,
    BroadcastAttempt,
    ConfirmationPolicy,
    EventExpectation,
    FeeParams,
    ReadCall,
    RetryPolicy,
    SignedTransaction,
    TERMINAL_STATES,
    TransactionIntent,
    TransactionRecord,
    TransactionRequest,
    TransactionState,
    VerificationSpec,
    can_transition,
)
from txwarden.core.execution.models import scale_price
from txwarden.core.recovery import InvalidTransitionError


ACCOUNT = "0x1111111111111111111111111111111111111111"
DESTINATION = "0x2222222222222222222222222222222222222222"
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def request_() -> TransactionRequest:
    return TransactionRequest(
        account=ACCOUNT,
        destination=DESTINATION,
        value=0,
        payload=b"",
        gas_limit=21_000,
        nonce=3,
        gas_price=100,
    )


@pytest.fixture
def record(request_) -> TransactionRecord:
    return TransactionRecord(
        intent=TransactionIntent(account=ACCOUNT, destination=DESTINATION),
        request=request_,
    )


def advance(record: TransactionRecord, *states: TransactionState) -> None:
    for state in states:
        record.transition_to(state)


# =============================================================================
# State machine
# =============================================================================

class TestStateMachine:

    def test_happy_path(self, record):
        advance(
            record,
            TransactionState.SIGNED,
            TransactionState.BROADCAST,
            TransactionState.PENDING,
            TransactionState.INCLUDED,
            TransactionState.CONFIRMING,
            TransactionState.CONFIRMED,
        )

        assert record.state == TransactionState.CONFIRMED
        assert record.is_terminal
        assert len(record.history) == 6

    def test_invalid_transition_raises(self, record):
        with pytest.raises(InvalidTransitionError) as exc_info:
            record.transition_to(TransactionState.CONFIRMED)

        assert "built" in str(exc_info.value)
        assert record.state == TransactionState.BUILT
        assert record.history == []

    def test_terminal_states_have_no_exits(self):
        for terminal in TERMINAL_STATES:
            for state in TransactionState:
                assert not can_transition(terminal, state)

    def test_reorg_edges(self):
        assert can_transition(TransactionState.INCLUDED, TransactionState.PENDING)
        assert can_transition(TransactionState.CONFIRMING, TransactionState.PENDING)
        assert not can_transition(TransactionState.CONFIRMED, TransactionState.PENDING)

    def test_rebuild_edge_only_before_acceptance(self):
        assert can_transition(TransactionState.BROADCAST, TransactionState.BUILT)
        assert not can_transition(TransactionState.PENDING, TransactionState.BUILT)

    def test_cancellation_replaces_pending(self):
        assert can_transition(TransactionState.PENDING, TransactionState.REPLACED)
        assert not can_transition(TransactionState.BUILT, TransactionState.REPLACED)

    def test_failure_records_reason_and_error(self, record):
        error = RuntimeError("boom")
        record.transition_to(TransactionState.FAILED, reason="signer", error=error)

        assert record.reason == "signer"
        assert record.error is error
        assert record.history[-1].error == "boom"

    def test_listeners_see_every_transition(self, record):
        seen = []
        record.listeners.append(lambda rec, transition: seen.append(transition.to_state))

        advance(record, TransactionState.SIGNED, TransactionState.BROADCAST)

        assert seen == [TransactionState.SIGNED, TransactionState.BROADCAST]


# =============================================================================
# Records and requests
# =============================================================================

class TestRecord:

    def test_live_attempts_newest_first(self, record, request_):
        record.attempts = [
            BroadcastAttempt(number=1, kind=AttemptKind.ORIGINAL, request=request_, tx_hash="0x01"),
            BroadcastAttempt(number=2, kind=AttemptKind.ACCELERATE, request=request_, tx_hash="0x02"),
            BroadcastAttempt(number=3, kind=AttemptKind.CANCEL, request=request_, tx_hash="0x03"),
        ]
        record.attempts[1].status = AttemptStatus.REPLACED

        assert [a.tx_hash for a in record.live_attempts] == ["0x03", "0x01"]

    def test_attempt_counter_is_monotonic(self, record):
        assert [record.next_attempt_number() for _ in range(3)] == [1, 2, 3]

    def test_to_dict(self, record):
        data = record.to_dict()

        assert data["recordId"].startswith("tx_")
        assert data["state"] == "built"
        assert data["nonce"] == 3


class TestRequest:

    def test_bump_rounds_up_and_always_increases(self, request_):
        assert request_.bumped(1.2).gas_price == 120
        assert scale_price(1, 1.01) == 2
        assert scale_price(7, 1.1) == 8  # 7.7 -> 8

    def test_bump_fee_params(self, request_):
        request = TransactionRequest(
            account=ACCOUNT,
            destination=DESTINATION,
            value=0,
            payload=b"",
            gas_limit=21_000,
            nonce=0,
            fees=FeeParams(max_fee_per_gas=100, max_priority_fee_per_gas=2),
        )

        bumped = request.bumped(1.2)

        assert bumped.fees == FeeParams(max_fee_per_gas=120, max_priority_fee_per_gas=3)
        assert bumped.price == 120

    def test_request_is_immutable(self, request_):
        with pytest.raises(AttributeError):
            request_.nonce = 4  # type: ignore[misc]

        assert request_.with_nonce(4).nonce == 4
        assert request_.nonce == 3

    def test_signed_hash_is_keccak_of_raw(self, request_):
        signed = SignedTransaction.from_raw(request_, b"")

        assert signed.tx_hash == "0xc5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470"


# =============================================================================
# Policies
# =============================================================================

class TestConfirmationPolicy:

    @pytest.fixture
    def settings(self) -> Settings:
        return Settings()

    @pytest.mark.parametrize(
        "value, payload, expected",
        [
            (0, b"", 1),
            (10**16, b"", 1),
            (10**17, b"", 3),
            (10**17, b"\x01", 6),
            (0, b"\x01", 6),
            (10 * 10**18, b"", 12),
            (20 * 10**18, b"\x01", 12),
        ],
    )
    def test_tiers(self, settings, value, payload, expected):
        intent = TransactionIntent(account=ACCOUNT, destination=DESTINATION, value=value, payload=payload)

        policy = ConfirmationPolicy.for_intent(intent, settings)

        assert policy.required_confirmations == expected
        assert policy.timeout_seconds == settings.stuck_timeout_seconds


class TestRetryPolicy:

    def test_delay_grows_and_caps(self):
        policy = RetryPolicy(initial_delay_seconds=1, max_delay_seconds=5, jitter=False)

        assert [policy.get_delay(n) for n in range(5)] == [1, 2, 4, 5, 5]

    def test_jitter_stays_in_range(self):
        policy = RetryPolicy(initial_delay_seconds=1, jitter_factor=0.1)

        for _ in range(50):
            assert 0.9 <= policy.get_delay(0) <= 1.1

    def test_price_cap(self):
        policy = RetryPolicy(max_gas_price=150)

        assert policy.allows_price(150)
        assert not policy.allows_price(151)
        assert RetryPolicy().allows_price(10**30)

    def test_from_settings(self):
        policy = RetryPolicy.from_settings(Settings(gas_bump_factor=1.5, max_submission_attempts=2))

        assert policy.bump_factor == 1.5
        assert policy.max_attempts == 2


class TestExpectations:

    def test_event_from_text_signature(self):
        event = EventExpectation.of("Transfer(address,address,uint256)")

        assert event.signature_hash == TRANSFER_TOPIC
        assert event.label == "Transfer(address,address,uint256)"

    def test_event_from_hash(self):
        event = EventExpectation.of(TRANSFER_TOPIC.upper().replace("0X", "0x"))

        assert event.signature_hash == TRANSFER_TOPIC
        assert event.matches(TRANSFER_TOPIC)

    def test_spec_normalizes_events(self):
        spec = VerificationSpec(events=["Transfer(address,address,uint256)"])

        assert spec.events[0].signature_hash == TRANSFER_TOPIC
        assert not spec.is_empty
        assert VerificationSpec().is_empty

    def test_pinned_read_call(self):
        call = ReadCall(to=DESTINATION, data=b"\x01")

        assert not call.is_pinned
        assert call.at_block(10).is_pinned
        assert call.at_block(10).cache_key != call.cache_key
