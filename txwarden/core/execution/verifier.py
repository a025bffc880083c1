"""
Execution verification.

A successful receipt status only says the call did not revert. Callers can
declare what else must be true: events that must have been emitted, and
read-only calls whose answers must match once the transaction is included.
"""

import logging
from typing import TYPE_CHECKING, List, Optional, Sequence

from ..recovery.errors import ExecutionReverted, VerificationFailed, VerificationFailureKind
from .models import (
    EventExpectation,
    ExecutionWarning,
    Receipt,
    TransactionRecord,
    VerificationReport,
    VerificationSpec,
)

if TYPE_CHECKING:
    from ...services.read_cache import BatchReader


logger = logging.getLogger(__name__)

POSSIBLY_INCOMPLETE = "possibly_incomplete"


def _missing_events(
    expected: Sequence[EventExpectation],
    topics: Sequence[Optional[str]],
    ordered: bool,
) -> List[str]:
    if not ordered:
        return [
            f"event {e.label} not emitted"
            for e in expected
            if not any(e.matches(t) for t in topics)
        ]

    missing = []
    position = 0
    for event in expected:
        for index in range(position, len(topics)):
            if event.matches(topics[index]):
                position = index + 1
                break
        else:
            missing.append(f"event {event.label} not emitted in order")
    return missing


class ExecutionVerifier:
    """Checks receipts against caller-declared expectations."""

    def __init__(self, reader: Optional["BatchReader"] = None, incomplete_gas_ratio: float = 0.95):
        self._reader = reader
        self.incomplete_gas_ratio = incomplete_gas_ratio

    @staticmethod
    def check_status(receipt: Receipt, gas_limit: Optional[int] = None) -> None:
        """Raise ExecutionReverted if the receipt reports failure."""
        if receipt.status:
            return
        raise ExecutionReverted(
            f"Transaction {receipt.transaction_hash} reverted in block {receipt.block_number}",
            tx_hash=receipt.transaction_hash,
            block=receipt.block_reference,
            gas_used=receipt.gas_used,
            gas_limit=gas_limit,
        )

    def gas_warning(self, receipt: Receipt, gas_limit: int) -> Optional[ExecutionWarning]:
        """Advisory: execution that used nearly all its gas may have bailed out early."""
        if gas_limit <= 0:
            return None
        ratio = receipt.gas_used / gas_limit
        if ratio < self.incomplete_gas_ratio:
            return None
        return ExecutionWarning(
            code=POSSIBLY_INCOMPLETE,
            message=f"Used {receipt.gas_used} of {gas_limit} gas ({ratio:.1%})",
            details={"gas_used": receipt.gas_used, "gas_limit": gas_limit, "ratio": ratio},
        )

    async def verify(
        self,
        record: TransactionRecord,
        receipt: Receipt,
        spec: Optional[VerificationSpec] = None,
    ) -> VerificationReport:
        """
        Run the gas heuristic plus any declared event and state checks.

        Failures are reported, never raised: the transaction is already
        final on the ledger.
        """
        report = VerificationReport()

        warning = self.gas_warning(receipt, record.request.gas_limit)
        if warning is not None:
            report.warnings.append(warning)

        if spec is None or spec.is_empty:
            return report

        topics = [log.first_topic for log in receipt.logs]
        missing = _missing_events(spec.events, topics, spec.ordered_events)
        mismatches = await self._check_state(spec, receipt)

        if missing or mismatches:
            kind = VerificationFailureKind.MISSING_EVENT if missing else VerificationFailureKind.STATE_MISMATCH
            report.error = VerificationFailed(
                kind,
                missing + mismatches,
                tx_hash=receipt.transaction_hash,
                block=receipt.block_reference,
            )
            logger.warning(f"Verification failed for {record.record_id}: {report.error.message}")

        return report

    async def _check_state(self, spec: VerificationSpec, receipt: Receipt) -> List[str]:
        if not spec.state_checks:
            return []
        if self._reader is None:
            raise ValueError("State checks need a BatchReader")

        calls = [
            check.call.at_block(receipt.block_number) if check.pin_to_inclusion else check.call
            for check in spec.state_checks
        ]
        results = await self._reader.aggregate(calls)

        mismatches = []
        for check, result in zip(spec.state_checks, results):
            if not result.ok:
                mismatches.append(f"{check.name}: read failed ({result.error})")
            elif result.value != check.expected:
                mismatches.append(
                    f"{check.name}: expected 0x{check.expected.hex()}, got 0x{(result.value or b'').hex()}"
                )
        return mismatches
