"""
Confirmation tracking.

One asyncio task per watched record polls the ledger until the record
reaches a terminal state:

    pending    poll receipts of every live attempt, newest first;
               escalate to the stuck handler past the policy timeout
    included   check the inclusion block for reorgs, then poll the head
               until the required depth is reached
    confirming run the verifier, then confirmed

Transient RPC errors are retried on the next cycle. A run of more than
``max_consecutive_poll_errors`` failed cycles fails the record.
"""

import asyncio
from typing import TYPE_CHECKING, AsyncIterator, Awaitable, Callable, Optional, Tuple

import structlog

from ..recovery.errors import (
    ConfirmationTimeout,
    ExecutionReverted,
    RecoverableError,
    RpcError,
    UnrecoverableError,
    WatchCancelled,
)
from .models import (
    AttemptKind,
    AttemptStatus,
    BroadcastAttempt,
    ConfirmationPolicy,
    Receipt,
    StateTransition,
    TransactionOutcome,
    TransactionRecord,
    TransactionState,
    UpdateKind,
    VerificationSpec,
    WatchUpdate,
)
from .reorg_monitor import ReorgMonitor
from .stuck_handler import StuckTransactionHandler
from .verifier import ExecutionVerifier

if TYPE_CHECKING:
    from ...providers.base import LedgerClient


logger = structlog.stdlib.get_logger("txwarden.tracker")

FinishCallback = Callable[[TransactionOutcome], Awaitable[None]]

_END = object()


class WatchHandle:
    """
    Caller's view of one watch.

    ``cancel()`` only stops local tracking; the broadcast transaction is left
    alone. Use an on-chain cancellation to retract it.
    """

    def __init__(self, record: TransactionRecord):
        self.record = record
        self._queue: "asyncio.Queue[object]" = asyncio.Queue()
        self._task: Optional["asyncio.Task[TransactionOutcome]"] = None
        self._cancelled = False

    @property
    def record_id(self) -> str:
        return self.record.record_id

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _attach(self, task: "asyncio.Task[TransactionOutcome]") -> None:
        self._task = task
        task.add_done_callback(lambda _: self._queue.put_nowait(_END))

    def publish(self, update: WatchUpdate) -> None:
        if not self.done:
            self._queue.put_nowait(update)

    def publish_kind(self, kind: UpdateKind, /, **detail) -> None:
        self.publish(
            WatchUpdate(
                kind=kind,
                record_id=self.record.record_id,
                state=self.record.state,
                tx_hash=self.record.tx_hash,
                confirmations=self.record.confirmations,
                detail=detail,
            )
        )

    async def result(self) -> TransactionOutcome:
        """
        Wait for the outcome.

        Raises:
            WatchCancelled: The watch was cancelled locally
        """
        if self._task is None:
            raise RuntimeError("Watch not started")
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if self._cancelled:
                raise WatchCancelled(self.record.record_id, self.record.tx_hash) from None
            raise

    def cancel(self) -> bool:
        """Stop tracking locally. Returns False if the watch already ended."""
        if self._task is None or self._task.done():
            return False
        self._cancelled = True
        self._task.cancel()
        return True

    async def updates(self) -> AsyncIterator[WatchUpdate]:
        """Iterate lifecycle updates until the watch ends."""
        while True:
            item = await self._queue.get()
            if item is _END:
                # Leave the marker for any other consumer
                self._queue.put_nowait(_END)
                return
            yield item


class ConfirmationTracker:
    """Runs and supervises per-record watch loops."""

    def __init__(
        self,
        client: "LedgerClient",
        reorg_monitor: ReorgMonitor,
        verifier: ExecutionVerifier,
        stuck_handler: Optional[StuckTransactionHandler] = None,
    ):
        self._client = client
        self._reorg_monitor = reorg_monitor
        self._verifier = verifier
        self._stuck_handler = stuck_handler

    def watch(
        self,
        record: TransactionRecord,
        policy: ConfirmationPolicy,
        verification: Optional[VerificationSpec] = None,
        on_finish: Optional[FinishCallback] = None,
    ) -> WatchHandle:
        """Start tracking a pending record."""
        handle = WatchHandle(record)

        def publish_transition(rec: TransactionRecord, transition: StateTransition) -> None:
            handle.publish_kind(
                UpdateKind.STATE,
                from_state=transition.from_state.value,
                to_state=transition.to_state.value,
                reason=transition.reason,
            )

        record.listeners.append(publish_transition)

        task = asyncio.create_task(
            self._run(record, policy, verification, handle, on_finish),
            name=f"watch-{record.record_id}",
        )
        handle._attach(task)
        return handle

    async def _run(
        self,
        record: TransactionRecord,
        policy: ConfirmationPolicy,
        verification: Optional[VerificationSpec],
        handle: WatchHandle,
        on_finish: Optional[FinishCallback],
    ) -> TransactionOutcome:
        outcome = await self._poll(record, policy, verification, handle)
        if on_finish is not None:
            await on_finish(outcome)
        return outcome

    async def _poll(
        self,
        record: TransactionRecord,
        policy: ConfirmationPolicy,
        verification: Optional[VerificationSpec],
        handle: WatchHandle,
    ) -> TransactionOutcome:
        log = logger.bind(record_id=record.record_id, account=record.account, nonce=record.nonce)
        loop = asyncio.get_running_loop()

        started = loop.time()
        deadline = started + policy.timeout_seconds
        high_head = 0
        consecutive_errors = 0

        log.info("watch_started", required_confirmations=policy.required_confirmations)

        while True:
            try:
                if record.state == TransactionState.PENDING:
                    receipt, attempt = await self._find_receipt(record)

                    if receipt is None:
                        if loop.time() >= deadline:
                            outcome = await self._escalate(record, handle, loop.time() - started, log)
                            if outcome is not None:
                                return outcome
                            started = loop.time()
                            deadline = started + policy.timeout_seconds
                    else:
                        outcome = self._record_inclusion(record, attempt, receipt, handle, log)
                        if outcome is not None:
                            return outcome

                if record.state == TransactionState.INCLUDED:
                    reorg = await self._reorg_monitor.check(record)
                    if reorg is not None:
                        log.warning(
                            "tx_reorged",
                            stale_block=reorg.stale_block.number if reorg.stale_block else None,
                            current_hash=reorg.current_hash,
                        )
                        handle.publish_kind(
                            UpdateKind.REORG,
                            stale_block=reorg.stale_block.number if reorg.stale_block else None,
                            current_hash=reorg.current_hash,
                        )
                        started = loop.time()
                        deadline = started + policy.timeout_seconds
                        high_head = 0
                    else:
                        head = await self._client.get_block_number()
                        high_head = max(high_head, head)
                        depth = max(0, high_head - record.block_ref.number)

                        if depth != record.confirmations:
                            record.confirmations = depth
                            handle.publish_kind(UpdateKind.DEPTH, head=high_head)

                        if depth >= policy.required_confirmations:
                            return await self._finalize(record, verification, handle, log)

                consecutive_errors = 0

            except RpcError as e:
                consecutive_errors += 1
                log.warning(
                    "poll_error",
                    error=str(e),
                    consecutive_errors=consecutive_errors,
                    limit=policy.max_consecutive_poll_errors,
                )
                if consecutive_errors > policy.max_consecutive_poll_errors:
                    return self._fail(record, e, "poll_errors")

            except Exception as e:
                log.exception("watch_error", error=str(e))
                if record.is_terminal:
                    return self._outcome(record, error=e)
                return self._fail(record, e, "watch_error")

            await asyncio.sleep(policy.poll_interval_seconds)

    async def _find_receipt(
        self, record: TransactionRecord
    ) -> Tuple[Optional[Receipt], Optional[BroadcastAttempt]]:
        for attempt in record.live_attempts:
            receipt = await self._client.get_transaction_receipt(attempt.tx_hash)
            if receipt is not None:
                return receipt, attempt
        return None, None

    def _record_inclusion(
        self,
        record: TransactionRecord,
        attempt: BroadcastAttempt,
        receipt: Receipt,
        handle: WatchHandle,
        log,
    ) -> Optional[TransactionOutcome]:
        for other in record.attempts:
            other.status = AttemptStatus.INCLUDED if other is attempt else AttemptStatus.REPLACED

        record.tx_hash = attempt.tx_hash
        record.request = attempt.request
        record.receipt = receipt
        record.block_ref = receipt.block_reference
        self._reorg_monitor.observe(receipt.block_reference)

        log.info(
            "tx_included",
            tx_hash=attempt.tx_hash,
            attempt=attempt.number,
            kind=attempt.kind.value,
            block=receipt.block_number,
        )

        if attempt.kind == AttemptKind.CANCEL:
            record.transition_to(TransactionState.REPLACED, reason="cancelled on-chain")
            return self._outcome(record)

        record.transition_to(TransactionState.INCLUDED, reason=f"block {receipt.block_number}")

        try:
            self._verifier.check_status(receipt, gas_limit=attempt.request.gas_limit)
        except ExecutionReverted as e:
            return self._fail(record, e, "reverted")

        return None

    async def _escalate(
        self,
        record: TransactionRecord,
        handle: WatchHandle,
        waited: float,
        log,
    ) -> Optional[TransactionOutcome]:
        timeout = ConfirmationTimeout(
            f"No receipt for nonce {record.nonce} after {waited:.1f}s",
            tx_hash=record.tx_hash,
            waited_seconds=waited,
        )
        log.warning("tx_stuck", waited_seconds=round(waited, 3), attempts=record.attempt_count)
        handle.publish_kind(UpdateKind.STUCK, waited_seconds=waited, error=timeout.message)

        if self._stuck_handler is None:
            return None

        try:
            attempt = await self._stuck_handler.handle(record)
        except RecoverableError as e:
            # e.g. NonceTooLow: an earlier attempt landed; the next poll finds it
            log.warning("stuck_handling_deferred", error=str(e))
            return None
        except UnrecoverableError as e:
            return self._fail(record, e, "stuck_handling_failed")

        if attempt is not None:
            handle.publish_kind(
                UpdateKind.ATTEMPT,
                attempt=attempt.number,
                kind=attempt.kind.value,
                price=attempt.request.price,
            )
        return None

    async def _finalize(
        self,
        record: TransactionRecord,
        verification: Optional[VerificationSpec],
        handle: WatchHandle,
        log,
    ) -> TransactionOutcome:
        record.transition_to(TransactionState.CONFIRMING, reason=f"depth {record.confirmations}")

        report = await self._verifier.verify(record, record.receipt, verification)
        for warning in report.warnings:
            record.warnings.append(warning)
            handle.publish_kind(UpdateKind.WARNING, code=warning.code, message=warning.message)

        record.transition_to(TransactionState.CONFIRMED, reason="confirmed")
        log.info(
            "tx_confirmed",
            tx_hash=record.tx_hash,
            block=record.block_ref.number,
            confirmations=record.confirmations,
            verified=report.passed,
        )
        return self._outcome(record, verification_error=report.error)

    def _fail(self, record: TransactionRecord, error: Exception, reason: str) -> TransactionOutcome:
        record.transition_to(TransactionState.FAILED, reason=reason, error=error)
        return self._outcome(record, error=error)

    def _outcome(self, record: TransactionRecord, **kwargs) -> TransactionOutcome:
        return TransactionOutcome(
            record=record,
            state=record.state,
            receipt=record.receipt,
            confirmations=record.confirmations,
            warnings=list(record.warnings),
            **kwargs,
        )
