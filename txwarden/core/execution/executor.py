"""
Transaction engine for on-chain execution.

Handles the full lifecycle of a caller intent:
- Nonce reservation and gas estimation
- Signing (injected) and submission, with NonceTooLow / Underpriced recovery
- Confirmation tracking with reorg detection and stuck handling
- Post-confirmation verification
- Nonce settlement once the record is terminal
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ...config import Settings, settings as default_settings
from ...logging_config import lifecycle_context
from ...providers.base import LedgerClient
from ...providers.jsonrpc import JsonRpcLedgerClient
from ...services.read_cache import BatchReader, ReadCache
from ..recovery.errors import (
    ExecutionReverted,
    NonceTooLow,
    SubmissionExhausted,
    Underpriced,
)
from .broadcaster import Broadcaster
from .models import (
    BroadcastAttempt,
    ConfirmationPolicy,
    RetryPolicy,
    TransactionIntent,
    TransactionOutcome,
    TransactionRecord,
    TransactionState,
    VerificationSpec,
)
from .nonce_manager import NonceManager
from .reorg_monitor import ReorgMonitor
from .signer import Signer
from .state_machine import log_transition
from .stuck_handler import StuckTransactionHandler
from .tracker import ConfirmationTracker, WatchHandle
from .tx_builder import TransactionBuilder
from .verifier import ExecutionVerifier


logger = logging.getLogger(__name__)


@dataclass
class EngineContext:
    """Shared handles every lifecycle component is built from."""
    client: LedgerClient
    read_cache: ReadCache
    settings: Settings = field(default_factory=lambda: default_settings)

    @classmethod
    def create(
        cls,
        settings: Optional[Settings] = None,
        client: Optional[LedgerClient] = None,
    ) -> "EngineContext":
        """Context with a pooled JSON-RPC client unless one is given."""
        cfg = settings or default_settings
        return cls(
            client=client or JsonRpcLedgerClient(settings=cfg),
            read_cache=ReadCache(settings=cfg),
            settings=cfg,
        )


class TransactionEngine:
    """
    Drives transactions from intent to a terminal outcome.

    Responsibilities:
    - Build, sign and broadcast, recovering from stale nonces and low prices
    - Start one confirmation watch per record
    - Expose accelerate / cancel (on-chain) and local watch cancellation
    - Confirm or release each record's nonce when its watch ends
    """

    def __init__(
        self,
        context: EngineContext,
        signer: Signer,
        nonce_manager: Optional[NonceManager] = None,
        retry_policy: Optional[RetryPolicy] = None,
        stuck_action: str = StuckTransactionHandler.ACCELERATE,
    ):
        self.context = context
        self.settings = context.settings
        self._client = context.client
        self._signer = signer

        self.nonce_manager = nonce_manager or NonceManager(self._client)
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)

        self.builder = TransactionBuilder(self._client, self.nonce_manager, self.settings)
        self.broadcaster = Broadcaster(self._client)
        self.reader = BatchReader(self._client, context.read_cache)
        self.verifier = ExecutionVerifier(self.reader, self.settings.possibly_incomplete_gas_ratio)
        self.reorg_monitor = ReorgMonitor(
            self._client,
            history_blocks=self.settings.reorg_history_blocks,
        )
        self.stuck_handler = StuckTransactionHandler(
            signer,
            self.broadcaster,
            self.builder,
            self.retry_policy,
            default_action=stuck_action,
        )
        self.tracker = ConfirmationTracker(
            self._client,
            self.reorg_monitor,
            self.verifier,
            self.stuck_handler,
        )

        self._records: Dict[str, TransactionRecord] = {}
        self._handles: Dict[str, WatchHandle] = {}
        # Terminal records, oldest first, bounded by finished_record_limit
        self._finished: "OrderedDict[str, TransactionRecord]" = OrderedDict()

    async def submit(
        self,
        intent: TransactionIntent,
        policy: Optional[ConfirmationPolicy] = None,
        verification: Optional[VerificationSpec] = None,
    ) -> WatchHandle:
        """
        Build, sign and broadcast an intent, then start watching it.

        Raises:
            EstimationError: The call would revert; nothing was sent
            SubmissionError: The network refused it (record is failed)
            SubmissionExhausted: Retries ran out before acceptance
        """
        policy = policy or ConfirmationPolicy.for_intent(intent, self.settings)

        request = await self.builder.build(intent)
        record = TransactionRecord(intent=intent, request=request)
        record.listeners.append(log_transition)
        self._records[record.record_id] = record

        with lifecycle_context(record):
            await self._submit(record)
            handle = self.tracker.watch(record, policy, verification, on_finish=self._settle)
        self._handles[record.record_id] = handle
        return handle

    async def execute(
        self,
        intent: TransactionIntent,
        policy: Optional[ConfirmationPolicy] = None,
        verification: Optional[VerificationSpec] = None,
    ) -> TransactionOutcome:
        """Submit and wait for the outcome."""
        handle = await self.submit(intent, policy, verification)
        return await handle.result()

    async def _submit(self, record: TransactionRecord) -> None:
        policy = self.retry_policy
        request = record.request
        last_error: Optional[Exception] = None

        while True:
            if record.attempt_count >= policy.max_attempts or not policy.allows_price(request.price):
                error = SubmissionExhausted(
                    f"Gave up on {record.record_id} after {record.attempt_count} attempts",
                    attempts=record.attempt_count,
                    nonce=request.nonce,
                    last_error=last_error,
                )
                await self._abort(record, error, "exhausted")
                raise error

            attempt = record.next_attempt_number()
            if attempt > 1:
                await asyncio.sleep(policy.get_delay(attempt - 2))

            try:
                signed = await self._signer.sign_transaction(request)
                record.transition_to(TransactionState.SIGNED, reason=f"attempt {attempt}")
                await self.broadcaster.broadcast(record, signed, attempt)
                return

            except NonceTooLow as e:
                last_error = e
                nonce = await self.nonce_manager.replace_stale(record.account, request.nonce)
                request = self.builder.rebuild(request, nonce)
                record.request = request
                record.transition_to(TransactionState.BUILT, reason="nonce_too_low")

            except Underpriced as e:
                last_error = e
                request = request.bumped(policy.bump_factor)
                record.request = request
                record.transition_to(TransactionState.BUILT, reason="underpriced")

            except Exception as e:
                await self._abort(record, e, "submission_failed")
                raise

    async def _abort(self, record: TransactionRecord, error: Exception, reason: str) -> None:
        await self.nonce_manager.release(record.account, record.nonce)
        record.transition_to(TransactionState.FAILED, reason=reason, error=error)
        self._retire(record)

    async def _settle(self, outcome: TransactionOutcome) -> None:
        record = outcome.record
        consumed = (
            outcome.state in (TransactionState.CONFIRMED, TransactionState.REPLACED)
            or isinstance(outcome.error, ExecutionReverted)
        )

        if consumed:
            await self.nonce_manager.confirm(record.account, record.nonce)
        else:
            await self.nonce_manager.release(record.account, record.nonce)
        self.broadcaster.forget(record.account, record.nonce)

        logger.info(
            f"Settled {record.record_id}: {outcome.state.value}, "
            f"nonce {record.nonce} {'consumed' if consumed else 'released'}"
        )
        self._retire(record)

    def _retire(self, record: TransactionRecord) -> None:
        """Move a terminal record out of the live maps into the bounded finished store."""
        self._records.pop(record.record_id, None)
        self._handles.pop(record.record_id, None)
        self._finished[record.record_id] = record
        self._finished.move_to_end(record.record_id)
        while len(self._finished) > self.settings.finished_record_limit:
            self._finished.popitem(last=False)

    def _require_pending(self, record_id: str) -> TransactionRecord:
        record = self.get_record(record_id)
        if record is None:
            raise KeyError(f"Unknown record: {record_id}")
        if record.state != TransactionState.PENDING:
            raise ValueError(f"Record {record_id} is {record.state.value}, not pending")
        return record

    async def accelerate(self, record_id: str) -> Optional[BroadcastAttempt]:
        """Resubmit a pending record at a bumped price."""
        return await self.stuck_handler.accelerate(self._require_pending(record_id))

    async def cancel(self, record_id: str) -> BroadcastAttempt:
        """Retract a pending record on-chain with a zero-value self-transfer."""
        return await self.stuck_handler.cancel(self._require_pending(record_id))

    def cancel_watch(self, record_id: str) -> bool:
        """Stop tracking locally; nothing is sent to the network."""
        handle = self._handles.get(record_id)
        if handle is None:
            return False
        return handle.cancel()

    def get_record(self, record_id: str) -> Optional[TransactionRecord]:
        """Live or recently finished record; older finished records are evicted."""
        record = self._records.get(record_id)
        if record is None:
            record = self._finished.get(record_id)
        return record

    def get_handle(self, record_id: str) -> Optional[WatchHandle]:
        return self._handles.get(record_id)

    def active_records(self) -> List[TransactionRecord]:
        return [r for r in self._records.values() if not r.is_terminal]

    async def close(self) -> None:
        """Cancel running watches and close the ledger client."""
        for handle in self._handles.values():
            handle.cancel()
        await self._client.close()
