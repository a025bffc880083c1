"""
Stuck transaction handling: accelerate or cancel a stalled nonce.
"""

import asyncio
import logging
from typing import Optional

from ..recovery.errors import SubmissionExhausted, Underpriced
from .broadcaster import Broadcaster
from .models import AttemptKind, BroadcastAttempt, RetryPolicy, TransactionRecord, TransactionRequest
from .signer import Signer
from .tx_builder import TransactionBuilder


logger = logging.getLogger(__name__)


class StuckTransactionHandler:
    """
    Replace-by-fee for records stalled in pending.

    Both actions reuse the stalled nonce and are mutually exclusive: once a
    cancellation has been issued for a record, it is never accelerated.
    Every broadcast counts against ``RetryPolicy.max_attempts``.
    """

    ACCELERATE = "accelerate"
    CANCEL = "cancel"

    def __init__(
        self,
        signer: Signer,
        broadcaster: Broadcaster,
        builder: TransactionBuilder,
        retry_policy: RetryPolicy,
        default_action: str = ACCELERATE,
    ):
        if default_action not in (self.ACCELERATE, self.CANCEL):
            raise ValueError(f"Unknown stuck action: {default_action}")
        self._signer = signer
        self._broadcaster = broadcaster
        self._builder = builder
        self.retry_policy = retry_policy
        self.default_action = default_action

    async def handle(self, record: TransactionRecord) -> Optional[BroadcastAttempt]:
        """Apply the default action; a pending cancellation is re-bumped instead."""
        if record.cancel_requested or self.default_action == self.CANCEL:
            return await self.cancel(record)
        return await self.accelerate(record)

    async def accelerate(self, record: TransactionRecord) -> Optional[BroadcastAttempt]:
        """
        Resubmit the last attempt at ``bump_factor`` times its price.

        Returns None when a cancellation was already issued.
        """
        if record.cancel_requested:
            logger.info(f"Not accelerating {record.record_id}: cancellation already issued")
            return None

        base = record.latest_attempt.request if record.latest_attempt else record.request
        request = base.bumped(self.retry_policy.bump_factor)
        return await self._resubmit(record, request, AttemptKind.ACCELERATE, self.retry_policy.bump_factor)

    async def cancel(self, record: TransactionRecord) -> BroadcastAttempt:
        """Consume the stalled nonce with a zero-value self-transfer."""
        factor = self.retry_policy.cancel_bump_factor
        latest = record.latest_attempt

        if latest is not None and latest.kind == AttemptKind.CANCEL:
            request = latest.request.bumped(factor)
        else:
            base = latest.request if latest else record.request
            request = self._builder.build_cancellation(base, factor)

        record.cancel_requested = True
        return await self._resubmit(record, request, AttemptKind.CANCEL, factor)

    async def _resubmit(
        self,
        record: TransactionRecord,
        request: TransactionRequest,
        kind: AttemptKind,
        factor: float,
    ) -> BroadcastAttempt:
        policy = self.retry_policy
        last_error: Optional[Exception] = None
        retries = 0

        while True:
            if record.attempt_count >= policy.max_attempts:
                raise SubmissionExhausted(
                    f"{record.attempt_count} attempts used for nonce {record.nonce}",
                    attempts=record.attempt_count,
                    nonce=record.nonce,
                    last_error=last_error,
                )
            if not policy.allows_price(request.price):
                raise SubmissionExhausted(
                    f"Price {request.price} exceeds cap {policy.max_gas_price} for nonce {record.nonce}",
                    attempts=record.attempt_count,
                    nonce=record.nonce,
                    last_error=last_error,
                )

            attempt = record.next_attempt_number()
            signed = await self._signer.sign_transaction(request)

            try:
                await self._broadcaster.broadcast(record, signed, attempt, kind)
                return record.latest_attempt
            except Underpriced as e:
                last_error = e
                logger.info(f"{kind.value} attempt {attempt} for {record.record_id} underpriced, bumping again")
                request = request.bumped(factor)
                await asyncio.sleep(policy.get_delay(retries))
                retries += 1
