"""
Reorg detection for included transactions.
"""

import logging
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from ..recovery.errors import ReorgDetected
from .models import AttemptStatus, BlockReference, TransactionRecord, TransactionState

if TYPE_CHECKING:
    from ...providers.base import LedgerClient


logger = logging.getLogger(__name__)

ReorgListener = Callable[[TransactionRecord, ReorgDetected], None]


class ReorgMonitor:
    """
    Watches inclusion blocks until they are deep enough to trust.

    Keeps the last hash seen per block number, for the newest
    ``history_blocks`` heights only. A record whose inclusion
    block is gone, or now carries a different hash, is requeued to pending
    so its receipt is discovered again.
    """

    def __init__(
        self,
        client: "LedgerClient",
        listeners: Optional[List[ReorgListener]] = None,
        history_blocks: int = 256,
    ):
        self._client = client
        self.history_blocks = history_blocks
        self._listeners: List[ReorgListener] = list(listeners or [])
        self._seen: Dict[int, str] = {}

    def add_listener(self, listener: ReorgListener) -> None:
        self._listeners.append(listener)

    def observe(self, block: BlockReference) -> None:
        """Remember the hash seen at a height."""
        self._seen[block.number] = block.hash
        if len(self._seen) > self.history_blocks:
            self.prune(max(self._seen) - self.history_blocks + 1)

    def seen_hash(self, number: int) -> Optional[str]:
        return self._seen.get(number)

    async def check(self, record: TransactionRecord) -> Optional[ReorgDetected]:
        """
        Re-fetch the record's inclusion block and compare hashes.

        Returns the ReorgDetected event (after requeueing the record), or
        None when the inclusion still holds. RpcError propagates to the
        caller's poll loop.
        """
        ref = record.block_ref
        if ref is None:
            return None

        block = await self._client.get_block(ref.number)
        if block is not None and ref.matches(block.hash):
            self.observe(block.reference)
            return None

        current_hash = block.hash if block is not None else None
        reorg = ReorgDetected(
            f"Block {ref.number} no longer includes {record.tx_hash}",
            tx_hash=record.tx_hash,
            stale_block=ref,
            current_hash=current_hash,
        )
        logger.warning(
            f"Reorg at block {ref.number} for {record.record_id}: "
            f"had {ref.hash}, now {current_hash or 'missing'}"
        )

        if block is not None:
            self.observe(block.reference)
        else:
            self._seen.pop(ref.number, None)

        self._requeue(record, reorg)

        for listener in self._listeners:
            listener(record, reorg)

        return reorg

    def _requeue(self, record: TransactionRecord, reorg: ReorgDetected) -> None:
        # Any attempt may win the nonce on the new fork
        for attempt in record.attempts:
            if attempt.status != AttemptStatus.PENDING:
                attempt.status = AttemptStatus.PENDING
        record.block_ref = None
        record.receipt = None
        record.confirmations = 0
        record.transition_to(TransactionState.PENDING, reason="reorg", error=reorg)

    def prune(self, below: int) -> int:
        """Forget heights below ``below``; returns how many were dropped."""
        stale = [n for n in self._seen if n < below]
        for number in stale:
            del self._seen[number]
        return len(stale)
