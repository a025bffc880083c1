"""
Broadcaster: hands signed payloads to the network exactly once.
"""

import logging
from typing import TYPE_CHECKING, Dict, Tuple

from ..recovery.errors import RpcError, is_already_known, to_submission_error
from .models import AttemptKind, BroadcastAttempt, SignedTransaction, TransactionRecord, TransactionState

if TYPE_CHECKING:
    from ...providers.base import LedgerClient


logger = logging.getLogger(__name__)

SubmissionKey = Tuple[str, int, int]


class Broadcaster:
    """
    Submits signed transactions.

    A submission is keyed by (account, nonce, attempt number). Calling
    ``broadcast`` again with a key that was already accepted returns the
    stored hash without touching the network; a resubmission under the same
    nonce is a new attempt number, never a retry of an old one.
    """

    def __init__(self, client: "LedgerClient"):
        self._client = client
        self._sent: Dict[SubmissionKey, str] = {}

    def _key(self, record: TransactionRecord, signed: SignedTransaction, attempt: int) -> SubmissionKey:
        return (record.account.lower(), signed.request.nonce, attempt)

    async def broadcast(
        self,
        record: TransactionRecord,
        signed: SignedTransaction,
        attempt: int,
        kind: AttemptKind = AttemptKind.ORIGINAL,
    ) -> str:
        """
        Submit a signed payload as attempt ``attempt`` of ``record``.

        Returns:
            The transaction hash

        Raises:
            NonceTooLow, Underpriced, InsufficientFunds, UnknownSubmissionError
        """
        key = self._key(record, signed, attempt)
        if key in self._sent:
            logger.debug(f"Attempt {attempt} for nonce {signed.request.nonce} already submitted")
            return self._sent[key]

        if record.state == TransactionState.SIGNED:
            record.transition_to(TransactionState.BROADCAST, reason=f"attempt {attempt}")

        try:
            tx_hash = await self._client.send_raw_transaction(signed.raw)
        except RpcError as e:
            if not is_already_known(e):
                error = to_submission_error(e, nonce=signed.request.nonce, tx_hash=signed.tx_hash)
                logger.warning(
                    f"Submission rejected ({error.kind.value}) for {record.record_id} "
                    f"nonce={signed.request.nonce} attempt={attempt}: {e.message}"
                )
                raise error from e
            # The node already holds this exact payload
            tx_hash = signed.tx_hash

        self._sent[key] = tx_hash
        record.attempts.append(
            BroadcastAttempt(
                number=attempt,
                kind=kind,
                request=signed.request,
                tx_hash=tx_hash,
            )
        )
        record.tx_hash = tx_hash

        if record.state == TransactionState.BROADCAST:
            record.request = signed.request
            record.transition_to(TransactionState.PENDING, reason="accepted")

        logger.info(
            f"Submitted {kind.value} attempt {attempt} for {record.record_id}: "
            f"{tx_hash} (nonce={signed.request.nonce}, price={signed.request.price})"
        )
        return tx_hash

    def forget(self, account: str, nonce: int) -> None:
        """Drop submission keys for a settled nonce."""
        account = account.lower()
        for key in [k for k in self._sent if k[0] == account and k[1] == nonce]:
            del self._sent[key]
