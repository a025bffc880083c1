"""
Transaction builder: turns a caller intent into an unsigned request.
"""

import logging
from dataclasses import replace
from decimal import ROUND_CEILING, Decimal
from typing import TYPE_CHECKING, Optional

from eth_utils import is_address, to_checksum_address

from ...config import Settings, settings as default_settings
from ..recovery.errors import EstimationError, RpcError
from .models import TransactionIntent, TransactionRequest
from .nonce_manager import NonceManager

if TYPE_CHECKING:
    from ...providers.base import LedgerClient


logger = logging.getLogger(__name__)


def normalize_address(address: str) -> str:
    """Checksum hex addresses; anything else passes through unchanged."""
    if is_address(address):
        return to_checksum_address(address)
    return address


def apply_gas_buffer(estimate: int, ratio: float) -> int:
    """ceil(estimate * (1 + ratio))"""
    buffered = Decimal(estimate) * (Decimal(1) + Decimal(str(ratio)))
    return int(buffered.to_integral_value(rounding=ROUND_CEILING))


class TransactionBuilder:
    """
    Builds unsigned transaction requests.

    Handles:
    - Nonce reservation
    - Gas estimation with a safety buffer
    - Gas price lookup unless the caller fixed one
    - Cancellation requests for a stalled nonce

    Never signs.
    """

    def __init__(
        self,
        client: "LedgerClient",
        nonce_manager: NonceManager,
        settings: Optional[Settings] = None,
    ):
        self._client = client
        self._nonce_manager = nonce_manager
        self._settings = settings or default_settings

    async def estimate_gas_limit(self, request: TransactionRequest) -> int:
        """
        Estimate gas for a request and apply the configured buffer.

        Raises:
            EstimationError: The node simulated the call and it reverted
            RpcError: The node could not be reached
        """
        try:
            estimate = await self._client.estimate_gas(request)
        except RpcError as e:
            if e.is_revert:
                raise EstimationError(f"Gas estimation reverted: {e.message}", reason=e.data) from e
            raise

        return apply_gas_buffer(estimate, self._settings.gas_buffer_ratio)

    async def build(self, intent: TransactionIntent) -> TransactionRequest:
        """
        Build a request for an intent, reserving its nonce.

        The nonce is released again if anything after the reservation fails.
        """
        account = normalize_address(intent.account)
        nonce = await self._nonce_manager.reserve(account)

        try:
            gas_price = intent.gas_price
            if intent.fees is None and gas_price is None:
                gas_price = await self._client.get_gas_price()

            request = TransactionRequest(
                account=account,
                destination=normalize_address(intent.destination),
                value=intent.value,
                payload=intent.payload,
                gas_limit=intent.gas_limit or 0,
                nonce=nonce,
                gas_price=None if intent.fees is not None else gas_price,
                fees=intent.fees,
                chain_id=intent.chain_id if intent.chain_id is not None else self._settings.chain_id,
            )

            if intent.gas_limit is None:
                gas_limit = await self.estimate_gas_limit(request)
                request = replace(request, gas_limit=gas_limit)
        except Exception:
            await self._nonce_manager.release(account, nonce)
            raise

        logger.info(
            f"Built request for {account}: nonce={nonce}, gas={request.gas_limit}, price={request.price}"
        )
        return request

    def rebuild(self, request: TransactionRequest, nonce: int) -> TransactionRequest:
        """Same request at a fresh nonce (after NonceTooLow)."""
        return request.with_nonce(nonce)

    def build_cancellation(self, request: TransactionRequest, factor: float) -> TransactionRequest:
        """
        Zero-value self-transfer that consumes ``request``'s nonce.

        Priced at ``factor`` times the request's price so the node accepts
        it as a replacement.
        """
        bumped = request.bumped(factor)
        return TransactionRequest(
            account=request.account,
            destination=request.account,
            value=0,
            payload=b"",
            gas_limit=self._settings.fallback_gas_limit,
            nonce=request.nonce,
            gas_price=bumped.gas_price,
            fees=bumped.fees,
            chain_id=request.chain_id,
        )
