from abc import ABC, abstractmethod

from .models import SignedTransaction, TransactionRequest


class Signer(ABC):
    """Produces signed raw payloads. Key custody lives behind this interface."""

    @abstractmethod
    async def sign(self, request: TransactionRequest) -> bytes:
        """Sign a request, returning the raw payload bytes"""
        pass

    async def sign_transaction(self, request: TransactionRequest) -> SignedTransaction:
        raw = await self.sign(request)
        return SignedTransaction.from_raw(request, raw)
