from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union

from ..core.execution.models import Block, ReadCall, Receipt, TransactionRequest


class Provider(ABC):
    """Base provider interface"""

    name: str
    timeout_s: float = 10

    @abstractmethod
    async def ready(self) -> bool:
        """Check if provider is ready to serve requests"""
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Return provider health status"""
        pass


class LedgerClient(Provider):
    """
    Capability surface the lifecycle engine needs from a ledger node.

    Implementations raise ``RpcError`` for node and transport failures. A
    reverting simulation in ``estimate_gas`` must raise an ``RpcError`` whose
    ``is_revert`` is true.
    """

    supports_batch: bool = False

    @abstractmethod
    async def get_transaction_count(self, account: str) -> int:
        """Next nonce for the account, counting mempool transactions"""
        pass

    @abstractmethod
    async def estimate_gas(self, request: TransactionRequest) -> int:
        """Gas units the request would consume"""
        pass

    @abstractmethod
    async def get_gas_price(self) -> int:
        """Current gas price in wei"""
        pass

    @abstractmethod
    async def send_raw_transaction(self, raw: bytes) -> str:
        """Broadcast a signed payload, returning its transaction hash"""
        pass

    @abstractmethod
    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]:
        """Receipt if the transaction is in a block, otherwise None"""
        pass

    @abstractmethod
    async def get_block_number(self) -> int:
        """Current chain head"""
        pass

    @abstractmethod
    async def get_block(self, number: int) -> Optional[Block]:
        """Block at height, or None if the node has no block there"""
        pass

    @abstractmethod
    async def call(self, call: ReadCall) -> bytes:
        """Read-only call"""
        pass

    async def batch_call(self, calls: List[ReadCall]) -> List[Union[bytes, Exception]]:
        """
        Several read-only calls in one round trip.

        Each slot holds the call's return bytes or the exception it failed
        with. Only meaningful when ``supports_batch`` is true.
        """
        raise NotImplementedError(f"{type(self).__name__} does not batch calls")

    async def close(self) -> None:
        """Release pooled connections"""
        return None
