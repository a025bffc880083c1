"""
Shared fakes for lifecycle tests: an in-memory ledger and a JSON signer.
"""

import json
from collections import Counter
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

import pytest
from eth_utils import keccak

from txwarden.config import Settings
from txwarden.core.execution import (
    Block,
    EngineContext,
    LogEntry,
    ReadCall,
    Receipt,
    Signer,
    TransactionEngine,
    TransactionRequest,
)
from txwarden.core.recovery import RpcError
from txwarden.providers import LedgerClient
from txwarden.services import ReadCache


class FakeSigner(Signer):
    """Signs by JSON-encoding the request; distinct requests get distinct hashes."""

    def __init__(self):
        self.signed: List[TransactionRequest] = []
        self.fail_after: Optional[int] = None
        self.error: Exception = RuntimeError("signer unavailable")

    async def sign(self, request: TransactionRequest) -> bytes:
        if self.fail_after is not None and len(self.signed) >= self.fail_after:
            raise self.error
        self.signed.append(request)
        return json.dumps(request.to_dict(), sort_keys=True).encode()


class FakeLedger(LedgerClient):
    """
    In-memory ledger.

    - A pending transaction is mined when its receipt is polled, into a new
      block, if its price is at least ``min_inclusion_price`` and the new
      block is at or above ``not_before``
    - Only one transaction per (account, nonce) is ever mined
    - ``get_block_number`` produces a block per call and runs ``head_hooks``
    - Block hashes are deterministic per (height, fork)
    """

    name = "fake"
    supports_batch = True

    def __init__(self, head: int = 100, gas_price: int = 100, gas_estimate: int = 50_000):
        self.head = head
        self.gas_price = gas_price
        self.gas_estimate = gas_estimate
        self.gas_used: Optional[int] = None

        self.tx_counts: Dict[str, List[int]] = {}
        self.reject: Optional[Callable[[dict], Optional[str]]] = None
        self.estimate_error: Optional[RpcError] = None
        self.receipt_error: Optional[RpcError] = None

        self.min_inclusion_price = 0
        self.not_before = 0
        self.revert_destinations: Set[str] = set()
        self.logs_for: Dict[str, Tuple[LogEntry, ...]] = {}
        self.call_results: Dict[Tuple[str, bytes], bytes] = {}
        self.call_errors: Dict[Tuple[str, bytes], RpcError] = {}
        self.head_hooks: Dict[int, Callable[[], None]] = {}

        self.sent: List[dict] = []
        self.txs: Dict[str, dict] = {}
        self.pending: Dict[str, dict] = {}
        self.mined: Dict[str, Receipt] = {}
        self.used_nonces: Dict[Tuple[str, int], str] = {}
        self.forks: Counter = Counter()
        self.calls: Counter = Counter()
        self.closed = False

    def block_hash(self, number: int) -> str:
        return "0x" + format(number * 1000 + self.forks[number], "064x")

    def _advance(self) -> None:
        self.head += 1
        hook = self.head_hooks.pop(self.head, None)
        if hook is not None:
            hook()

    @staticmethod
    def price_of(tx: dict) -> int:
        return int(tx.get("maxFeePerGas") or tx["gasPrice"], 16)

    def reorg(self, number: int, reinclude_at: Optional[int] = None) -> None:
        """Replace every block from ``number`` up; their transactions go back to pending."""
        for height in range(number, self.head + 1):
            self.forks[height] += 1

        for tx_hash, receipt in list(self.mined.items()):
            if receipt.block_number >= number:
                del self.mined[tx_hash]
                tx = self.txs[tx_hash]
                self.pending[tx_hash] = tx
                self.used_nonces.pop((tx["from"].lower(), int(tx["nonce"], 16)), None)

        if reinclude_at is not None:
            self.not_before = reinclude_at

    async def ready(self) -> bool:
        return True

    async def health_check(self) -> Dict[str, str]:
        return {"status": "healthy"}

    async def get_transaction_count(self, account: str) -> int:
        self.calls["get_transaction_count"] += 1
        counts = self.tx_counts.get(account.lower())
        if not counts:
            return 0
        return counts.pop(0) if len(counts) > 1 else counts[0]

    async def estimate_gas(self, request: TransactionRequest) -> int:
        self.calls["estimate_gas"] += 1
        if self.estimate_error is not None:
            raise self.estimate_error
        return self.gas_estimate

    async def get_gas_price(self) -> int:
        self.calls["get_gas_price"] += 1
        return self.gas_price

    async def send_raw_transaction(self, raw: bytes) -> str:
        self.calls["send_raw_transaction"] += 1
        tx = json.loads(raw)
        tx_hash = "0x" + keccak(raw).hex()

        if self.reject is not None:
            message = self.reject(tx)
            if message:
                raise RpcError(message, code=-32000)

        if tx_hash in self.txs:
            raise RpcError("already known", code=-32000)

        self.txs[tx_hash] = tx
        self.pending[tx_hash] = tx
        self.sent.append(tx)
        return tx_hash

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]:
        self.calls["get_transaction_receipt"] += 1
        if self.receipt_error is not None:
            raise self.receipt_error

        if tx_hash in self.mined:
            return self.mined[tx_hash]

        tx = self.pending.get(tx_hash)
        if tx is None:
            return None

        key = (tx["from"].lower(), int(tx["nonce"], 16))
        if key in self.used_nonces:
            return None
        if self.price_of(tx) < self.min_inclusion_price or self.head + 1 < self.not_before:
            return None

        self._advance()
        destination = tx["to"].lower()
        gas_limit = int(tx["gas"], 16)
        receipt = Receipt(
            transaction_hash=tx_hash,
            status=destination not in self.revert_destinations,
            gas_used=self.gas_used if self.gas_used is not None else min(21000, gas_limit),
            block_number=self.head,
            block_hash=self.block_hash(self.head),
            logs=self.logs_for.get(destination, ()),
            effective_gas_price=self.price_of(tx),
        )
        self.mined[tx_hash] = receipt
        self.used_nonces[key] = tx_hash
        del self.pending[tx_hash]
        return receipt

    async def get_block_number(self) -> int:
        self.calls["get_block_number"] += 1
        self._advance()
        return self.head

    async def get_block(self, number: int) -> Optional[Block]:
        self.calls["get_block"] += 1
        if number > self.head:
            return None
        return Block(number=number, hash=self.block_hash(number), parent_hash=self.block_hash(number - 1))

    def _answer(self, call: ReadCall) -> bytes:
        key = (call.to.lower(), call.data)
        if key in self.call_errors:
            raise self.call_errors[key]
        return self.call_results.get(key, b"")

    async def call(self, call: ReadCall) -> bytes:
        self.calls["call"] += 1
        return self._answer(call)

    async def batch_call(self, calls: List[ReadCall]) -> List[Union[bytes, Exception]]:
        self.calls["batch_call"] += 1
        results: List[Union[bytes, Exception]] = []
        for call in calls:
            try:
                results.append(self._answer(call))
            except RpcError as e:
                results.append(e)
        return results

    async def close(self) -> None:
        self.closed = True


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def signer() -> FakeSigner:
    return FakeSigner()


@pytest.fixture
def fast_settings() -> Settings:
    """Settings with timings small enough for tests."""
    return Settings(
        chain_id=1,
        poll_interval_seconds=0.01,
        stuck_timeout_seconds=0.05,
        retry_initial_delay_seconds=0,
        retry_max_delay_seconds=0,
    )


@pytest.fixture
def make_engine(ledger: FakeLedger, signer: FakeSigner, fast_settings: Settings):
    """Factory for engines over the fake ledger; keyword args override settings."""

    def factory(**overrides) -> TransactionEngine:
        cfg = fast_settings.model_copy(update=overrides) if overrides else fast_settings
        context = EngineContext(client=ledger, read_cache=ReadCache(settings=cfg), settings=cfg)
        return TransactionEngine(context, signer)

    return factory


@pytest.fixture
def engine(make_engine) -> TransactionEngine:
    return make_engine()
