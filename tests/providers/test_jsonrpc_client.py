import httpx
import pytest

from txwarden.config import Settings
from txwarden.core.execution import ReadCall
from txwarden.core.recovery import RpcError
from txwarden.providers import JsonRpcLedgerClient
from txwarden.providers.jsonrpc import decode_receipt


TOKEN = "0x3333333333333333333333333333333333333333"

RECEIPT = {
    "transactionHash": "0xaa",
    "status": "0x1",
    "gasUsed": "0x5208",
    "blockNumber": "0x64",
    "blockHash": "0xbb",
    "effectiveGasPrice": "0x3b9aca00",
    "logs": [
        {
            "address": TOKEN,
            "topics": ["0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"],
            "data": "0x",
        }
    ],
}


class _DummyResponse:
    def __init__(self, payload):
        self._payload = payload

    def raise_for_status(self):
        return None

    def json(self):
        return self._payload


class _DummyClient:
    """Answers each JSON-RPC request through ``handler(method, params)``."""

    def __init__(self, handler, reverse_batches: bool = False):
        self.handler = handler
        self.reverse_batches = reverse_batches
        self.requests = []
        self.closed = False

    def _answer(self, request):
        try:
            return {"jsonrpc": "2.0", "id": request["id"], "result": self.handler(request["method"], request["params"])}
        except RpcError as e:
            return {"jsonrpc": "2.0", "id": request["id"], "error": {"code": e.code, "message": e.message}}

    async def post(self, url, json):
        self.requests.append(json)
        if isinstance(json, list):
            answers = [self._answer(r) for r in json]
            if self.reverse_batches:
                answers.reverse()
            return _DummyResponse(answers)
        return _DummyResponse(self._answer(json))

    async def aclose(self):
        self.closed = True


def make_client(handler, **kwargs):
    dummy = _DummyClient(handler, **kwargs)
    client = JsonRpcLedgerClient(
        rpc_url="http://node.test",
        client=dummy,
        settings=Settings(rpc_url="http://node.test"),
    )
    return client, dummy


def test_decode_receipt():
    receipt = decode_receipt(RECEIPT)

    assert receipt.status is True
    assert receipt.gas_used == 21000
    assert receipt.block_number == 100
    assert receipt.effective_gas_price == 10**9
    assert receipt.logs[0].first_topic.startswith("0xddf252ad")
    assert receipt.block_reference.hash == "0xbb"


def test_decode_failed_receipt():
    receipt = decode_receipt({**RECEIPT, "status": "0x0"})

    assert receipt.status is False


@pytest.mark.asyncio
async def test_receipt_without_block_is_pending():
    client, _ = make_client(lambda method, params: {**RECEIPT, "blockNumber": None})

    assert await client.get_transaction_receipt("0xaa") is None


@pytest.mark.asyncio
async def test_missing_receipt_is_none():
    client, _ = make_client(lambda method, params: None)

    assert await client.get_transaction_receipt("0xaa") is None


@pytest.mark.asyncio
async def test_transaction_count_counts_pending():
    client, dummy = make_client(lambda method, params: "0x2a")

    assert await client.get_transaction_count("0xabc") == 42
    assert dummy.requests[0]["method"] == "eth_getTransactionCount"
    assert dummy.requests[0]["params"] == ["0xabc", "pending"]


@pytest.mark.asyncio
async def test_error_object_raises_rpc_error():
    def handler(method, params):
        raise RpcError("execution reverted: not owner", code=3)

    client, _ = make_client(handler)

    with pytest.raises(RpcError) as exc_info:
        await client.get_gas_price()

    assert exc_info.value.code == 3
    assert exc_info.value.is_revert
    assert exc_info.value.method == "eth_gasPrice"


@pytest.mark.asyncio
async def test_transport_failure_raises_rpc_error():
    client, dummy = make_client(lambda method, params: None)

    async def broken_post(url, json):
        raise httpx.ConnectError("connection refused")

    dummy.post = broken_post

    with pytest.raises(RpcError) as exc_info:
        await client.get_block_number()

    assert "transport error" in str(exc_info.value)
    assert not exc_info.value.is_revert


@pytest.mark.asyncio
async def test_batch_results_matched_by_id():
    def handler(method, params):
        data = params[0]["data"]
        if data == "0x02":
            raise RpcError("execution reverted", code=3)
        return "0x" + data[2:] * 2

    client, dummy = make_client(handler, reverse_batches=True)
    calls = [ReadCall(to=TOKEN, data=bytes([i])) for i in (1, 2, 3)]

    results = await client.batch_call(calls)

    assert results[0] == b"\x01\x01"
    assert isinstance(results[1], RpcError)
    assert results[2] == b"\x03\x03"
    assert len(dummy.requests) == 1


@pytest.mark.asyncio
async def test_pinned_call_uses_block_tag():
    client, dummy = make_client(lambda method, params: "0x")

    assert await client.call(ReadCall(to=TOKEN, data=b"\x01").at_block(100)) == b""
    assert dummy.requests[0]["params"][1] == "0x64"


@pytest.mark.asyncio
async def test_health_check():
    answers = {"eth_chainId": "0x1", "eth_blockNumber": "0x10"}
    client, _ = make_client(lambda method, params: answers[method])

    health = await client.health_check()

    assert health == {"status": "healthy", "chain_id": 1, "head": 16}


@pytest.mark.asyncio
async def test_close_closes_http_client():
    client, dummy = make_client(lambda method, params: None)

    await client.close()

    assert dummy.closed
