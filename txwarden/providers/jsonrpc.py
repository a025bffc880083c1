"""
JSON-RPC 2.0 ledger client over a pooled httpx connection.

One instance is meant to be shared by every watch loop in the process.
"""

import itertools
import logging
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx

from ..config import Settings, settings as default_settings
from ..core.execution.models import Block, LogEntry, ReadCall, Receipt, TransactionRequest
from ..core.recovery.errors import RpcError
from .base import LedgerClient


logger = logging.getLogger(__name__)


def _to_int(value: Optional[str], default: int = 0) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    return int(value, 16)


def _to_bytes(value: Optional[str]) -> bytes:
    if not value or value == "0x":
        return b""
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def _block_tag(block: Union[int, str]) -> str:
    return hex(block) if isinstance(block, int) else block


def decode_receipt(data: Dict[str, Any]) -> Receipt:
    logs = tuple(
        LogEntry(
            address=log.get("address", ""),
            topics=tuple(log.get("topics") or ()),
            data=log.get("data", "0x"),
        )
        for log in data.get("logs") or ()
    )
    effective_price = data.get("effectiveGasPrice")
    return Receipt(
        transaction_hash=data["transactionHash"],
        # Pre-Byzantium receipts carry no status field
        status=_to_int(data.get("status"), default=1) == 1,
        gas_used=_to_int(data["gasUsed"]),
        block_number=_to_int(data["blockNumber"]),
        block_hash=data["blockHash"],
        logs=logs,
        effective_gas_price=_to_int(effective_price) if effective_price is not None else None,
    )


def decode_block(data: Dict[str, Any]) -> Block:
    return Block(
        number=_to_int(data["number"]),
        hash=data["hash"],
        parent_hash=data["parentHash"],
    )


class JsonRpcLedgerClient(LedgerClient):
    """LedgerClient for EVM-style JSON-RPC nodes."""

    name = "jsonrpc"
    supports_batch = True

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
    ):
        cfg = settings or default_settings
        self.rpc_url = rpc_url or cfg.rpc_url
        self.timeout_s = cfg.rpc_timeout_seconds
        self._client = client or httpx.AsyncClient(
            timeout=self.timeout_s,
            limits=httpx.Limits(max_connections=cfg.rpc_max_connections),
        )
        self._ids = itertools.count(1)

    def _error_from_payload(self, method: str, error: Dict[str, Any]) -> RpcError:
        return RpcError(
            error.get("message", "RPC error"),
            code=error.get("code"),
            data=error.get("data"),
            method=method,
        )

    async def _post(self, method: str, payload: Any) -> Any:
        try:
            response = await self._client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise RpcError(f"{method} transport error: {e}", method=method) from e
        except ValueError as e:
            raise RpcError(f"{method} returned invalid JSON: {e}", method=method) from e

    async def _rpc_call(self, method: str, params: List[Any]) -> Any:
        """Make a single RPC call."""
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": next(self._ids),
        }

        result = await self._post(method, payload)

        if "error" in result:
            raise self._error_from_payload(method, result["error"])

        return result.get("result")

    async def _rpc_batch(self, requests: List[Tuple[str, List[Any]]]) -> List[Union[Any, RpcError]]:
        """Send a JSON-RPC array batch; each slot is a result or an RpcError."""
        if not requests:
            return []

        ids = [next(self._ids) for _ in requests]
        payload = [
            {"jsonrpc": "2.0", "method": method, "params": params, "id": request_id}
            for request_id, (method, params) in zip(ids, requests)
        ]

        body = await self._post("batch", payload)
        if isinstance(body, dict):
            # Some nodes answer a whole batch with one error object
            error = self._error_from_payload("batch", body.get("error") or {"message": "Malformed batch response"})
            return [error for _ in requests]

        # Responses may come back in any order
        by_id = {item.get("id"): item for item in body}
        results: List[Union[Any, RpcError]] = []
        for request_id, (method, _) in zip(ids, requests):
            item = by_id.get(request_id)
            if item is None:
                results.append(RpcError("Missing response in batch", method=method))
            elif "error" in item:
                results.append(self._error_from_payload(method, item["error"]))
            else:
                results.append(item.get("result"))
        return results

    async def ready(self) -> bool:
        return bool(self.rpc_url)

    async def health_check(self) -> Dict[str, Any]:
        if not await self.ready():
            return {"status": "unavailable", "reason": "RPC URL not configured"}

        try:
            chain_id = await self._rpc_call("eth_chainId", [])
            head = await self.get_block_number()
            return {"status": "healthy", "chain_id": _to_int(chain_id), "head": head}
        except RpcError as e:
            return {"status": "error", "reason": str(e)}

    async def get_transaction_count(self, account: str) -> int:
        return _to_int(await self._rpc_call("eth_getTransactionCount", [account, "pending"]))

    async def estimate_gas(self, request: TransactionRequest) -> int:
        call_obj = {
            "from": request.account,
            "to": request.destination,
            "data": "0x" + request.payload.hex(),
        }
        if request.value > 0:
            call_obj["value"] = hex(request.value)
        return _to_int(await self._rpc_call("eth_estimateGas", [call_obj]))

    async def get_gas_price(self) -> int:
        return _to_int(await self._rpc_call("eth_gasPrice", []))

    async def send_raw_transaction(self, raw: bytes) -> str:
        tx_hash = await self._rpc_call("eth_sendRawTransaction", ["0x" + raw.hex()])
        logger.debug("Raw transaction accepted: %s", tx_hash)
        return tx_hash

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]:
        data = await self._rpc_call("eth_getTransactionReceipt", [tx_hash])
        # Some nodes return a receipt shell before the block is sealed
        if not data or data.get("blockNumber") is None:
            return None
        return decode_receipt(data)

    async def get_block_number(self) -> int:
        return _to_int(await self._rpc_call("eth_blockNumber", []))

    async def get_block(self, number: int) -> Optional[Block]:
        data = await self._rpc_call("eth_getBlockByNumber", [hex(number), False])
        if not data:
            return None
        return decode_block(data)

    def _call_params(self, call: ReadCall) -> List[Any]:
        call_obj: Dict[str, Any] = {"to": call.to, "data": "0x" + call.data.hex()}
        if call.sender:
            call_obj["from"] = call.sender
        return [call_obj, _block_tag(call.block)]

    async def call(self, call: ReadCall) -> bytes:
        return _to_bytes(await self._rpc_call("eth_call", self._call_params(call)))

    async def batch_call(self, calls: List[ReadCall]) -> List[Union[bytes, Exception]]:
        raw = await self._rpc_batch([("eth_call", self._call_params(c)) for c in calls])
        return [r if isinstance(r, Exception) else _to_bytes(r) for r in raw]

    async def close(self) -> None:
        """Close HTTP client."""
        await self._client.aclose()
