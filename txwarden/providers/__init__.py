"""Ledger client providers"""

from .base import LedgerClient, Provider
from .jsonrpc import JsonRpcLedgerClient

__all__ = [
    "Provider",
    "LedgerClient",
    "JsonRpcLedgerClient",
]
