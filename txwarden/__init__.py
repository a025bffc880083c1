"""Asynchronous transaction lifecycle engine for account-based ledgers."""

# Execution first: providers and services import its models
from .core.execution import EngineContext, TransactionEngine, TransactionIntent
from .core.recovery import RecoverableError, UnrecoverableError

__version__ = "0.1.0"

__all__ = [
    "EngineContext",
    "TransactionEngine",
    "TransactionIntent",
    "RecoverableError",
    "UnrecoverableError",
]
