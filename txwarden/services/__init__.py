"""Service layer helpers"""

from .read_cache import BatchReader, ReadCache

__all__ = [
    "ReadCache",
    "BatchReader",
]
