import asyncio
import time
from collections import OrderedDict
from typing import Any, Callable, Optional, Tuple
from dataclasses import dataclass


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    stored_at: float
    expires_at: float


class TTLCache:
    """In-memory TTL cache with LRU eviction.

    Entries are immutable: a refresh stores a new entry under the key, so a
    reader holding the old one never sees it change.
    """

    def __init__(
        self,
        default_ttl: float = 300,
        max_size: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self.max_size = max_size
        self._clock = clock
        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = asyncio.Lock()

    def now(self) -> float:
        return self._clock()

    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        async with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None

            if self._clock() >= entry.expires_at:
                del self._cache[key]
                return None

            self._cache.move_to_end(key)
            return entry

    async def get(self, key: str) -> Optional[Any]:
        entry = await self.get_entry(key)
        return entry.value if entry else None

    async def lookup(self, key: str) -> Tuple[bool, Any]:
        """(hit, value); distinguishes a cached None from a miss."""
        entry = await self.get_entry(key)
        if entry is None:
            return False, None
        return True, entry.value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> CacheEntry:
        async with self._lock:
            ttl = self.default_ttl if ttl is None else ttl
            now = self._clock()
            entry = CacheEntry(value=value, stored_at=now, expires_at=now + ttl)

            self._cache[key] = entry
            self._cache.move_to_end(key)

            # Evict least recently used
            while len(self._cache) > self.max_size:
                self._cache.popitem(last=False)

            return entry

    async def invalidate(self, key: str) -> None:
        async with self._lock:
            self._cache.pop(key, None)

    async def clear(self) -> None:
        async with self._lock:
            self._cache.clear()

    def size(self) -> int:
        return len(self._cache)
