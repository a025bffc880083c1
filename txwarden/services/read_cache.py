"""TTL-cached, deduplicated and batchable read-only queries."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from ..cache import TTLCache
from ..config import Settings, settings as default_settings
from ..core.execution.models import ReadCall, ReadResult
from ..core.recovery.errors import RpcError

if TYPE_CHECKING:
    from ..providers.base import LedgerClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ReadCache:
    """
    ``get_or_fetch`` over a TTL store.

    Within an entry's TTL the loader runs at most once per key: concurrent
    misses share one in-flight load. Loader errors are never cached.
    """

    def __init__(
        self,
        store: Optional[TTLCache] = None,
        *,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        settings: Optional[Settings] = None,
    ) -> None:
        cfg = settings or default_settings
        self._store = store or TTLCache(
            default_ttl=cfg.read_cache_ttl_seconds if ttl is None else ttl,
            max_size=cfg.read_cache_max_size,
            clock=clock,
        )
        self._inflight: Dict[str, asyncio.Future] = {}
        self.hits = 0
        self.loads = 0

    async def get_or_fetch(
        self,
        key: str,
        loader: Callable[[], Awaitable[T]],
        *,
        ttl: Optional[float] = None,
    ) -> T:
        hit, value = await self._store.lookup(key)
        if hit:
            self.hits += 1
            return value

        pending = self._inflight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            self.loads += 1
            value = await loader()
            await self._store.set(key, value, ttl=ttl)
            future.set_result(value)
            return value
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Waiters re-raise it; mark retrieved so an unawaited future stays quiet
            future.exception()
            raise
        finally:
            self._inflight.pop(key, None)

    async def peek(self, key: str) -> Tuple[bool, Any]:
        """(hit, value) without loading."""
        hit, value = await self._store.lookup(key)
        if hit:
            self.hits += 1
        return hit, value

    async def put(self, key: str, value: Any, *, ttl: Optional[float] = None) -> None:
        await self._store.set(key, value, ttl=ttl)

    async def invalidate(self, key: str) -> None:
        await self._store.invalidate(key)

    async def clear(self) -> None:
        await self._store.clear()

    def size(self) -> int:
        return self._store.size()


class BatchReader:
    """Issues independent read calls, in one round trip where the client batches."""

    def __init__(self, client: "LedgerClient", cache: Optional[ReadCache] = None) -> None:
        self._client = client
        self._cache = cache

    async def read(self, call: ReadCall) -> bytes:
        """Single call; answers pinned to a block number are cached."""
        if self._cache is not None and call.is_pinned:
            return await self._cache.get_or_fetch(call.cache_key, lambda: self._client.call(call))
        return await self._client.call(call)

    async def aggregate(self, calls: Sequence[ReadCall]) -> List[ReadResult]:
        """
        Run every call; one failing call never fails the others.

        Results come back in the order of ``calls``.
        """
        calls = list(calls)
        results: List[Optional[ReadResult]] = [None] * len(calls)

        to_fetch: List[int] = []
        for index, call in enumerate(calls):
            if self._cache is not None and call.is_pinned:
                hit, value = await self._cache.peek(call.cache_key)
                if hit:
                    results[index] = ReadResult(call=call, value=value)
                    continue
            to_fetch.append(index)

        if to_fetch:
            fetched = await self._fetch([calls[i] for i in to_fetch])
            for index, value in zip(to_fetch, fetched):
                call = calls[index]
                if isinstance(value, BaseException):
                    logger.debug("Read call to %s failed: %s", call.to, value)
                    results[index] = ReadResult(call=call, error=value)
                    continue
                if self._cache is not None and call.is_pinned:
                    await self._cache.put(call.cache_key, value)
                results[index] = ReadResult(call=call, value=value)

        return [r for r in results if r is not None]

    async def _fetch(self, calls: List[ReadCall]) -> list:
        if self._client.supports_batch:
            try:
                return await self._client.batch_call(calls)
            except RpcError as exc:
                # The round trip itself failed; every call in it failed with it
                return [exc for _ in calls]
        return await asyncio.gather(
            *(self._client.call(call) for call in calls),
            return_exceptions=True,
        )
