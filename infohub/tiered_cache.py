"""
Read-through cache: process memory (L1), database (L2), origin (L3).
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from functools import wraps
from typing import Optional, Any, Callable, Awaitable, Tuple, Set
from infohub.postgres_cache import PostgresCache

logger = logging.getLogger(__name__)


class CacheSource(str, Enum):
    """Where a served value came from."""
    HIT = "HIT"
    DB = "DB"
    MISS = "MISS"
    STALE = "STALE"
    DEFAULT = "DEFAULT"


@dataclass
class CacheResult:
    value: Any
    source: CacheSource


class EmptyResultError(Exception):
    """Origin fetch returned nothing usable."""
    pass


class MemoryCache:
    """
    Process-local LRU cache.

    At most `max_entries` keys are kept; the least recently used key is
    evicted first. An entry older than the caller's TTL is stale but still
    available as a fallback until it is evicted.
    """

    def __init__(self, clock: Callable[[], float] = time.time, max_entries: int = 1024):
        self.clock = clock
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, Tuple[Any, float]]" = OrderedDict()

    def __len__(self):
        return len(self._entries)

    def _touch(self, key: str) -> Optional[Tuple[Any, float]]:
        entry = self._entries.get(key)
        if entry is not None:
            self._entries.move_to_end(key)
        return entry

    def get(self, key: str, ttl: int) -> Optional[Any]:
        """Return the value if it was cached less than `ttl` seconds ago."""
        entry = self._touch(key)
        if entry is None:
            return None
        value, cached_at = entry
        if self.clock() - cached_at < ttl:
            return value
        return None

    def get_stale(self, key: str) -> Optional[Any]:
        """Return the last value for `key` regardless of age."""
        entry = self._touch(key)
        return entry[0] if entry else None

    def set(self, key: str, value: Any):
        self._entries[key] = (value, self.clock())
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("L1 evicted %s", evicted)

    def clear(self):
        self._entries.clear()


class TieredCache:
    """
    Serve a keyed dataset from the fastest source that is fresh enough.

    Concurrent misses on the same key each call the origin; there is no
    request coalescing.
    """

    def __init__(self, durable: Optional[PostgresCache] = None, memory: Optional[MemoryCache] = None):
        """
        Args:
            durable: L2 store, or None when no database is configured
            memory: L1 store
        """
        self.durable = durable
        self.memory = memory or MemoryCache()
        self._pending: Set[asyncio.Task] = set()

    async def _read_durable(self, key: str) -> Optional[Any]:
        if self.durable is None:
            return None
        try:
            return await asyncio.to_thread(self.durable.get, key)
        except Exception as e:
            logger.warning("L2 cache read failed for %s: %s", key, e)
            return None

    async def _write_durable(self, key: str, value: Any, ttl: int):
        try:
            await asyncio.to_thread(self.durable.set, key, value, ttl)
        except Exception as e:
            logger.warning("L2 cache write failed for %s: %s", key, e)

    def _spawn_durable_write(self, key: str, value: Any, ttl: int):
        if self.durable is None:
            return
        task = asyncio.create_task(self._write_durable(key, value, ttl))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def get_or_fetch(
        self,
        key: str,
        ttl: int,
        fetcher: Callable[[], Awaitable[Any]],
        default: Optional[Callable[[], Any]] = None
    ) -> CacheResult:
        """
        Read `key` through L1, L2, then `fetcher`.

        Args:
            key: Cache key
            ttl: Freshness bound in seconds, applied to both L1 and L2
            fetcher: Coroutine function producing a fresh value; raising or
                returning None/empty counts as failure
            default: Factory for a neutral value served when the origin fails
                and nothing was ever cached

        Returns:
            CacheResult with the value and where it came from

        Raises:
            The origin's exception, only when there is neither a stale value
            nor a default
        """
        value = self.memory.get(key, ttl)
        if value is not None:
            return CacheResult(value, CacheSource.HIT)

        value = await self._read_durable(key)
        if value is not None:
            self.memory.set(key, value)
            return CacheResult(value, CacheSource.DB)

        try:
            value = await fetcher()
            if value is None or value == [] or value == {}:
                raise EmptyResultError(f"Origin returned no data for {key}")
        except Exception as e:
            logger.warning("Origin fetch failed for %s: %s", key, e)

            stale = self.memory.get_stale(key)
            if stale is not None:
                return CacheResult(stale, CacheSource.STALE)
            if default is not None:
                return CacheResult(default(), CacheSource.DEFAULT)
            raise

        self.memory.set(key, value)
        self._spawn_durable_write(key, value, ttl)
        return CacheResult(value, CacheSource.MISS)

    async def close(self):
        """Wait for in-flight L2 writes."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)


def cached(key_fn: Callable[..., str], ttl: int, default: Optional[Callable[[], Any]] = None):
    """
    Decorator to read async method results through the owner's `cache`.

    The instance must have a `cache` attribute holding a TieredCache.

    Args:
        key_fn: Function that takes the method args/kwargs (without self) and returns the cache key
        ttl: Time-to-live in seconds
        default: Optional neutral-value factory, see TieredCache.get_or_fetch

    Example:
        class CoinMarketCap:
            @cached(lambda: "cmc-coin-map", 7200)
            async def coin_map(self):
                return await self.client.get_json(...)
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(self, *args, **kwargs):
            key = key_fn(*args, **kwargs)
            result = await self.cache.get_or_fetch(
                key, ttl, lambda: func(self, *args, **kwargs), default
            )
            return result.value
        return wrapper
    return decorator
