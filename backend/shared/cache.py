"""
Keyed TTL Cache
===============
Short-lived shared state (MFA send cooldown, request-rate counters).

InMemoryCache is process-local and only correct for a single running
instance. RedisCache keeps the same contract on a shared store so several
instances see the same counters.
"""

import json
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)


class Cache(ABC):
    """get/set with TTL, plus an atomic counter for rate limiting."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def incr(self, key: str, ttl_seconds: float) -> Tuple[int, float]:
        """
        Increment a counter, starting its TTL window on first use.

        Returns (count, seconds until the window resets).
        """

    async def close(self) -> None:
        return None


class InMemoryCache(Cache):
    """Process-local cache. Not shared across workers or hosts."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}

    def _live(self, key: str) -> Optional[Tuple[Any, float]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry[1]:
            del self._entries[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[Any]:
        entry = self._live(key)
        return entry[0] if entry else None

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._entries[key] = (value, self._clock() + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def incr(self, key: str, ttl_seconds: float) -> Tuple[int, float]:
        now = self._clock()
        entry = self._live(key)
        if entry is None:
            self._entries[key] = (1, now + ttl_seconds)
            return 1, float(ttl_seconds)
        count = int(entry[0]) + 1
        self._entries[key] = (count, entry[1])
        return count, entry[1] - now


class RedisCache(Cache):
    """Cache backed by Redis; values are stored as JSON."""

    def __init__(self, client: "redis.Redis", prefix: str = ""):
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "") -> "RedisCache":
        return cls(redis.from_url(url, decode_responses=True), prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._client.get(self._key(key))
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        await self._client.set(self._key(key), json.dumps(value), px=max(1, int(ttl_seconds * 1000)))

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def incr(self, key: str, ttl_seconds: float) -> Tuple[int, float]:
        full_key = self._key(key)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(full_key)
            pipe.pexpire(full_key, max(1, int(ttl_seconds * 1000)), nx=True)
            pipe.pttl(full_key)
            count, _, pttl = await pipe.execute()
        remaining = pttl / 1000.0 if pttl and pttl > 0 else float(ttl_seconds)
        return int(count), remaining

    async def close(self) -> None:
        await self._client.aclose()


@dataclass
class RateDecision:
    """Result of a rate counter check."""
    ok: bool
    remaining: int
    retry_after: int


class RateCounter:
    """Fixed-window request counter on top of a Cache."""

    def __init__(self, cache: Cache, namespace: str = "rl"):
        self.cache = cache
        self.namespace = namespace

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateDecision:
        count, reset_in = await self.cache.incr(f"{self.namespace}:{key}", window_seconds)
        if count > limit:
            return RateDecision(ok=False, remaining=0, retry_after=max(1, math.ceil(reset_in)))
        return RateDecision(ok=True, remaining=limit - count, retry_after=0)


def create_cache(backend: str, redis_url: str = "", prefix: str = "") -> Cache:
    """Build the configured cache backend."""
    if backend == "redis":
        logger.info("Using Redis cache", url=redis_url.split("@")[-1])
        return RedisCache.from_url(redis_url, prefix=prefix)
    if backend != "memory":
        raise ValueError(f"Unknown cache backend: {backend}")
    logger.warning("Using in-memory cache; counters are not shared across instances")
    return InMemoryCache()
