"""Fixed-window rate limiting for payment initiation, keyed by client network identity."""

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from fastapi import Request
from redis.exceptions import WatchError

from mpesa_unlock.core.config import get_settings
from mpesa_unlock.core.exceptions import RateLimitedError
from mpesa_unlock.core.logging import get_logger

KEY_PREFIX = "mpesa:initiate"

log = get_logger(__name__)


def client_identity(request: Request) -> str:
    """First hop of X-Forwarded-For, else the transport peer address."""
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class RateLimitStore(ABC):
    """Window counters plus short owner-tokened locks."""

    @abstractmethod
    async def incr(self, key: str, window_seconds: int) -> int:
        """Atomically increment key; start a new window on first hit. Return the new count."""
        ...

    @abstractmethod
    async def acquire(self, key: str, token: str, ttl_seconds: int) -> bool:
        """Take key for `token` unless another live holder has it."""
        ...

    @abstractmethod
    async def release(self, key: str, token: str) -> bool:
        """Drop key only while `token` still holds it. False if it expired or changed hands."""
        ...


@dataclass
class RateLimitBucket:
    count: int
    reset_at: float


@dataclass
class HeldLock:
    token: str
    expires_at: float


class MemoryRateLimitStore(RateLimitStore):
    """Single-instance store. Lost on restart, which fails open."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._buckets: dict[str, RateLimitBucket] = {}
        self._locks: dict[str, HeldLock] = {}
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        expired = [k for k, b in self._buckets.items() if now >= b.reset_at]
        for k in expired:
            del self._buckets[k]
        stale = [k for k, held in self._locks.items() if now >= held.expires_at]
        for k in stale:
            del self._locks[k]

    async def incr(self, key: str, window_seconds: int) -> int:
        with self._lock:
            now = self._clock()
            self._prune(now)
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = RateLimitBucket(count=0, reset_at=now + window_seconds)
                self._buckets[key] = bucket
            bucket.count += 1
            return bucket.count

    async def acquire(self, key: str, token: str, ttl_seconds: int) -> bool:
        with self._lock:
            now = self._clock()
            self._prune(now)
            if key in self._locks:
                return False
            self._locks[key] = HeldLock(token=token, expires_at=now + ttl_seconds)
            return True

    async def release(self, key: str, token: str) -> bool:
        with self._lock:
            self._prune(self._clock())
            held = self._locks.get(key)
            if held is None or held.token != token:
                return False
            del self._locks[key]
            return True

    @property
    def bucket_count(self) -> int:
        return len(self._buckets)


class RedisRateLimitStore(RateLimitStore):
    """Shared store for multi-instance deployments (INCR + EXPIRE, SET NX EX)."""

    def __init__(self, redis) -> None:
        self.redis = redis

    async def incr(self, key: str, window_seconds: int) -> int:
        try:
            n = await self.redis.incr(key)
            if n == 1:
                await self.redis.expire(key, window_seconds)
            return int(n)
        except Exception as e:
            log.warning("rate_limit_store_unavailable", key=key, reason=str(e))
            return 0

    async def acquire(self, key: str, token: str, ttl_seconds: int) -> bool:
        try:
            return bool(await self.redis.set(key, token, nx=True, ex=ttl_seconds))
        except Exception as e:
            # Fails open, like incr.
            log.warning("lock_store_unavailable", key=key, reason=str(e))
            return True

    async def release(self, key: str, token: str) -> bool:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                if await pipe.get(key) != token:
                    return False
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
                return True
        except WatchError:
            return False
        except Exception as e:
            log.warning("lock_store_unavailable", key=key, reason=str(e))
            return False


class RateLimiter:
    def __init__(self, store: RateLimitStore, limit: int, window_seconds: int) -> None:
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds

    async def hit(self, identity: str) -> int:
        """Count one attempt; raise RateLimitedError past the limit. Every call consumes a slot."""
        n = await self.store.incr(f"{KEY_PREFIX}:{identity}", self.window_seconds)
        if n > self.limit:
            log.info("rate_limited", identity=identity, count=n, limit=self.limit)
            raise RateLimitedError()
        return n


_store: RateLimitStore | None = None


def get_rate_limit_store() -> RateLimitStore:
    global _store
    if _store is None:
        settings = get_settings()
        if settings.rate_limit_backend == "redis":
            import redis.asyncio as aioredis
            _store = RedisRateLimitStore(aioredis.from_url(settings.redis_url, decode_responses=True))
        else:
            _store = MemoryRateLimitStore()
    return _store


def get_rate_limiter() -> RateLimiter:
    settings = get_settings()
    return RateLimiter(
        get_rate_limit_store(),
        limit=settings.rate_limit_attempts,
        window_seconds=settings.rate_limit_window_seconds,
    )
