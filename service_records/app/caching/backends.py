"""
Key-value backends for the response cache.

Both implementations honour the same contract: ``get`` returns ``None`` for
absent or expired keys, ``set`` stores bytes with a TTL, ``delete_by_pattern``
removes every key matching a glob pattern and returns how many it removed.
Failures surface as ``CacheBackendError`` so the caller can fail open.
"""

import asyncio
import fnmatch
import time
from typing import Awaitable, Callable, Dict, Optional, Protocol, Tuple, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError

from farm_shared.errors import CacheBackendError
from farm_shared.logging import get_logger


T = TypeVar("T")


class CacheBackend(Protocol):
    """Contract the response cache relies on."""

    async def get(self, key: str) -> Optional[bytes]: ...

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None: ...

    async def delete_by_pattern(self, pattern: str) -> int: ...

    async def count(self, pattern: str) -> int: ...

    async def close(self) -> None: ...


class RedisCacheBackend:
    """Redis-backed store; expiry is delegated to Redis ``SETEX``."""

    def __init__(
        self,
        redis_url: str,
        *,
        timeout_seconds: float = 0.5,
        scan_batch_size: int = 500,
    ):
        self.redis_url = redis_url
        self.timeout_seconds = timeout_seconds
        self.scan_batch_size = scan_batch_size
        self.logger = get_logger("records.cache.redis")
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    async def _run(self, operation: str, func: Callable[[redis.Redis], Awaitable[T]]) -> T:
        try:
            redis_client = await self._get_redis()
            return await asyncio.wait_for(func(redis_client), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise CacheBackendError(operation, f"timed out after {self.timeout_seconds}s") from e
        except (RedisError, OSError) as e:
            raise CacheBackendError(operation, str(e)) from e

    async def get(self, key: str) -> Optional[bytes]:
        value = await self._run("get", lambda client: client.get(key))
        if value is None:
            return None
        return value if isinstance(value, bytes) else str(value).encode("utf-8")

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        await self._run("set", lambda client: client.setex(key, int(ttl_seconds), value))

    async def delete_by_pattern(self, pattern: str) -> int:
        async def _delete(client: redis.Redis) -> int:
            deleted = 0
            batch = []
            async for key in client.scan_iter(match=pattern, count=self.scan_batch_size):
                batch.append(key)
                if len(batch) >= self.scan_batch_size:
                    deleted += await client.delete(*batch)
                    batch = []
            if batch:
                deleted += await client.delete(*batch)
            return deleted

        return await self._run("delete_by_pattern", _delete)

    async def count(self, pattern: str) -> int:
        async def _count(client: redis.Redis) -> int:
            total = 0
            async for _ in client.scan_iter(match=pattern, count=self.scan_batch_size):
                total += 1
            return total

        return await self._run("count", _count)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class InMemoryCacheBackend:
    """Process-local store for single-instance deployments and tests.

    Expired entries are dropped lazily on access and by ``purge_expired``.
    Patterns use the same glob syntax as Redis ``SCAN MATCH``.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._entries: Dict[str, Tuple[bytes, float]] = {}

    async def get(self, key: str) -> Optional[bytes]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self.clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            self._entries.pop(key, None)
            return
        self._entries[key] = (value, self.clock() + ttl_seconds)

    async def delete_by_pattern(self, pattern: str) -> int:
        self.purge_expired()
        matched = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
        for key in matched:
            del self._entries[key]
        return len(matched)

    async def count(self, pattern: str) -> int:
        self.purge_expired()
        return sum(1 for key in self._entries if fnmatch.fnmatchcase(key, pattern))

    def purge_expired(self) -> int:
        now = self.clock()
        expired = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def close(self) -> None:
        self._entries.clear()


def create_backend(kind: str, *, redis_url: str, timeout_seconds: float) -> CacheBackend:
    if kind == "memory":
        return InMemoryCacheBackend()
    return RedisCacheBackend(redis_url, timeout_seconds=timeout_seconds)
