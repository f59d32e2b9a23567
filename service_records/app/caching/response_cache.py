"""
Cache-aside response cache for the Farm Records API.
"""

import base64
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from farm_shared.errors import CacheBackendError
from farm_shared.logging import get_logger
from farm_shared.metrics import CacheOutcome, MetricsAggregator

from .backends import CacheBackend
from .keys import SAFE_METHODS, CacheRequest, KeyGenerator, KeyScope, build_cache_key, key_segment


# Skip reasons for requests that never take part in caching
SKIP_DISABLED = "disabled"
SKIP_METHOD = "method"
SKIP_ADMIN = "admin"
# Caller asked to bypass; still counted as a miss for the endpoint
SKIP_NO_CACHE = "no-cache"

NON_PARTICIPATING = frozenset({SKIP_DISABLED, SKIP_METHOD, SKIP_ADMIN})

DEFAULT_ADMIN_PATTERNS = ("/admin/",)


@dataclass(frozen=True)
class CachePolicy:
    """Per-route-class caching rules."""

    name: str
    ttl_seconds: int
    key_scope: KeyScope = KeyScope.IDENTITY
    key_generator: Optional[KeyGenerator] = None
    # Unpartitioned keys omit the "<name>:" segment and share one key space
    partitioned: bool = True

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds > 0


@dataclass(frozen=True)
class CacheLookup:
    """Result of ``ResponseCache.lookup``."""

    hit: bool
    key: Optional[str] = None
    value: Optional[bytes] = None
    skipped: Optional[str] = None
    decoded: Any = None

    @property
    def participates(self) -> bool:
        return self.skipped not in NON_PARTICIPATING

    @property
    def outcome(self) -> Optional[CacheOutcome]:
        """Outcome for endpoint rollups; None when the request is not cacheable."""
        if not self.participates:
            return None
        return CacheOutcome.HIT if self.hit else CacheOutcome.MISS

    @property
    def storable(self) -> bool:
        return self.key is not None and not self.hit


MISS_DISABLED = CacheLookup(hit=False, skipped=SKIP_DISABLED)


@dataclass
class CachedResponse:
    """Serialized handler output replayed on a cache hit."""

    status_code: int
    body: bytes
    media_type: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def to_bytes(self) -> bytes:
        return json.dumps({
            "status_code": self.status_code,
            "media_type": self.media_type,
            "headers": self.headers,
            "body": base64.b64encode(self.body).decode("ascii"),
        }).encode("utf-8")

    @classmethod
    def from_bytes(cls, payload: bytes) -> "CachedResponse":
        data = json.loads(payload)
        return cls(
            status_code=int(data["status_code"]),
            body=base64.b64decode(data["body"]),
            media_type=data.get("media_type"),
            headers=dict(data.get("headers") or {}),
        )


class ResponseCache:
    """Looks up, stores and invalidates serialized responses.

    Physical keys are ``<namespace><policy name>:<logical key>``, or
    ``<namespace><logical key>`` for unpartitioned policies. Invalidation
    patterns are written against the logical key and are applied inside
    every known partition; a pattern that already starts with a partition
    name (``birds:tenant:42:*``) targets that partition only. Backend
    failures never escape: lookups degrade to misses, stores and
    invalidations are skipped, and every failure is logged and counted.
    """

    def __init__(
        self,
        backend: CacheBackend,
        metrics: Optional[MetricsAggregator] = None,
        *,
        namespace: str = "api:",
        admin_patterns: Sequence[str] = DEFAULT_ADMIN_PATTERNS,
        partitions: Iterable[str] = (),
    ):
        self.backend = backend
        self.metrics = metrics
        self.namespace = namespace
        self.admin_patterns = tuple(admin_patterns)
        self.partitions = set(partitions)
        self.logger = get_logger("records.cache")

    def skip_reason(self, request: CacheRequest, policy: CachePolicy) -> Optional[str]:
        if not policy.enabled:
            return SKIP_DISABLED
        if request.method.upper() not in SAFE_METHODS:
            return SKIP_METHOD
        if any(pattern in request.path for pattern in self.admin_patterns):
            return SKIP_ADMIN
        cache_control = (request.header("cache-control") or "").lower()
        if "no-cache" in cache_control or "no-store" in cache_control:
            return SKIP_NO_CACHE
        return None

    def make_key(self, request: CacheRequest, policy: CachePolicy) -> str:
        if policy.key_generator is not None:
            logical = policy.key_generator(request)
        else:
            logical = build_cache_key(request, policy.key_scope)
        if policy.partitioned:
            self.partitions.add(policy.name)
            return f"{self.namespace}{policy.name}:{logical}"
        return f"{self.namespace}{logical}"

    async def lookup(
        self,
        request: CacheRequest,
        policy: CachePolicy,
        decode: Optional[Callable[[bytes], Any]] = None,
    ) -> CacheLookup:
        """Return a hit with the stored payload, or a miss.

        With ``decode``, an entry it cannot read counts as a cache error and
        the lookup is a miss.
        """
        reason = self.skip_reason(request, policy)
        if reason is not None:
            return CacheLookup(hit=False, skipped=reason)

        key = self.make_key(request, policy)
        try:
            value = await self.backend.get(key)
        except CacheBackendError as e:
            self.logger.warning("Cache lookup failed, serving as miss", key=key, error=e.message)
            self._record("lookup", CacheOutcome.ERROR)
            return CacheLookup(hit=False, key=key)

        if value is None:
            self.logger.debug("Cache miss", key=key, method=request.method, path=request.path)
            self._record("lookup", CacheOutcome.MISS)
            return CacheLookup(hit=False, key=key)

        decoded = None
        if decode is not None:
            try:
                decoded = decode(value)
            except (ValueError, KeyError, TypeError) as e:
                self.logger.warning("Discarding unreadable cache entry", key=key, error=str(e))
                self._record("lookup", CacheOutcome.ERROR)
                return CacheLookup(hit=False, key=key)

        self.logger.debug("Cache hit", key=key, method=request.method, path=request.path)
        self._record("lookup", CacheOutcome.HIT)
        return CacheLookup(hit=True, key=key, value=value, decoded=decoded)

    async def store(
        self,
        request: CacheRequest,
        policy: CachePolicy,
        value: bytes,
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        """Write ``value`` under the lookup key. Returns False when nothing was written."""
        ttl = policy.ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0 or self.skip_reason(request, policy) is not None:
            return False

        key = self.make_key(request, policy)
        try:
            await self.backend.set(key, value, ttl)
        except CacheBackendError as e:
            self.logger.error("Failed to cache response", key=key, error=e.message)
            self._record("store", CacheOutcome.ERROR)
            return False

        self.logger.debug("Cached response", key=key, ttl=ttl)
        return True

    def physical_patterns(self, pattern: str) -> List[str]:
        """Backend glob patterns covering the logical ``pattern``."""
        patterns = [f"{self.namespace}{pattern}"]
        if any(pattern.startswith(f"{name}:") for name in self.partitions):
            return patterns
        patterns.extend(f"{self.namespace}{name}:{pattern}" for name in sorted(self.partitions))
        return patterns

    async def invalidate(self, pattern: str) -> int:
        """Delete every entry whose logical key matches ``pattern`` (glob)."""
        deleted = 0
        for full_pattern in self.physical_patterns(pattern):
            try:
                count = await self.backend.delete_by_pattern(full_pattern)
            except CacheBackendError as e:
                self.logger.error("Failed to invalidate cache", pattern=full_pattern, error=e.message)
                self._record("invalidate", CacheOutcome.ERROR)
                continue
            deleted += count

        if deleted:
            self.logger.info("Cleared cache pattern", pattern=pattern, keys_count=deleted)
        return deleted

    async def clear_user(self, user_id: str) -> int:
        """Clear all cache entries scoped to a user."""
        return await self.invalidate(f"tenant:*:user:{key_segment(user_id)}:*")

    async def stats(self) -> Dict[str, Any]:
        try:
            total_keys = await self.backend.count(f"{self.namespace}*")
        except CacheBackendError as e:
            self.logger.error("Cache stats error", error=e.message)
            return {"namespace": self.namespace, "error": e.message}
        return {"namespace": self.namespace, "total_keys": total_keys}

    def _record(self, operation: str, outcome: CacheOutcome) -> None:
        if not self.metrics:
            return
        try:
            self.metrics.record_cache_outcome(operation, outcome)
        except Exception as exc:  # pragma: no cover - metrics failures never break caching
            self.logger.debug("Failed to record cache metrics", error=str(exc))
