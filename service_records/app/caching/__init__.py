"""
Caching package for the Records service.

Exposes the cache-aside response cache, its key construction, and the
Redis / in-memory backends it runs on.
"""

from .backends import CacheBackend, InMemoryCacheBackend, RedisCacheBackend, create_backend
from .keys import CacheRequest, KeyScope, build_cache_key
from .response_cache import CachedResponse, CacheLookup, CachePolicy, ResponseCache

__all__ = [
    "CacheBackend",
    "CachedResponse",
    "CacheLookup",
    "CachePolicy",
    "CacheRequest",
    "InMemoryCacheBackend",
    "KeyScope",
    "RedisCacheBackend",
    "ResponseCache",
    "build_cache_key",
    "create_backend",
]
