"""
Route classes: per-path-family rate policy, cache policy and invalidation.
"""

from dataclasses import dataclass
from typing import FrozenSet, List, Optional, Sequence, Tuple

from farm_shared.config import BaseConfig

from ..caching.keys import KeyScope, key_segment, tenant_user_query_key, user_profile_key
from ..caching.response_cache import CachePolicy
from ..domain.identity import Identity, ANONYMOUS_USER, NO_TENANT


API_PREFIX = "/api/v1"


@dataclass(frozen=True)
class RouteClass:
    """Policy bundle applied to every request under ``prefixes``.

    ``invalidates`` holds logical key patterns evicted after a successful
    write; ``{tenant}`` and ``{user}`` are filled from the caller.
    """

    name: str
    prefixes: Tuple[str, ...] = ()
    rate_policy: Optional[str] = "api"
    cache: Optional[CachePolicy] = None
    invalidates: Tuple[str, ...] = ()
    methods: Optional[FrozenSet[str]] = None

    def match_length(self, method: str, path: str) -> int:
        """Length of the longest matching prefix, or -1."""
        if self.methods is not None and method.upper() not in self.methods:
            return -1
        best = -1
        for prefix in self.prefixes:
            if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
                best = max(best, len(prefix))
        return best

    def invalidation_patterns(self, identity: Identity) -> List[str]:
        tenant = key_segment(identity.tenant_id or NO_TENANT)
        user = key_segment(identity.user_id or ANONYMOUS_USER)
        return [pattern.format(tenant=tenant, user=user) for pattern in self.invalidates]


PUBLIC = RouteClass(name="public", rate_policy=None)


class RouteClassTable:
    """Longest-prefix lookup over route classes."""

    def __init__(self, classes: Sequence[RouteClass], fallback: RouteClass = PUBLIC):
        self.classes = tuple(classes)
        self.fallback = fallback

    def classify(self, method: str, path: str) -> RouteClass:
        best, best_length = self.fallback, -1
        for route_class in self.classes:
            length = route_class.match_length(method, path)
            if length > best_length:
                best, best_length = route_class, length
        return best

    def get(self, name: str) -> Optional[RouteClass]:
        for route_class in self.classes:
            if route_class.name == name:
                return route_class
        return None

    def cache_partitions(self) -> List[str]:
        """Key partitions of the partitioned cache policies."""
        return [
            route_class.cache.name
            for route_class in self.classes
            if route_class.cache is not None and route_class.cache.partitioned
        ]


def build_route_classes(config: BaseConfig) -> RouteClassTable:
    """Route classes for the farm records API."""
    scope = KeyScope(config.default_cache_key_scope)

    def policy(name: str, **kwargs) -> CachePolicy:
        return CachePolicy(name=name, ttl_seconds=config.cache_ttl_for(name), **kwargs)

    # Route-scoped keys carry no tenant, so a write must evict the whole family
    birds_pattern = "birds:*" if scope is KeyScope.ROUTE else "birds:tenant:{tenant}:*"

    return RouteClassTable([
        RouteClass(
            name="auth",
            prefixes=(f"{API_PREFIX}/auth",),
            rate_policy="auth",
        ),
        RouteClass(
            name="upload",
            prefixes=(f"{API_PREFIX}/upload",),
            rate_policy="upload",
            invalidates=("stats:tenant:{tenant}:*",),
        ),
        RouteClass(
            name="admin",
            prefixes=(f"{API_PREFIX}/admin",),
            rate_policy="admin",
        ),
        RouteClass(
            name="birds",
            prefixes=(f"{API_PREFIX}/birds",),
            cache=policy("birds", key_scope=scope),
            invalidates=(birds_pattern, "stats:tenant:{tenant}:*"),
        ),
        RouteClass(
            name="stats",
            prefixes=(f"{API_PREFIX}/stats",),
            cache=policy("stats", key_generator=tenant_user_query_key),
        ),
        RouteClass(
            name="users",
            prefixes=(f"{API_PREFIX}/users",),
            cache=policy("users", key_generator=user_profile_key),
            invalidates=("users:tenant:{tenant}:user:{user}:*",),
        ),
        RouteClass(
            name="api",
            prefixes=(API_PREFIX,),
        ),
    ])
