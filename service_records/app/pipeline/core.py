"""
Request pipeline: rate check, cache-aside lookup, handler, store, metrics.

    Start -> RateCheck -> Denied -> End
                       -> CacheCheck -> Hit -> Respond -> MetricsRecord -> End
                                     -> Miss -> Invoke -> Success -> CacheStore -> MetricsRecord -> End
                                                       -> Error -> MetricsRecord -> End

Denied requests never reach the cache or the handler. Every admitted request
is recorded exactly once, handler exceptions included, and a hit never writes
back to the cache.
"""

import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from farm_shared.errors import RateLimitExceeded
from farm_shared.logging import get_logger
from farm_shared.metrics import CacheOutcome, MetricsAggregator

from ..caching.keys import CacheRequest
from ..caching.response_cache import MISS_DISABLED, SKIP_METHOD, CachedResponse, CacheLookup, ResponseCache
from ..ratelimit.fixed_window import RateDecision, RateLimiterRegistry
from .routes import RouteClass, RouteClassTable


Handler = Callable[[], Awaitable[CachedResponse]]

WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
METHOD_NOT_ALLOWED = 405


@dataclass
class PipelineResult:
    """Handler (or cache) output plus the decisions taken on the way."""
    response: CachedResponse
    route_class: RouteClass
    rate_decision: RateDecision
    cache_outcome: Optional[CacheOutcome] = None


class RequestPipeline:
    """Runs one request through the core around an opaque handler."""

    def __init__(
        self,
        rate_limiters: RateLimiterRegistry,
        cache: ResponseCache,
        metrics: MetricsAggregator,
        route_classes: RouteClassTable,
        *,
        clock: Callable[[], float] = time.perf_counter,
        slow_request_ms: float = 1000.0,
    ):
        self.rate_limiters = rate_limiters
        self.cache = cache
        self.metrics = metrics
        self.route_classes = route_classes
        self.clock = clock
        self.slow_request_ms = slow_request_ms
        self.logger = get_logger("records.pipeline")

    def rate_policies(self, route_class: RouteClass) -> List[str]:
        policies = ["default"]
        if route_class.rate_policy and route_class.rate_policy != "default":
            policies.append(route_class.rate_policy)
        return policies

    async def handle(self, request: CacheRequest, route: str, handler: Handler) -> PipelineResult:
        """Process ``request``; ``route`` is the matched route template used for metrics.

        Raises RateLimitExceeded on denial. Handler exceptions propagate
        unchanged after being recorded.
        """
        route_class = self.route_classes.classify(request.method, request.path)
        start = self.clock()

        decision = self.rate_limiters.check(
            request.identity,
            self.rate_policies(route_class),
            path=request.path,
            method=request.method,
        )
        if not decision.allowed:
            self._record_rejection(decision, request.method, route)
            raise RateLimitExceeded(decision.policy, decision.retry_after_seconds, decision.limit)

        status_code = 500
        lookup = MISS_DISABLED

        with self.metrics.track_in_flight():
            try:
                if route_class.cache is not None:
                    lookup = await self.cache.lookup(request, route_class.cache, decode=CachedResponse.from_bytes)

                if lookup.hit:
                    cached = lookup.decoded
                    cached.headers["X-Cache"] = "HIT"
                    status_code = cached.status_code
                    return PipelineResult(cached, route_class, decision, CacheOutcome.HIT)

                response = await handler()
                status_code = response.status_code

                if status_code == METHOD_NOT_ALLOWED:
                    # No route serves this method, so the request never took part in caching
                    lookup = CacheLookup(hit=False, skipped=SKIP_METHOD)

                if 200 <= status_code < 300:
                    if lookup.storable and route_class.cache is not None:
                        await self.cache.store(request, route_class.cache, response.to_bytes())
                    if request.method.upper() in WRITE_METHODS:
                        await self._invalidate(route_class, request)

                if lookup.participates:
                    response.headers["X-Cache"] = "MISS"
                return PipelineResult(response, route_class, decision, lookup.outcome)
            finally:
                self._record_request(request, route, status_code, start, lookup.outcome)

    async def _invalidate(self, route_class: RouteClass, request: CacheRequest) -> None:
        for pattern in route_class.invalidation_patterns(request.identity):
            await self.cache.invalidate(pattern)

    def _record_rejection(self, decision: RateDecision, method: str, route: str) -> None:
        try:
            self.metrics.record_rate_limited(decision.policy, method, route)
        except Exception as exc:  # pragma: no cover - metrics failures never fail a request
            self.logger.debug("Failed to record rate limit metrics", error=str(exc))

    def _record_request(
        self,
        request: CacheRequest,
        route: str,
        status_code: int,
        start: float,
        cache_outcome: Optional[CacheOutcome],
    ) -> None:
        duration_ms = (self.clock() - start) * 1000
        try:
            self.metrics.record_request(
                request.method,
                route,
                status_code,
                duration_ms,
                cache_outcome=cache_outcome,
            )
        except Exception as exc:  # pragma: no cover - metrics failures never fail a request
            self.logger.debug("Failed to record request metrics", error=str(exc))

        if duration_ms > self.slow_request_ms:
            self.logger.warning(
                "Slow request detected",
                method=request.method,
                path=request.path,
                route=route,
                status_code=status_code,
                duration_ms=round(duration_ms, 2),
                cache=cache_outcome.value if cache_outcome else None,
            )
