"""
Unit tests for the request pipeline.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from farm_shared.config import get_config
from farm_shared.errors import CacheBackendError, RateLimitExceeded
from farm_shared.metrics import CacheOutcome, MetricsAggregator
from service_records.app.caching.backends import InMemoryCacheBackend
from service_records.app.caching.keys import CacheRequest
from service_records.app.caching.response_cache import CachedResponse, ResponseCache
from service_records.app.pipeline.core import RequestPipeline
from service_records.app.pipeline.routes import build_route_classes
from service_records.app.ratelimit.fixed_window import FixedWindowRateLimiter, RateLimiterRegistry


def ok(body=b'{"birds": []}', status_code=200):
    return CachedResponse(status_code=status_code, body=body, media_type="application/json")


class TestRequestPipeline:
    """Test cases for RequestPipeline."""

    @pytest.fixture
    def config(self):
        return get_config(
            "records-test",
            8080,
            rate_limits={"default": {"max_requests": 100, "window_seconds": 60}},
        )

    @pytest.fixture
    def metrics(self):
        return MetricsAggregator("records-test")

    @pytest.fixture
    def backend(self, clock):
        return InMemoryCacheBackend(clock=clock)

    @pytest.fixture
    def pipeline(self, config, metrics, backend, clock):
        return RequestPipeline(
            RateLimiterRegistry.from_config(config, clock=clock),
            ResponseCache(backend, metrics),
            metrics,
            build_route_classes(config),
        )

    def rollup(self, metrics, endpoint):
        return metrics.get_endpoint_rollups().get(endpoint)

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, pipeline, metrics, farm_user):
        """The second identical GET is served from cache without the handler."""
        request = CacheRequest("GET", "/api/v1/birds", identity=farm_user)
        handler = AsyncMock(return_value=ok())

        first = await pipeline.handle(request, "/api/v1/birds", handler)
        second = await pipeline.handle(request, "/api/v1/birds", handler)

        handler.assert_awaited_once()
        assert first.cache_outcome is CacheOutcome.MISS
        assert first.response.headers["X-Cache"] == "MISS"
        assert second.cache_outcome is CacheOutcome.HIT
        assert second.response.headers["X-Cache"] == "HIT"
        assert second.response.body == first.response.body

        rollup = self.rollup(metrics, "GET /api/v1/birds")
        assert rollup["request_count"] == 2
        assert rollup["cache_hits"] == 1
        assert rollup["cache_misses"] == 1

    @pytest.mark.asyncio
    async def test_hit_never_writes_back(self, pipeline, farm_user):
        request = CacheRequest("GET", "/api/v1/birds", identity=farm_user)
        await pipeline.handle(request, "/api/v1/birds", AsyncMock(return_value=ok()))
        pipeline.cache.store = AsyncMock()

        await pipeline.handle(request, "/api/v1/birds", AsyncMock(return_value=ok()))

        pipeline.cache.store.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_error_responses_are_not_cached(self, pipeline, farm_user):
        request = CacheRequest("GET", "/api/v1/birds", identity=farm_user)
        handler = AsyncMock(return_value=ok(b'{"code": "NOT_FOUND"}', 404))

        await pipeline.handle(request, "/api/v1/birds", handler)
        await pipeline.handle(request, "/api/v1/birds", handler)

        assert handler.await_count == 2

    @pytest.mark.asyncio
    async def test_denied_requests_skip_cache_and_handler(self, pipeline, metrics, farm_user, clock):
        pipeline.rate_limiters.limiters["default"] = FixedWindowRateLimiter("default", 3, 60, clock=clock)
        request = CacheRequest("GET", "/api/v1/birds", identity=farm_user)
        handler = AsyncMock(return_value=ok())
        for _ in range(3):
            await pipeline.handle(request, "/api/v1/birds", handler)
        pipeline.cache.lookup = AsyncMock()
        handler.reset_mock()

        with pytest.raises(RateLimitExceeded) as exc_info:
            await pipeline.handle(request, "/api/v1/birds", handler)

        assert exc_info.value.policy == "default"
        assert exc_info.value.retry_after_header == 60
        pipeline.cache.lookup.assert_not_awaited()
        handler.assert_not_awaited()
        assert self.rollup(metrics, "GET /api/v1/birds")["request_count"] == 3
        assert metrics.registry.get_sample_value(
            "rate_limit_rejections_total",
            {"policy": "default", "method": "GET", "route": "/api/v1/birds"},
        ) == 1

    @pytest.mark.asyncio
    async def test_handler_exception_is_recorded_and_reraised(self, pipeline, metrics, farm_user):
        request = CacheRequest("GET", "/api/v1/birds", identity=farm_user)
        failure = RuntimeError("store unavailable")

        with pytest.raises(RuntimeError) as exc_info:
            await pipeline.handle(request, "/api/v1/birds", AsyncMock(side_effect=failure))

        assert exc_info.value is failure
        rollup = self.rollup(metrics, "GET /api/v1/birds")
        assert rollup["request_count"] == 1
        assert rollup["error_count"] == 1
        assert metrics.registry.get_sample_value("active_requests") == 0

    @pytest.mark.asyncio
    async def test_write_invalidates_tenant_reads(self, pipeline, farm_user, other_farm_user):
        """A successful bird write evicts the farm's cached bird and stats reads."""
        mine = CacheRequest("GET", "/api/v1/birds", identity=farm_user)
        stats = CacheRequest("GET", "/api/v1/stats/summary", identity=farm_user)
        theirs = CacheRequest("GET", "/api/v1/birds", identity=other_farm_user)
        await pipeline.handle(mine, "/api/v1/birds", AsyncMock(return_value=ok()))
        await pipeline.handle(stats, "/api/v1/stats/summary", AsyncMock(return_value=ok()))
        await pipeline.handle(theirs, "/api/v1/birds", AsyncMock(return_value=ok()))

        write = CacheRequest("POST", "/api/v1/birds", identity=farm_user)
        result = await pipeline.handle(write, "/api/v1/birds", AsyncMock(return_value=ok(status_code=201)))

        assert result.cache_outcome is None
        assert "X-Cache" not in result.response.headers
        assert (await pipeline.handle(mine, "/api/v1/birds", AsyncMock(return_value=ok()))).cache_outcome \
            is CacheOutcome.MISS
        assert (await pipeline.handle(stats, "/api/v1/stats/summary", AsyncMock(return_value=ok()))).cache_outcome \
            is CacheOutcome.MISS
        assert (await pipeline.handle(theirs, "/api/v1/birds", AsyncMock(return_value=ok()))).cache_outcome \
            is CacheOutcome.HIT

    @pytest.mark.asyncio
    async def test_failed_write_does_not_invalidate(self, pipeline, farm_user):
        pipeline.cache.invalidate = AsyncMock()
        write = CacheRequest("POST", "/api/v1/birds", identity=farm_user)

        await pipeline.handle(write, "/api/v1/birds", AsyncMock(return_value=ok(status_code=400)))

        pipeline.cache.invalidate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_non_cached_route_has_no_cache_outcome(self, pipeline, metrics, farm_user):
        request = CacheRequest("GET", "/api/v1/auth/session", identity=farm_user)

        result = await pipeline.handle(request, "/api/v1/auth/session", AsyncMock(return_value=ok()))

        assert result.cache_outcome is None
        assert result.route_class.name == "auth"
        rollup = self.rollup(metrics, "GET /api/v1/auth/session")
        assert rollup["cache_hits"] == rollup["cache_misses"] == 0

    @pytest.mark.asyncio
    async def test_backend_failure_fails_open(self, config, metrics, farm_user, clock):
        backend = MagicMock()
        backend.get = AsyncMock(side_effect=CacheBackendError("get", "down"))
        backend.set = AsyncMock(side_effect=CacheBackendError("set", "down"))
        pipeline = RequestPipeline(
            RateLimiterRegistry.from_config(config, clock=clock),
            ResponseCache(backend, metrics),
            metrics,
            build_route_classes(config),
        )
        handler = AsyncMock(return_value=ok())

        result = await pipeline.handle(CacheRequest("GET", "/api/v1/birds", identity=farm_user), "/api/v1/birds", handler)

        assert result.response.status_code == 200
        assert result.cache_outcome is CacheOutcome.MISS
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unreadable_entry_is_treated_as_miss(self, pipeline, backend, metrics, farm_user):
        request = CacheRequest("GET", "/api/v1/birds", identity=farm_user)
        key = pipeline.cache.make_key(request, pipeline.route_classes.get("birds").cache)
        await backend.set(key, b"garbage", 300)
        handler = AsyncMock(return_value=ok())

        result = await pipeline.handle(request, "/api/v1/birds", handler)

        handler.assert_awaited_once()
        assert result.cache_outcome is CacheOutcome.MISS
        assert self.rollup(metrics, "GET /api/v1/birds")["cache_misses"] == 1
        counter = metrics.get_metric("cache_operations_total")
        assert counter.labels(operation="lookup", result="error")._value.get() == 1
        assert counter.labels(operation="lookup", result="hit")._value.get() == 0

    @pytest.mark.asyncio
    async def test_slow_request_is_logged(self, pipeline, farm_user):
        ticks = iter([0.0, 2.5])
        pipeline.clock = lambda: next(ticks)
        pipeline.logger = MagicMock()

        await pipeline.handle(CacheRequest("GET", "/api/v1/auth/session", identity=farm_user),
                              "/api/v1/auth/session", AsyncMock(return_value=ok()))

        pipeline.logger.warning.assert_called_once()
        assert pipeline.logger.warning.call_args.kwargs["duration_ms"] == 2500.0

    @pytest.mark.asyncio
    async def test_duration_includes_the_rate_check(self, pipeline, farm_user):
        events = []
        ticks = iter([0.0, 0.5])

        def clock():
            events.append("clock")
            return next(ticks)

        check = pipeline.rate_limiters.check

        def tracked_check(*args, **kwargs):
            events.append("rate_check")
            return check(*args, **kwargs)

        pipeline.clock = clock
        pipeline.rate_limiters.check = tracked_check

        await pipeline.handle(CacheRequest("GET", "/api/v1/auth/session", identity=farm_user),
                              "/api/v1/auth/session", AsyncMock(return_value=ok()))

        assert events == ["clock", "rate_check", "clock"]

    @pytest.mark.asyncio
    async def test_method_not_allowed_takes_no_part_in_caching(self, pipeline, metrics, farm_user):
        """A HEAD the router rejects with 405 is neither a hit nor a miss."""
        request = CacheRequest("HEAD", "/api/v1/birds", identity=farm_user)

        result = await pipeline.handle(request, "<unmatched>", AsyncMock(return_value=ok(b"", status_code=405)))

        assert result.cache_outcome is None
        assert "X-Cache" not in result.response.headers
        rollup = self.rollup(metrics, "HEAD <unmatched>")
        assert rollup["cache_hits"] == rollup["cache_misses"] == 0
