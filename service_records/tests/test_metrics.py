"""
Unit tests for the metrics aggregator.
"""

import pytest
from unittest.mock import patch

from farm_shared.metrics import CacheOutcome, EndpointRollup, MetricsAggregator


class TestEndpointRollup:
    """Test cases for EndpointRollup."""

    def test_min_max_start_unset(self):
        rollup = EndpointRollup(endpoint="GET /api/v1/birds")

        assert rollup.min_duration is None
        assert rollup.max_duration is None
        assert rollup.average_duration == 0.0
        assert rollup.cache_hit_rate == 0.0

    def test_first_observation_sets_min_and_max(self):
        rollup = EndpointRollup(endpoint="GET /api/v1/birds")

        rollup.observe(250.0, False, None)

        assert rollup.min_duration == 250.0
        assert rollup.max_duration == 250.0

    def test_counts_stay_consistent(self):
        """request_count == errors + successes == hits + misses for cached endpoints."""
        rollup = EndpointRollup(endpoint="GET /api/v1/birds")
        rollup.observe(10, False, CacheOutcome.MISS)
        rollup.observe(2, False, CacheOutcome.HIT)
        rollup.observe(30, True, CacheOutcome.ERROR)

        assert rollup.request_count == rollup.error_count + rollup.success_count == 3
        assert rollup.request_count == rollup.cache_hits + rollup.cache_misses
        assert rollup.cache_hit_rate == pytest.approx(100 / 3)
        assert rollup.average_duration == pytest.approx(14)

    def test_non_cached_endpoint_keeps_cache_fields_zero(self):
        rollup = EndpointRollup(endpoint="POST /api/v1/birds")
        rollup.observe(10, False, None)

        assert rollup.cache_hits == 0
        assert rollup.cache_misses == 0


class TestMetricsAggregator:
    """Test cases for MetricsAggregator."""

    @pytest.fixture
    def metrics(self):
        return MetricsAggregator("records-test", duration_buckets_ms=[10, 100, 1000])

    def test_record_request_updates_rollup_and_series(self, metrics):
        metrics.record_request("GET", "/api/v1/birds", 200, 42.0, cache_outcome=CacheOutcome.MISS)

        rollup = metrics.get_endpoint_rollups()["GET /api/v1/birds"]
        assert rollup["request_count"] == 1
        assert rollup["cache_misses"] == 1

        labels = {"method": "GET", "route": "/api/v1/birds", "status_code": "200"}
        assert metrics.registry.get_sample_value("http_requests_total", labels) == 1
        assert metrics.registry.get_sample_value("http_request_duration_ms_sum", labels) == 42.0

    def test_histogram_buckets_are_cumulative(self, metrics):
        for duration in (5, 50, 500, 5000):
            metrics.record_request("GET", "/api/v1/stats/summary", 200, duration)

        labels = {"method": "GET", "route": "/api/v1/stats/summary", "status_code": "200"}

        def bucket(le):
            return metrics.registry.get_sample_value("http_request_duration_ms_bucket", {**labels, "le": le})

        assert bucket("10.0") == 1
        assert bucket("100.0") == 2
        assert bucket("1000.0") == 3
        assert bucket("+Inf") == 4

    def test_errors_are_classified(self, metrics):
        metrics.record_request("GET", "/api/v1/birds/{bird_id}", 404, 3.0)
        metrics.record_request("GET", "/api/v1/birds/{bird_id}", 500, 3.0)

        def errors(error_type):
            return metrics.registry.get_sample_value(
                "http_request_errors_total",
                {"method": "GET", "route": "/api/v1/birds/{bird_id}", "error_type": error_type},
            )

        assert errors("client_error") == 1
        assert errors("server_error") == 1
        assert metrics.get_endpoint_rollups()["GET /api/v1/birds/{bird_id}"]["error_count"] == 2

    def test_overall_rollup(self, metrics):
        metrics.record_request("GET", "/api/v1/birds", 200, 10.0)
        metrics.record_request("GET", "/api/v1/stats/summary", 200, 30.0)

        overall = metrics.get_overall_rollup()

        assert overall["request_count"] == 2
        assert overall["min_duration"] == 10.0
        assert overall["max_duration"] == 30.0
        assert overall["average_duration"] == 20.0

    def test_rollups_are_bounded(self):
        metrics = MetricsAggregator("records-test", max_endpoints=2)
        for route in ("/a", "/b", "/c"):
            metrics.record_request("GET", route, 200, 1.0)

        assert list(metrics.get_endpoint_rollups()) == ["GET /b", "GET /c"]

    def test_rate_limited_counter(self, metrics):
        metrics.record_rate_limited("auth", "POST", "/api/v1/auth/session")

        value = metrics.registry.get_sample_value(
            "rate_limit_rejections_total",
            {"policy": "auth", "method": "POST", "route": "/api/v1/auth/session"},
        )
        assert value == 1

    def test_track_in_flight(self, metrics):
        with metrics.track_in_flight():
            assert metrics.registry.get_sample_value("active_requests") == 1
        assert metrics.registry.get_sample_value("active_requests") == 0

    def test_generic_helpers(self, metrics):
        metrics.increment_counter("cache_operations_total", operation="store", result="error")
        metrics.set_gauge("cache_hit_rate", 75.0)
        metrics.increment_counter("does_not_exist")

        assert metrics.registry.get_sample_value(
            "cache_operations_total", {"operation": "store", "result": "error"}
        ) == 1
        assert metrics.registry.get_sample_value("cache_hit_rate") == 75.0

    def test_snapshot_contains_series_and_rollups(self, metrics):
        metrics.record_request("GET", "/api/v1/birds", 200, 12.0, cache_outcome=CacheOutcome.HIT)

        snapshot = metrics.snapshot()

        assert "http_requests_total" in snapshot
        assert 'endpoint_cache_hits_total{endpoint="GET /api/v1/birds"} 1.0' in snapshot

    def test_snapshot_is_partial_when_a_series_fails(self, metrics):
        metrics.record_request("GET", "/api/v1/birds", 200, 12.0)

        with patch.object(metrics._rollup_collector, "collect", side_effect=RuntimeError("boom")):
            snapshot = metrics.snapshot()

        assert "# ERROR METRICS_EXPORT_ERROR endpoint_rollups: boom" in snapshot
        assert "http_requests_total" in snapshot

    def test_reset(self, metrics):
        metrics.record_request("GET", "/api/v1/birds", 200, 12.0)

        metrics.reset()

        assert metrics.get_endpoint_rollups() == {}
        labels = {"method": "GET", "route": "/api/v1/birds", "status_code": "200"}
        assert metrics.registry.get_sample_value("http_requests_total", labels) is None
