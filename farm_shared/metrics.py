"""
Metrics aggregation for the Farm Records API.

Global series live in a private ``prometheus_client`` registry owned by the
aggregator. Per-endpoint rollups are kept alongside and exported through a
custom collector so they share the same text exposition.
"""

import threading
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily

from farm_shared.errors import MetricsExportError
from farm_shared.logging import get_logger


DEFAULT_BUCKETS_MS: Tuple[float, ...] = (5, 10, 25, 50, 100, 300, 500, 700, 1000, 3000, 5000, 7000, 10000)


class CacheOutcome(str, Enum):
    """Result of a cache operation."""
    HIT = "hit"
    MISS = "miss"
    ERROR = "error"


@dataclass
class EndpointRollup:
    """Running totals for one ``"<METHOD> <route>"`` endpoint."""
    endpoint: str
    request_count: int = 0
    total_duration: float = 0.0
    min_duration: Optional[float] = None
    max_duration: Optional[float] = None
    error_count: int = 0
    success_count: int = 0
    cache_hits: int = 0
    cache_misses: int = 0

    @property
    def average_duration(self) -> float:
        if self.request_count == 0:
            return 0.0
        return self.total_duration / self.request_count

    @property
    def cache_hit_rate(self) -> float:
        """Hit percentage over cache lookups, 0 when the endpoint never looked up."""
        lookups = self.cache_hits + self.cache_misses
        if lookups == 0:
            return 0.0
        return self.cache_hits / lookups * 100

    def observe(self, duration_ms: float, is_error: bool, cache_outcome: Optional[CacheOutcome]) -> None:
        self.request_count += 1
        self.total_duration += duration_ms
        if self.min_duration is None or duration_ms < self.min_duration:
            self.min_duration = duration_ms
        if self.max_duration is None or duration_ms > self.max_duration:
            self.max_duration = duration_ms

        if is_error:
            self.error_count += 1
        else:
            self.success_count += 1

        if cache_outcome is CacheOutcome.HIT:
            self.cache_hits += 1
        elif cache_outcome is not None:
            # A failed lookup is served as a miss
            self.cache_misses += 1

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["average_duration"] = self.average_duration
        data["cache_hit_rate"] = self.cache_hit_rate
        return data


class _SingleCollector:
    """Registry-shaped view over one collector, so it renders on its own."""

    def __init__(self, collector: Any):
        self._collector = collector

    def collect(self):
        return self._collector.collect()


class EndpointRollupCollector:
    """Exports endpoint rollups as Prometheus series."""

    def __init__(self, aggregator: "MetricsAggregator"):
        self._aggregator = aggregator

    def collect(self) -> Iterator[Any]:
        rollups = self._aggregator.rollup_objects()

        requests = CounterMetricFamily("endpoint_requests", "Requests per endpoint", labels=["endpoint"])
        errors = CounterMetricFamily("endpoint_errors", "Errored requests per endpoint", labels=["endpoint"])
        hits = CounterMetricFamily("endpoint_cache_hits", "Cache hits per endpoint", labels=["endpoint"])
        misses = CounterMetricFamily("endpoint_cache_misses", "Cache misses per endpoint", labels=["endpoint"])
        avg = GaugeMetricFamily("endpoint_duration_avg_ms", "Average duration per endpoint", labels=["endpoint"])
        low = GaugeMetricFamily("endpoint_duration_min_ms", "Fastest request per endpoint", labels=["endpoint"])
        high = GaugeMetricFamily("endpoint_duration_max_ms", "Slowest request per endpoint", labels=["endpoint"])

        for rollup in rollups:
            labels = [rollup.endpoint]
            requests.add_metric(labels, rollup.request_count)
            errors.add_metric(labels, rollup.error_count)
            hits.add_metric(labels, rollup.cache_hits)
            misses.add_metric(labels, rollup.cache_misses)
            avg.add_metric(labels, rollup.average_duration)
            if rollup.min_duration is not None:
                low.add_metric(labels, rollup.min_duration)
            if rollup.max_duration is not None:
                high.add_metric(labels, rollup.max_duration)

        yield from (requests, errors, hits, misses, avg, low, high)


class MetricsAggregator:
    """Counters, gauges, histograms and endpoint rollups for one service."""

    def __init__(
        self,
        service_name: str,
        *,
        duration_buckets_ms: Optional[Sequence[float]] = None,
        max_endpoints: int = 500,
    ):
        self.service_name = service_name
        self.logger = get_logger("records.metrics")
        self.duration_buckets_ms = tuple(sorted(duration_buckets_ms or DEFAULT_BUCKETS_MS))
        self.max_endpoints = max_endpoints
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Create a fresh registry with the service's series."""
        self.registry = CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._rollups: "OrderedDict[str, EndpointRollup]" = OrderedDict()
        self._cache_totals = {outcome: 0 for outcome in CacheOutcome}

        self._metrics["service_info"] = Info(
            "service",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "route", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_ms"] = Histogram(
            "http_request_duration_ms",
            "HTTP request duration in milliseconds",
            ["method", "route", "status_code"],
            buckets=self.duration_buckets_ms,
            registry=self.registry
        )

        self._metrics["http_request_errors_total"] = Counter(
            "http_request_errors_total",
            "Total HTTP request errors",
            ["method", "route", "error_type"],
            registry=self.registry
        )

        self._metrics["cache_operations_total"] = Counter(
            "cache_operations_total",
            "Total cache operations",
            ["operation", "result"],
            registry=self.registry
        )

        self._metrics["cache_hit_rate"] = Gauge(
            "cache_hit_rate",
            "Cache hit rate percentage",
            registry=self.registry
        )

        self._metrics["rate_limit_rejections_total"] = Counter(
            "rate_limit_rejections_total",
            "Requests rejected by a rate-limit policy",
            ["policy", "method", "route"],
            registry=self.registry
        )

        self._metrics["active_requests"] = Gauge(
            "active_requests",
            "Requests currently inside the pipeline",
            registry=self.registry
        )

        self._rollup_collector = EndpointRollupCollector(self)
        self.registry.register(self._rollup_collector)

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def record_request(
        self,
        method: str,
        route: str,
        status_code: int,
        duration_ms: float,
        *,
        is_error: Optional[bool] = None,
        cache_outcome: Optional[CacheOutcome] = None,
    ) -> None:
        """Record one finished request in its endpoint rollup and the global series.

        ``cache_outcome`` is None for endpoints that do not participate in
        caching, which keeps their rollup cache fields at zero.
        """
        if is_error is None:
            is_error = status_code >= 400
        endpoint = f"{method} {route}"
        status = str(status_code)

        with self._lock:
            rollup = self._rollups.get(endpoint)
            if rollup is None:
                rollup = EndpointRollup(endpoint=endpoint)
                self._rollups[endpoint] = rollup
                while len(self._rollups) > self.max_endpoints:
                    evicted, _ = self._rollups.popitem(last=False)
                    self.logger.debug("Evicted endpoint rollup", endpoint=evicted)
            else:
                self._rollups.move_to_end(endpoint)
            rollup.observe(duration_ms, is_error, cache_outcome)

        self._metrics["http_requests_total"].labels(
            method=method,
            route=route,
            status_code=status
        ).inc()

        self._metrics["http_request_duration_ms"].labels(
            method=method,
            route=route,
            status_code=status
        ).observe(duration_ms)

        if is_error:
            self._metrics["http_request_errors_total"].labels(
                method=method,
                route=route,
                error_type=_error_type(status_code)
            ).inc()

    def record_cache_outcome(self, operation: str, outcome: CacheOutcome) -> None:
        """Count a cache operation result and refresh the hit-rate gauge."""
        outcome = CacheOutcome(outcome)
        self._metrics["cache_operations_total"].labels(operation=operation, result=outcome.value).inc()

        with self._lock:
            self._cache_totals[outcome] += 1
            hits = self._cache_totals[CacheOutcome.HIT]
            lookups = hits + self._cache_totals[CacheOutcome.MISS]
        if lookups:
            self._metrics["cache_hit_rate"].set(hits / lookups * 100)

    def record_rate_limited(self, policy: str, method: str, route: str) -> None:
        self._metrics["rate_limit_rejections_total"].labels(policy=policy, method=method, route=route).inc()

    @contextmanager
    def track_in_flight(self):
        """Count a request as active for the duration of the block."""
        gauge = self._metrics["active_requests"]
        gauge.inc()
        try:
            yield
        finally:
            gauge.dec()

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._select(metric_name, labels).inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        if metric_name in self._metrics:
            self._select(metric_name, labels).set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        if metric_name in self._metrics:
            self._select(metric_name, labels).observe(value)

    def _select(self, metric_name: str, labels: Dict[str, Any]):
        metric = self._metrics[metric_name]
        return metric.labels(**labels) if labels else metric

    def rollup_objects(self) -> List[EndpointRollup]:
        """Copies of the current rollups, safe to read outside the lock."""
        with self._lock:
            return [EndpointRollup(**asdict(rollup)) for rollup in self._rollups.values()]

    def get_endpoint_rollups(self) -> Dict[str, Dict[str, Any]]:
        return {rollup.endpoint: rollup.to_dict() for rollup in self.rollup_objects()}

    def get_overall_rollup(self) -> Dict[str, Any]:
        """Totals across every endpoint."""
        overall = EndpointRollup(endpoint="*")
        for rollup in self.rollup_objects():
            overall.request_count += rollup.request_count
            overall.total_duration += rollup.total_duration
            overall.error_count += rollup.error_count
            overall.success_count += rollup.success_count
            overall.cache_hits += rollup.cache_hits
            overall.cache_misses += rollup.cache_misses
            if rollup.min_duration is not None:
                overall.min_duration = _pick(min, overall.min_duration, rollup.min_duration)
            if rollup.max_duration is not None:
                overall.max_duration = _pick(max, overall.max_duration, rollup.max_duration)
        return overall.to_dict()

    def reset(self) -> None:
        """Drop every series and rollup. Administrative action only."""
        with self._lock:
            self._setup_metrics()
        self.logger.info("Metrics reset", service=self.service_name)

    def _snapshot_sources(self) -> Iterable[Tuple[str, Any]]:
        yield from self._metrics.items()
        yield "endpoint_rollups", self._rollup_collector

    def snapshot(self) -> str:
        """Render every series in Prometheus text format.

        Never raises. A series that fails to render is replaced by a
        ``# ERROR`` line and the remaining series are still exported.
        """
        chunks: List[str] = []
        try:
            for name, collector in self._snapshot_sources():
                try:
                    chunks.append(generate_latest(_SingleCollector(collector)).decode("utf-8"))
                except Exception as exc:
                    chunks.append(self._export_failure(MetricsExportError(name, str(exc))))
        except Exception as exc:
            chunks.append(self._export_failure(MetricsExportError("registry", str(exc))))
        return "".join(chunks)

    def _export_failure(self, error: MetricsExportError) -> str:
        self.logger.error("Metrics export error", series=error.series, error=error.message)
        return f"# ERROR {error.code} {error.message}\n"


def _error_type(status_code: int) -> str:
    if status_code >= 500:
        return "server_error"
    if status_code >= 400:
        return "client_error"
    return "unknown"


def _pick(func, current: Optional[float], candidate: float) -> float:
    return candidate if current is None else func(current, candidate)


def get_metrics_aggregator(
    service_name: str,
    *,
    duration_buckets_ms: Optional[Sequence[float]] = None,
    max_endpoints: int = 500,
) -> MetricsAggregator:
    """Get a metrics aggregator for a service."""
    return MetricsAggregator(
        service_name,
        duration_buckets_ms=duration_buckets_ms,
        max_endpoints=max_endpoints,
    )
