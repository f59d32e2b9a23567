"""
Farm Records API service package.

The service wraps a thin farm-records REST surface in a request pipeline:
- Rate limiting: fixed-window counters per policy class
- Caching: cache-aside response cache over Redis or memory
- Metrics: per-endpoint rollups and Prometheus series

Structure:
- app.main: FastAPI app, routes, and pipeline wiring.
- app.adapters: Document store contract and in-memory implementation.
- app.caching: Response cache, key construction and backends.
- app.ratelimit: Fixed-window limiter and policy registry.
- app.pipeline: Route classes, the pipeline itself and its middleware.
- app.domain: Caller identity and request models.
"""
