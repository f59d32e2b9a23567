"""
Shared utilities for the Farm Records API.

This package aggregates the building blocks consumed by the service packages:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace and request correlation
- metrics: Prometheus-backed metrics aggregator with per-endpoint rollups
- errors: Canonical error types and responses
- base_service: FastAPI service shell (middleware, health, error handlers)

Do not import from service_* packages into farm_shared/.
"""
