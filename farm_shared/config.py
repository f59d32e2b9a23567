"""
Shared configuration management for the Farm Records API.

Every option can be overridden through ``RECORDS_``-prefixed environment
variables or a ``.env`` file. Mapping-valued options (``RECORDS_CACHE_TTLS``,
``RECORDS_RATE_LIMITS``) are parsed as JSON.
"""

from typing import Dict, List, Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimitSettings(BaseModel):
    """Fixed-window budget for one policy class."""

    max_requests: int = Field(gt=0)
    window_seconds: float = Field(gt=0)


# Production budgets per policy class. Development relaxes the general ones.
PRODUCTION_RATE_LIMITS: Dict[str, RateLimitSettings] = {
    "default": RateLimitSettings(max_requests=100, window_seconds=15 * 60),
    "auth": RateLimitSettings(max_requests=5, window_seconds=15 * 60),
    "api": RateLimitSettings(max_requests=200, window_seconds=15 * 60),
    "upload": RateLimitSettings(max_requests=10, window_seconds=60 * 60),
    "admin": RateLimitSettings(max_requests=50, window_seconds=5 * 60),
}

DEVELOPMENT_RATE_LIMITS: Dict[str, RateLimitSettings] = {
    **PRODUCTION_RATE_LIMITS,
    "default": RateLimitSettings(max_requests=1000, window_seconds=15 * 60),
    "api": RateLimitSettings(max_requests=2000, window_seconds=15 * 60),
}

DEFAULT_CACHE_TTLS: Dict[str, int] = {
    "birds": 600,
    "stats": 300,
    "users": 1800,
}

DEFAULT_DURATION_BUCKETS_MS: List[float] = [
    5, 10, 25, 50, 100, 300, 500, 700, 1000, 3000, 5000, 7000, 10000,
]


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="RECORDS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow",
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # Cache backend
    redis_url: str = "redis://localhost:6379/0"
    cache_backend: Literal["redis", "memory"] = "redis"
    cache_namespace: str = "api:"
    cache_backend_timeout_seconds: float = Field(default=0.5, gt=0)

    # Response cache policy
    default_cache_ttl: int = 300
    cache_ttls: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_CACHE_TTLS))
    default_cache_key_scope: Literal["route", "tenant", "identity"] = "identity"

    # Rate limiting
    rate_limits: Dict[str, RateLimitSettings] = Field(default_factory=dict)
    rate_limit_sweep_interval_seconds: float = Field(default=60.0, gt=0)
    rate_limit_max_identities: int = Field(default=100_000, gt=0)

    # Metrics
    metrics_max_endpoints: int = Field(default=500, gt=0)
    request_duration_buckets_ms: List[float] = Field(
        default_factory=lambda: list(DEFAULT_DURATION_BUCKETS_MS)
    )
    slow_request_ms: float = 1000.0

    @property
    def is_production(self) -> bool:
        return self.env.lower() in ("prod", "production")

    def rate_limit_for(self, policy: str) -> RateLimitSettings:
        """Resolve the budget for a policy class, explicit settings first."""
        if policy in self.rate_limits:
            return self.rate_limits[policy]
        defaults = PRODUCTION_RATE_LIMITS if self.is_production else DEVELOPMENT_RATE_LIMITS
        return defaults.get(policy, defaults["default"])

    def cache_ttl_for(self, route_class: str) -> int:
        """TTL in seconds for a route class; zero or negative disables caching."""
        return self.cache_ttls.get(route_class, self.default_cache_ttl)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
