"""
Records service for the Farm Records API.
"""

import time
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, Query, Request

from farm_shared.base_service import BaseService
from farm_shared.config import ServiceConfig, get_config
from farm_shared.errors import NotFoundError, ValidationError

from .adapters.document_store import DocumentStore, InMemoryDocumentStore
from .caching.backends import CacheBackend, create_backend
from .caching.response_cache import ResponseCache
from .domain.identity import (
    Authenticated,
    IdentityResolver,
    TokenVerifier,
    require_authenticated,
    require_role,
)
from .domain.models import BirdCreate, BirdUpdate, InvalidateRequest, ProfileUpdate
from .pipeline.core import RequestPipeline
from .pipeline.middleware import PipelineMiddleware
from .pipeline.routes import API_PREFIX, build_route_classes
from .ratelimit.fixed_window import RateLimiterRegistry


BIRDS = "birds"
USERS = "users"
UPLOADS = "uploads"

MAX_UPLOAD_BYTES = 10 * 1024 * 1024


class RecordsService(BaseService):
    """Farm records service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        token_verifier: Optional[TokenVerifier] = None,
        document_store: Optional[DocumentStore] = None,
        cache_backend: Optional[CacheBackend] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__("records", 8080, config)
        self.document_store = document_store or InMemoryDocumentStore()
        self.cache_backend = cache_backend or create_backend(
            self.config.cache_backend,
            redis_url=self.config.redis_url,
            timeout_seconds=self.config.cache_backend_timeout_seconds,
        )
        self.route_classes = build_route_classes(self.config)
        self.cache = ResponseCache(
            self.cache_backend,
            self.metrics,
            namespace=self.config.cache_namespace,
            partitions=self.route_classes.cache_partitions(),
        )
        self.rate_limiters = RateLimiterRegistry.from_config(self.config, clock=clock)
        self.pipeline = RequestPipeline(
            self.rate_limiters,
            self.cache,
            self.metrics,
            self.route_classes,
            slow_request_ms=self.config.slow_request_ms,
        )
        self.identity_resolver = IdentityResolver(token_verifier)

        self.app.add_middleware(
            PipelineMiddleware,
            pipeline=self.pipeline,
            identity_resolver=self.identity_resolver,
        )

        self._setup_record_routes()
        self._setup_admin_routes()

    async def on_startup(self) -> None:
        await self.rate_limiters.start()

    async def on_shutdown(self) -> None:
        await self.rate_limiters.stop()
        await self.cache_backend.close()

    async def _check_dependencies(self) -> Dict[str, Any]:
        stats = await self.cache.stats()
        return {"cache": "error" if "error" in stats else "ok"}

    def _setup_record_routes(self):
        """Set up farm record routes."""

        @self.app.get(f"{API_PREFIX}/birds")
        async def list_birds(
            pen_id: Optional[str] = None,
            health_status: Optional[str] = None,
            limit: int = Query(50, ge=1, le=500),
            offset: int = Query(0, ge=0),
            identity: Authenticated = Depends(require_authenticated),
        ):
            """List birds on the caller's farm."""
            filters = {"farm_id": identity.tenant_id}
            if pen_id:
                filters["pen_id"] = pen_id
            if health_status:
                filters["health_status"] = health_status

            birds = await self.document_store.query(BIRDS, filters, limit=limit, offset=offset)
            return {"birds": birds, "count": len(birds), "limit": limit, "offset": offset}

        @self.app.get(f"{API_PREFIX}/birds/{{bird_id}}")
        async def get_bird(bird_id: str, identity: Authenticated = Depends(require_authenticated)):
            """Get one bird record."""
            return await self._get_farm_bird(bird_id, identity)

        @self.app.post(f"{API_PREFIX}/birds", status_code=201)
        async def create_bird(payload: BirdCreate, identity: Authenticated = Depends(require_authenticated)):
            """Add birds to a pen. Any farm member may record new birds."""
            data = payload.model_dump()
            data["farm_id"] = identity.tenant_id
            data["created_by"] = identity.user_id
            bird = await self.document_store.set(BIRDS, None, data)
            self.logger.info("Bird record created", bird_id=bird["id"], pen_id=bird["pen_id"])
            return bird

        @self.app.put(f"{API_PREFIX}/birds/{{bird_id}}")
        async def update_bird(
            bird_id: str,
            payload: BirdUpdate,
            identity: Authenticated = Depends(require_role("manager", "admin")),
        ):
            """Update a bird record. Managers and admins only."""
            await self._get_farm_bird(bird_id, identity)
            changes = payload.model_dump(exclude_none=True)
            if not changes:
                raise ValidationError("No fields to update")
            return await self.document_store.set(BIRDS, bird_id, changes)

        @self.app.delete(f"{API_PREFIX}/birds/{{bird_id}}")
        async def delete_bird(
            bird_id: str,
            identity: Authenticated = Depends(require_role("manager", "admin")),
        ):
            """Delete a bird record. Managers and admins only."""
            await self._get_farm_bird(bird_id, identity)
            await self.document_store.delete(BIRDS, bird_id)
            self.logger.info("Bird record deleted", bird_id=bird_id)
            return {"deleted": True, "id": bird_id}

        @self.app.get(f"{API_PREFIX}/stats/summary")
        async def stats_summary(identity: Authenticated = Depends(require_authenticated)):
            """Flock totals for the caller's farm."""
            birds = await self.document_store.query(BIRDS, {"farm_id": identity.tenant_id})
            by_health: Dict[str, int] = {}
            for bird in birds:
                status = bird.get("health_status") or "unknown"
                by_health[status] = by_health.get(status, 0) + bird.get("quantity", 0)
            return {
                "total_records": len(birds),
                "total_birds": sum(bird.get("quantity", 0) for bird in birds),
                "by_health_status": by_health,
                "pens": len({bird.get("pen_id") for bird in birds}),
            }

        @self.app.get(f"{API_PREFIX}/users/me")
        async def get_profile(identity: Authenticated = Depends(require_authenticated)):
            """Current user's profile."""
            profile = await self.document_store.get(USERS, identity.user_id)
            if profile is None:
                profile = {"id": identity.user_id}
            profile.update({"role": identity.role, "farm_id": identity.tenant_id})
            return profile

        @self.app.put(f"{API_PREFIX}/users/me")
        async def update_profile(payload: ProfileUpdate, identity: Authenticated = Depends(require_authenticated)):
            """Update the current user's profile."""
            changes = payload.model_dump(exclude_none=True)
            if not changes:
                raise ValidationError("No fields to update")
            return await self.document_store.set(USERS, identity.user_id, changes)

        @self.app.get(f"{API_PREFIX}/auth/session")
        async def session(request: Request):
            """Describe the caller as the pipeline resolved it."""
            identity = request.state.identity
            return {
                "authenticated": identity.is_authenticated,
                "user_id": identity.user_id,
                "role": identity.role,
                "farm_id": identity.tenant_id,
            }

        @self.app.post(f"{API_PREFIX}/upload", status_code=201)
        async def upload(request: Request, identity: Authenticated = Depends(require_authenticated)):
            """Accept a raw data file and record its metadata."""
            body = await request.body()
            if not body:
                raise ValidationError("Empty upload")
            if len(body) > MAX_UPLOAD_BYTES:
                raise ValidationError("Upload too large", {"max_bytes": MAX_UPLOAD_BYTES})

            record = await self.document_store.set(UPLOADS, None, {
                "farm_id": identity.tenant_id,
                "uploaded_by": identity.user_id,
                "content_type": request.headers.get("content-type", "application/octet-stream"),
                "size_bytes": len(body),
            })
            self.logger.info("Upload received", upload_id=record["id"], size_bytes=len(body))
            return record

    def _setup_admin_routes(self):
        """Set up administrative routes for the pipeline core."""
        admin = Depends(require_role("admin"))

        @self.app.get(f"{API_PREFIX}/admin/performance", dependencies=[admin])
        async def performance():
            """Per-endpoint rollups and overall totals."""
            return {
                "overall": self.metrics.get_overall_rollup(),
                "endpoints": self.metrics.get_endpoint_rollups(),
            }

        @self.app.post(f"{API_PREFIX}/admin/metrics/reset", dependencies=[admin])
        async def reset_metrics():
            """Reset every metric series and rollup."""
            self.metrics.reset()
            return {"reset": True}

        @self.app.get(f"{API_PREFIX}/admin/cache/stats", dependencies=[admin])
        async def cache_stats():
            """Cache key count for this service's namespace."""
            return await self.cache.stats()

        @self.app.post(f"{API_PREFIX}/admin/cache/invalidate", dependencies=[admin])
        async def invalidate_cache(payload: InvalidateRequest):
            """Invalidate cached responses matching a pattern."""
            deleted = await self.cache.invalidate(payload.pattern)
            return {"pattern": payload.pattern, "deleted": deleted}

        @self.app.delete(f"{API_PREFIX}/admin/cache/users/{{user_id}}", dependencies=[admin])
        async def clear_user_cache(user_id: str):
            """Clear every cached response scoped to a user."""
            deleted = await self.cache.clear_user(user_id)
            return {"user_id": user_id, "deleted": deleted}

        @self.app.get(f"{API_PREFIX}/admin/rate-limits", dependencies=[admin])
        async def rate_limit_stats():
            """Budgets and tracked identities per policy."""
            return self.rate_limiters.stats()

        @self.app.get(f"{API_PREFIX}/admin/rate-limits/{{policy}}/{{identity}}", dependencies=[admin])
        async def rate_limit_status(policy: str, identity: str):
            """Current window for one identity, without counting a request."""
            return self._limiter(policy).status(identity)

        @self.app.delete(f"{API_PREFIX}/admin/rate-limits/{{policy}}/{{identity}}", dependencies=[admin])
        async def reset_rate_limit(policy: str, identity: str):
            """Clear one identity's window."""
            return {"policy": policy, "identity": identity, "reset": self._limiter(policy).reset(identity)}

    def _limiter(self, policy: str):
        limiter = self.rate_limiters.limiters.get(policy)
        if limiter is None:
            raise NotFoundError("Unknown rate limit policy", {"policy": policy})
        return limiter

    async def _get_farm_bird(self, bird_id: str, identity: Authenticated) -> Dict[str, Any]:
        bird = await self.document_store.get(BIRDS, bird_id)
        if bird is None or bird.get("farm_id") != identity.tenant_id:
            raise NotFoundError("Bird not found", {"bird_id": bird_id})
        return bird


def create_app(config: Optional[ServiceConfig] = None, **kwargs):
    """Create FastAPI application."""
    service = RecordsService(config, **kwargs)
    return service.app


if __name__ == "__main__":
    service = RecordsService(get_config("records", 8080))
    service.run()
