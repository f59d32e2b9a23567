"""
Starlette middleware that runs every API request through the RequestPipeline.
"""

from typing import Dict, Iterable, Tuple

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.routing import Match

from farm_shared.errors import RateLimitExceeded
from farm_shared.logging import clear_context, get_logger, set_request_id, set_user_context

from ..caching.keys import CacheRequest
from ..caching.response_cache import CachedResponse
from ..domain.identity import IdentityResolver
from .core import RequestPipeline


UNMATCHED_ROUTE = "<unmatched>"
REQUEST_ID_HEADER = "X-Request-Id"
DEFAULT_EXEMPT_PATHS = ("/health", "/metrics", "/docs", "/redoc", "/openapi.json")

# Recomputed by Starlette when the response is rebuilt
_DROPPED_HEADERS = frozenset({"content-length", "content-type"})


class PipelineMiddleware(BaseHTTPMiddleware):
    """Resolves identity, then hands the route handler to the pipeline."""

    def __init__(
        self,
        app,
        pipeline: RequestPipeline,
        identity_resolver: IdentityResolver,
        exempt_paths: Iterable[str] = DEFAULT_EXEMPT_PATHS,
    ):
        super().__init__(app)
        self.pipeline = pipeline
        self.identity_resolver = identity_resolver
        self.exempt_paths = tuple(exempt_paths)
        self.logger = get_logger("records.middleware")

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        request_id = set_request_id(request.headers.get(REQUEST_ID_HEADER))
        try:
            identity = await self.identity_resolver.resolve(request)
            request.state.identity = identity
            request.state.request_id = request_id
            set_user_context(identity.user_id, identity.tenant_id)

            route, path_params = self._match_route(request)
            cache_request = CacheRequest(
                method=request.method,
                path=request.url.path,
                query=tuple(request.query_params.multi_items()),
                path_params=path_params,
                identity=identity,
                headers={name.lower(): value for name, value in request.headers.items()},
            )

            async def handler() -> CachedResponse:
                return await self._call_route(request, call_next)

            try:
                result = await self.pipeline.handle(cache_request, route, handler)
            except RateLimitExceeded as exc:
                return self._rate_limited(exc, request_id)

            response = self._to_response(result.response)
            response.headers.update(result.rate_decision.headers())
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            clear_context()

    def _match_route(self, request: Request) -> Tuple[str, Dict[str, str]]:
        """Route template and path params for the request, as the router would pick."""
        for route in request.app.router.routes:
            match, child_scope = route.matches(request.scope)
            if match == Match.FULL:
                params = child_scope.get("path_params", {})
                return getattr(route, "path", UNMATCHED_ROUTE), {k: str(v) for k, v in params.items()}
        return UNMATCHED_ROUTE, {}

    async def _call_route(self, request: Request, call_next) -> CachedResponse:
        response = await call_next(request)
        body = b""
        async for chunk in response.body_iterator:
            body += chunk if isinstance(chunk, bytes) else chunk.encode("utf-8")

        headers = {
            name: value
            for name, value in response.headers.items()
            if name.lower() not in _DROPPED_HEADERS
        }
        return CachedResponse(
            status_code=response.status_code,
            body=body,
            media_type=response.headers.get("content-type"),
            headers=headers,
        )

    @staticmethod
    def _to_response(cached: CachedResponse) -> Response:
        return Response(
            content=cached.body,
            status_code=cached.status_code,
            headers=dict(cached.headers),
            media_type=cached.media_type,
        )

    def _rate_limited(self, exc: RateLimitExceeded, request_id: str) -> JSONResponse:
        self.logger.info("Request rejected", policy=exc.policy, retry_after=exc.retry_after_header)
        headers = {
            "Retry-After": str(exc.retry_after_header),
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(exc.retry_after_header),
            REQUEST_ID_HEADER: request_id,
        }
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response().model_dump(),
            headers=headers,
        )
