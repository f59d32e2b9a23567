"""
Service shell shared by Farm Records API services.

Subclasses get a FastAPI app with CORS, ``/health``, ``/metrics`` and the
error handlers already registered, and add their own routes and middleware.
Background work is started and stopped through ``on_startup`` /
``on_shutdown``, which run inside the app lifespan.
"""

import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST

from farm_shared.config import ServiceConfig, get_config
from farm_shared.errors import FarmRecordsException
from farm_shared.logging import configure_logging, get_logger
from farm_shared.metrics import get_metrics_aggregator


VERSION = "1.0.0"


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, service_name: str, port: int, config: Optional[ServiceConfig] = None):
        self.service_name = service_name
        self.config = config or get_config(service_name, port)
        configure_logging(service_name, self.config.log_level)

        self.logger = get_logger(f"records.{service_name}")
        self.metrics = get_metrics_aggregator(
            service_name,
            duration_buckets_ms=self.config.request_duration_buckets_ms,
            max_endpoints=self.config.metrics_max_endpoints,
        )
        self.started_at = time.time()

        self.app = self._create_app()
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"] if self.config.env == "local" else [],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
        self.app.add_exception_handler(FarmRecordsException, self._handle_records_error)
        self.app.add_exception_handler(Exception, self._handle_unexpected_error)
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        local = self.config.env == "local"

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            await self.on_startup()
            self.logger.info("Service started", env=self.config.env, port=self.config.port)
            try:
                yield
            finally:
                await self.on_shutdown()
                self.logger.info("Service stopped")

        return FastAPI(
            title=f"Farm Records {self.service_name.title()} Service",
            version=VERSION,
            docs_url="/docs" if local else None,
            redoc_url="/redoc" if local else None,
            lifespan=lifespan,
        )

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/health")
        async def health_check():
            try:
                dependencies = await self._check_dependencies()
            except Exception as e:
                self.logger.error("Health check failed", error=str(e))
                return JSONResponse(
                    status_code=503,
                    content={"service": self.service_name, "status": "error", "error": str(e)},
                )
            return {
                "service": self.service_name,
                "status": "ok",
                "uptime_seconds": round(time.time() - self.started_at, 3),
                "dependencies": dependencies,
                "version": VERSION,
                "commit": os.getenv("GIT_COMMIT", "unknown"),
            }

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(content=self.metrics.snapshot(), media_type=CONTENT_TYPE_LATEST)

    async def _handle_records_error(self, request: Request, exc: FarmRecordsException) -> JSONResponse:
        log = self.logger.error if exc.status_code >= 500 else self.logger.warning
        log("Request failed", code=exc.code, message=exc.message, details=exc.details, path=request.url.path)
        return JSONResponse(status_code=exc.status_code, content=exc.to_response().model_dump())

    async def _handle_unexpected_error(self, request: Request, exc: Exception) -> JSONResponse:
        self.logger.error("Unhandled exception", error=str(exc), path=request.url.path, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"code": "INTERNAL_ERROR", "message": "Internal server error", "details": {}},
        )

    async def on_startup(self) -> None:
        """Start background work. Override in subclasses."""

    async def on_shutdown(self) -> None:
        """Release resources. Override in subclasses."""

    async def _check_dependencies(self) -> Dict[str, Any]:
        """Check service dependencies. Override in subclasses."""
        return {}

    def run(self):
        """Run the service."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )
