"""
Request pipeline for the Records service.

Route classes map path families to rate and cache policies; the pipeline runs
rate check, cache lookup, handler, cache store and metrics in that order.
"""

from .core import PipelineResult, RequestPipeline
from .middleware import PipelineMiddleware
from .routes import RouteClass, RouteClassTable, build_route_classes

__all__ = [
    "PipelineMiddleware",
    "PipelineResult",
    "RequestPipeline",
    "RouteClass",
    "RouteClassTable",
    "build_route_classes",
]
