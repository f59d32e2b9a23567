"""
Shared error handling for the Farm Records API.

The request-pipeline core raises three of these itself:

- ``CacheBackendError``: the cache store failed or timed out. Always recovered
  inside the response cache; the request proceeds as a miss.
- ``RateLimitExceeded``: terminal denial surfaced as HTTP 429 with a
  ``Retry-After`` hint.
- ``MetricsExportError``: a series could not be rendered. Recovered inside the
  aggregator; the snapshot is returned partially with an error marker.
"""

import math
from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class FarmRecordsException(Exception):
    """Base exception for Farm Records API services."""

    status_code: int = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class AuthenticationError(FarmRecordsException):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class AuthorizationError(FarmRecordsException):
    """Caller is authenticated but lacks the required role."""

    status_code = 403

    def __init__(self, message: str = "Access denied", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class NotFoundError(FarmRecordsException):
    """Requested record does not exist."""

    status_code = 404

    def __init__(self, message: str = "Record not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ValidationError(FarmRecordsException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class CacheBackendError(FarmRecordsException):
    """Cache store unreachable, timed out, or rejected the operation."""

    status_code = 503

    def __init__(self, operation: str, message: str = "Cache backend error", details: Optional[Dict[str, Any]] = None):
        self.operation = operation
        super().__init__("CACHE_BACKEND_ERROR", f"{operation}: {message}", details)


class RateLimitExceeded(FarmRecordsException):
    """Request denied by a rate-limit policy."""

    status_code = 429

    def __init__(
        self,
        policy: str,
        retry_after_seconds: float,
        limit: int,
        message: str = "Too many requests, please try again later.",
    ):
        self.policy = policy
        self.retry_after_seconds = retry_after_seconds
        self.limit = limit
        super().__init__(
            "RATE_LIMIT_ERROR",
            message,
            {"policy": policy, "limit": limit, "retry_after": self.retry_after_header},
        )

    @property
    def retry_after_header(self) -> int:
        """Whole seconds for the Retry-After header, never below 1."""
        return max(1, math.ceil(self.retry_after_seconds))


class MetricsExportError(FarmRecordsException):
    """A metric series failed to render during snapshot export."""

    status_code = 500

    def __init__(self, series: str, message: str = "Metrics export failed", details: Optional[Dict[str, Any]] = None):
        self.series = series
        super().__init__("METRICS_EXPORT_ERROR", f"{series}: {message}", details)
