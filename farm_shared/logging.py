"""
Structured logging for the Farm Records API.

Every event is rendered as one JSON line carrying the service name, the
OpenTelemetry trace/span ids when a span is active, and the request context
(request id, user, farm) bound by the request pipeline.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

import structlog
from opentelemetry import trace


SECURITY_LOGGER = "records.security"


@dataclass(frozen=True)
class RequestContext:
    """Correlation fields for the request currently being served."""
    request_id: Optional[str] = None
    user_id: Optional[str] = None
    tenant_id: Optional[str] = None


_EMPTY_CONTEXT = RequestContext()
_request_context: ContextVar[RequestContext] = ContextVar("request_context", default=_EMPTY_CONTEXT)
_service_name: Optional[str] = None


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structured logging for a service."""
    global _service_name
    _service_name = service_name

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_service_context,
            add_trace_context,
            add_request_context,
            mark_security_events,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    if _service_name:
        event_dict.setdefault("service", _service_name)
    return event_dict


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add trace context to log events."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        event_dict["span_id"] = f"{span_context.span_id:016x}"
    return event_dict


def add_request_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add request id, user and farm of the current request."""
    context = _request_context.get()
    if context.request_id:
        event_dict["request_id"] = context.request_id
    if context.user_id:
        event_dict["user_id"] = context.user_id
    if context.tenant_id:
        event_dict["tenant_id"] = context.tenant_id
    return event_dict


def mark_security_events(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    # Lets log shippers route security events without parsing messages
    if event_dict.get("logger") == SECURITY_LOGGER:
        event_dict["category"] = "security"
    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Start a request context, generating an id when the caller sent none."""
    if not request_id:
        request_id = str(uuid.uuid4())
    _request_context.set(RequestContext(request_id=request_id))
    return request_id


def set_user_context(user_id: Optional[str] = None, tenant_id: Optional[str] = None):
    """Attach the resolved caller to the current request context."""
    _request_context.set(replace(_request_context.get(), user_id=user_id, tenant_id=tenant_id))


def get_request_context() -> RequestContext:
    return _request_context.get()


def clear_context():
    _request_context.set(_EMPTY_CONTEXT)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def log_security_event(event_type: str, **fields: Any) -> None:
    """Emit a security event (rate limit denials, rejected credentials)."""
    get_logger(SECURITY_LOGGER).warning("Security event", type=event_type, **fields)
