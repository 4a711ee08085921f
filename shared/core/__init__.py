"""Service plumbing shared by the application: health probes and structured logging."""

from .health import HealthStatus, ServiceHealth
from .logging_config import (
    LoggerAdapter,
    RequestLoggingMiddleware,
    generate_request_id,
    get_logger,
    set_connection_context,
    set_request_context,
    setup_logging,
    trace_context,
)

__all__ = [
    "HealthStatus",
    "ServiceHealth",
    "LoggerAdapter",
    "RequestLoggingMiddleware",
    "generate_request_id",
    "get_logger",
    "set_connection_context",
    "set_request_context",
    "setup_logging",
    "trace_context",
]
