"""
Structured logging configuration

Every record is rendered as one JSON line carrying the service identity, the
trace context of the task that emitted it (HTTP request or real-time
connection) and any ``extra_fields`` passed by the caller:

    logger.info("Client connected", extra={"extra_fields": {"role": "user"}})
"""

import json
import logging
import logging.handlers
import re
import sys
import time
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

# Trace identifiers, scoped to the current asyncio task
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)
connection_id_var: ContextVar[Optional[str]] = ContextVar('connection_id', default=None)
shipment_id_var: ContextVar[Optional[str]] = ContextVar('shipment_id', default=None)

_TRACE_VARS = {
    "request_id": request_id_var,
    "correlation_id": correlation_id_var,
    "user_id": user_id_var,
    "connection_id": connection_id_var,
    "shipment_id": shipment_id_var,
}

# Health probes are polled constantly; keep them out of INFO
_QUIET_PATHS = ("/health", "/health/live", "/health/ready", "/metrics")


def trace_context() -> Dict[str, str]:
    """Trace identifiers set for the current task"""
    return {key: var.get() for key, var in _TRACE_VARS.items() if var.get()}


class StructuredFormatter(logging.Formatter):
    """JSON structured logging formatter"""

    def __init__(self, service_name: str, version: str = "1.0.0", environment: str = "development"):
        super().__init__()
        self.service = {
            "name": service_name,
            "version": version,
            "environment": environment,
        }

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "@timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service,
        }

        trace = trace_context()
        if trace:
            entry["trace"] = trace

        custom = getattr(record, 'extra_fields', None)
        if custom:
            entry["custom"] = custom

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["error"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "stacktrace": traceback.format_exception(exc_type, exc_value, exc_tb),
            }

        if record.levelno >= logging.WARNING:
            entry["location"] = f"{record.module}.{record.funcName}:{record.lineno}"

        return json.dumps(entry, default=str)


class SecurityFilter(logging.Filter):
    """Redact credentials that end up in log messages (bearer tokens, query secrets)"""

    PATTERNS = [
        re.compile(r'(Bearer\s+)[A-Za-z0-9\-_\.=]+', re.IGNORECASE),
        re.compile(r'((?:token|access_token|secret|password)=)[^&\s]+', re.IGNORECASE),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = message
        for pattern in self.PATTERNS:
            redacted = pattern.sub(r'\1***REDACTED***', redacted)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(
    service_name: str,
    level: str = "INFO",
    version: str = "1.0.0",
    environment: str = "development",
    log_file: Optional[str] = None
) -> None:
    """
    Route the root logger through the structured formatter

    Args:
        service_name: Name reported in every line
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        version: Service version reported in every line
        environment: Deployment environment reported in every line
        log_file: Also write to this rotating file when given
    """
    formatter = StructuredFormatter(service_name, version, environment)
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10485760,  # 10MB
            backupCount=5
        ))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers = []
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(SecurityFilter())
        root_logger.addHandler(handler)

    for noisy in ('uvicorn', 'uvicorn.access', 'websockets', 'sqlalchemy.engine'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    root_logger.info(
        "Logging initialized",
        extra={'extra_fields': {'level': level, 'file': log_file}}
    )


class LoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that folds fields bound at creation time into ``extra_fields``

        logger = get_logger(__name__, component="presence")
    """

    def process(self, msg, kwargs):
        if self.extra:
            extra = dict(kwargs.get('extra') or {})
            extra['extra_fields'] = {**self.extra, **(extra.get('extra_fields') or {})}
            kwargs['extra'] = extra
        return msg, kwargs


def get_logger(name: str, **bound: Any) -> LoggerAdapter:
    return LoggerAdapter(logging.getLogger(name), bound)


def _set_trace(**values: Optional[str]) -> None:
    for key, value in values.items():
        if value:
            _TRACE_VARS[key].set(value)


def set_request_context(
    request_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    user_id: Optional[str] = None
) -> None:
    """Set trace context for an HTTP request"""
    _set_trace(request_id=request_id, correlation_id=correlation_id, user_id=user_id)


def set_connection_context(
    connection_id: Optional[str] = None,
    user_id: Optional[str] = None,
    shipment_id: Optional[str] = None
) -> None:
    """Set trace context for a real-time connection handler"""
    _set_trace(connection_id=connection_id, user_id=user_id, shipment_id=shipment_id)


def generate_request_id() -> str:
    return str(uuid.uuid4())


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log every HTTP request with its duration and echo the request id back.
    WebSocket traffic is not HTTP and passes straight through.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get('X-Request-ID') or generate_request_id()
        set_request_context(
            request_id=request_id,
            correlation_id=request.headers.get('X-Correlation-ID')
        )

        logger = get_logger(__name__)
        path = request.url.path
        level = logging.DEBUG if path in _QUIET_PATHS else logging.INFO
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                f"Request failed: {request.method} {path}",
                exc_info=True,
                extra={'extra_fields': {
                    'method': request.method,
                    'path': path,
                    'duration_ms': (time.perf_counter() - started) * 1000
                }}
            )
            raise

        logger.log(
            level,
            f"{request.method} {path} -> {response.status_code}",
            extra={'extra_fields': {
                'method': request.method,
                'path': path,
                'status_code': response.status_code,
                'duration_ms': (time.perf_counter() - started) * 1000,
                'client_host': request.client.host if request.client else None
            }}
        )
        response.headers['X-Request-ID'] = request_id
        return response
