"""
Structured logging configuration for the payments service.

Every record is emitted as one JSON object on stdout. Request context
(request id, correlation id) and payment context (order number, external
payment id) travel in context variables so that log lines written deep
inside the checkout workflow still carry them.
"""

import logging
import logging.handlers
import os
import re
import sys
import json
import time
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

TRACE_CONTEXT: Dict[str, ContextVar] = {
    'request_id': ContextVar('request_id', default=None),
    'correlation_id': ContextVar('correlation_id', default=None),
}
PAYMENT_CONTEXT: Dict[str, ContextVar] = {
    'order_number': ContextVar('order_number', default=None),
    'external_payment_id': ContextVar('external_payment_id', default=None),
}

REDACTED = "***REDACTED***"


def _snapshot(variables: Dict[str, ContextVar]) -> Optional[Dict[str, Any]]:
    values = {name: var.get() for name, var in variables.items()}
    return {name: value for name, value in values.items() if value} or None


def _bind(variables: Dict[str, ContextVar], **values) -> None:
    for name, value in values.items():
        if value:
            variables[name].set(value)


class StructuredFormatter(logging.Formatter):
    """JSON formatter; one object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "@timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": os.getenv('SERVICE_NAME', 'payments-service'),
            "environment": os.getenv('ENVIRONMENT', 'development'),
            "version": os.getenv('SERVICE_VERSION', '1.0.0'),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        for key, context in (("trace", TRACE_CONTEXT), ("payment", PAYMENT_CONTEXT)):
            values = _snapshot(context)
            if values:
                entry[key] = values

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc, tb = record.exc_info
            entry["error"] = {
                "type": exc_type.__name__,
                "message": str(exc),
                "code": getattr(exc, 'code', None),
                "stacktrace": traceback.format_exception(exc_type, exc, tb),
            }

        extra_fields = getattr(record, 'extra_fields', None)
        if extra_fields:
            entry["custom"] = extra_fields

        duration_ms = getattr(record, 'duration_ms', None)
        if duration_ms is not None:
            entry["performance"] = {"duration_ms": round(duration_ms, 2)}

        return json.dumps(entry, default=str, ensure_ascii=False)


class PerformanceFilter(logging.Filter):
    """Converts a `duration` extra (seconds) into `duration_ms`."""

    def filter(self, record: logging.LogRecord) -> bool:
        duration = getattr(record, 'duration', None)
        if duration is not None:
            record.duration_ms = duration * 1000
        return True


class SecurityFilter(logging.Filter):
    """Redacts credentials that may end up in log messages or extra fields."""

    SENSITIVE_FIELDS = (
        'client_secret', 'secret', 'password', 'access_token', 'token',
        'authorization', 'api_key',
    )
    _PATTERN = re.compile(
        r'(?i)("?(?:%s)"?\s*[:=]\s*"?)([^",\s}]+)' % '|'.join(SENSITIVE_FIELDS)
    )

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self._PATTERN.sub(r'\1' + REDACTED, message)
        if redacted != message:
            record.msg = redacted
            record.args = None

        extra_fields = getattr(record, 'extra_fields', None)
        if isinstance(extra_fields, dict):
            record.extra_fields = self._redact_mapping(extra_fields)
        return True

    def _is_sensitive(self, key: str) -> bool:
        lowered = key.lower()
        return any(field in lowered for field in self.SENSITIVE_FIELDS)

    def _redact_mapping(self, data: Dict[str, Any]) -> Dict[str, Any]:
        clean = {}
        for key, value in data.items():
            if self._is_sensitive(key):
                clean[key] = REDACTED
            elif isinstance(value, dict):
                clean[key] = self._redact_mapping(value)
            else:
                clean[key] = value
        return clean


def setup_logging(
    service_name: str,
    level: str = "INFO",
    enable_console: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Setup structured logging for the service

    Args:
        service_name: Name reported in every record
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Enable stdout output
        log_file: Also write to this rotating file when set
    """
    os.environ['SERVICE_NAME'] = service_name

    handlers = []
    if enable_console:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_file:
        handlers.append(logging.handlers.RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5))

    formatter = StructuredFormatter()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(PerformanceFilter())
        handler.addFilter(SecurityFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers = handlers

    # Quiet chatty libraries; httpx would log every PayPal URL
    for noisy in ('uvicorn.access', 'httpx', 'httpcore', 'sqlalchemy.engine'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    root_logger.info(
        "Logging initialized",
        extra={'extra_fields': {'service': service_name, 'level': level, 'file': log_file}}
    )


class LoggerAdapter(logging.LoggerAdapter):
    """Merges fields bound at creation time into each record's `extra_fields`."""

    def process(self, msg, kwargs):
        if self.extra:
            extra = kwargs.setdefault('extra', {})
            extra['extra_fields'] = {**self.extra, **extra.get('extra_fields', {})}
        return msg, kwargs


def get_logger(name: str, **bound) -> LoggerAdapter:
    """Logger whose records carry request and payment context."""
    return LoggerAdapter(logging.getLogger(name), bound)


def set_request_context(
    request_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> None:
    _bind(TRACE_CONTEXT, request_id=request_id, correlation_id=correlation_id)


def set_payment_context(
    order_number: Optional[str] = None,
    external_payment_id: Optional[str] = None,
) -> None:
    """Attach the order being worked on to every following log line of this task."""
    _bind(PAYMENT_CONTEXT, order_number=order_number, external_payment_id=external_payment_id)


def generate_request_id() -> str:
    return str(uuid.uuid4())


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs every request and response, propagates X-Request-ID and
    tracks request duration.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get('X-Request-ID') or generate_request_id()
        set_request_context(request_id=request_id, correlation_id=request.headers.get('X-Correlation-ID'))

        logger = get_logger(__name__, method=request.method, path=request.url.path)
        logger.info(
            f"Request started: {request.method} {request.url.path}",
            extra={'extra_fields': {'client_host': request.client.host if request.client else None}}
        )

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                exc_info=True,
                extra={'duration': time.perf_counter() - start_time}
            )
            raise

        logger.info(
            f"Request completed: {request.method} {request.url.path} {response.status_code}",
            extra={
                'extra_fields': {'status_code': response.status_code},
                'duration': time.perf_counter() - start_time,
            }
        )

        response.headers['X-Request-ID'] = request_id
        return response
