"""
Structured JSON logging for the dispatch service.

Every record is a single JSON line carrying the request trace context
(request, correlation and user ids) so one order can be followed across
request handlers and the background sweep.
"""

import logging
import logging.handlers
import os
import sys
import json
import time
import traceback
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from contextvars import ContextVar
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

# Context variables for request tracking
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)

def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")

class StructuredFormatter(logging.Formatter):
    """JSON line formatter (ELK / CloudWatch friendly)."""

    def __init__(self, service_name: str, version: str = "1.0.0"):
        super().__init__()
        self.service_name = service_name
        self.version = version
        self.environment = os.getenv("ENVIRONMENT", "development")

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "@timestamp": _timestamp(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
            "version": self.version,
        }

        trace_context = self._trace_context()
        if trace_context:
            log_obj["trace"] = trace_context

        log_obj["location"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }

        if record.exc_info and record.exc_info[0] is not None:
            log_obj["error"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "stacktrace": traceback.format_exception(*record.exc_info),
            }

        if hasattr(record, 'extra_fields'):
            log_obj["custom"] = record.extra_fields

        if hasattr(record, 'duration_ms'):
            log_obj["performance"] = {"duration_ms": record.duration_ms}

        return json.dumps(log_obj, default=str)

    def _trace_context(self) -> Optional[Dict[str, Any]]:
        context = {
            "request_id": request_id_var.get(),
            "correlation_id": correlation_id_var.get(),
            "user_id": user_id_var.get(),
        }
        context = {k: v for k, v in context.items() if v}
        return context or None

class SecurityFilter(logging.Filter):
    """Redacts credentials that end up in log messages."""

    SENSITIVE_FIELDS = ('password', 'token', 'secret', 'authorization')

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            lowered = record.msg.lower()
            for field in self.SENSITIVE_FIELDS:
                if field in lowered:
                    record.msg = "[redacted: message mentioned %s]" % field
                    record.args = ()
                    break
        return True

def setup_logging(
    service_name: str,
    level: str = "INFO",
    version: str = "1.0.0",
    log_file: Optional[str] = None,
) -> None:
    """
    Route the root logger through the JSON formatter.

    Args:
        service_name: Name reported in every record
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        version: Service version reported in every record
        log_file: Optional path of a rotating log file
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers = []

    formatter = StructuredFormatter(service_name, version)
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.handlers.RotatingFileHandler(log_file, maxBytes=10485760, backupCount=5))
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(SecurityFilter())
        root_logger.addHandler(handler)

    logging.getLogger('uvicorn').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)

    root_logger.info(
        "Logging initialized",
        extra={'extra_fields': {'service': service_name, 'level': level, 'file': log_file}},
    )

class LoggerAdapter(logging.LoggerAdapter):
    """Copies the current trace context onto every record."""

    def process(self, msg, kwargs):
        extra = kwargs.get('extra', {})
        for key, var in (('request_id', request_id_var), ('correlation_id', correlation_id_var), ('user_id', user_id_var)):
            value = var.get()
            if value:
                extra[key] = value
        kwargs['extra'] = extra
        return msg, kwargs

def get_logger(name: str) -> LoggerAdapter:
    return LoggerAdapter(logging.getLogger(name), {})

def set_request_context(
    request_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    user_id: Optional[str] = None
) -> None:
    if request_id:
        request_id_var.set(request_id)
    if correlation_id:
        correlation_id_var.set(correlation_id)
    if user_id:
        user_id_var.set(user_id)

def generate_request_id() -> str:
    return str(uuid.uuid4())

class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with its duration and echoes X-Request-ID."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get('X-Request-ID') or generate_request_id()
        set_request_context(
            request_id=request_id,
            correlation_id=request.headers.get('X-Correlation-ID'),
        )
        logger = get_logger(__name__)
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                exc_info=True,
                extra={'extra_fields': {
                    'method': request.method,
                    'path': request.url.path,
                    'duration_ms': (time.time() - start_time) * 1000,
                }},
            )
            raise
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code}",
            extra={'extra_fields': {
                'method': request.method,
                'path': request.url.path,
                'status_code': response.status_code,
                'duration_ms': (time.time() - start_time) * 1000,
                'client_host': request.client.host if request.client else None,
            }},
        )
        response.headers['X-Request-ID'] = request_id
        return response
