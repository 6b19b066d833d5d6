"""
Structured JSON logging for the workflow service.

Request and caller context travel through contextvars so that log lines
emitted deep inside a service call still carry the request id and identity.
"""

import json
import logging
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

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
identity_var: ContextVar[Optional[str]] = ContextVar('identity', default=None)

_service_name = 'printshop-workflow'


class StructuredFormatter(logging.Formatter):
    """Format log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "@timestamp": datetime.now(tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": _service_name,
        }

        trace_context = self._get_trace_context()
        if trace_context:
            log_obj["trace"] = trace_context

        log_obj["location"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }

        if record.exc_info:
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

    def _get_trace_context(self) -> Optional[Dict[str, Any]]:
        context = {}
        request_id = request_id_var.get()
        if request_id:
            context["request_id"] = request_id
        identity = identity_var.get()
        if identity:
            context["identity"] = identity
        return context or None


class SecretFilter(logging.Filter):
    """Redact card tokens and secrets that slip into custom fields."""

    SENSITIVE_FIELDS = ('card_token', 'token', 'secret', 'authorization', 'api_key')

    def filter(self, record: logging.LogRecord) -> bool:
        fields = getattr(record, 'extra_fields', None)
        if isinstance(fields, dict):
            record.extra_fields = {
                key: ('***REDACTED***' if key.lower() in self.SENSITIVE_FIELDS else value)
                for key, value in fields.items()
            }
        return True


def setup_logging(service_name: str, level: str = "INFO") -> None:
    """
    Configure the root logger with the structured formatter.

    Args:
        service_name: Name stamped on every log line
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    global _service_name
    _service_name = service_name

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(StructuredFormatter())
    console_handler.addFilter(SecretFilter())
    root_logger.addHandler(console_handler)

    logging.getLogger('uvicorn').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)

    root_logger.info(
        "Logging initialized",
        extra={'extra_fields': {'service': service_name, 'level': level}},
    )


class LoggerAdapter(logging.LoggerAdapter):
    """Inject request context into every record."""

    def process(self, msg, kwargs):
        extra = kwargs.get('extra', {})
        request_id = request_id_var.get()
        if request_id:
            extra['request_id'] = request_id
        identity = identity_var.get()
        if identity:
            extra['identity'] = identity
        kwargs['extra'] = extra
        return msg, kwargs


def get_logger(name: str) -> LoggerAdapter:
    return LoggerAdapter(logging.getLogger(name), {})


def set_request_context(request_id: Optional[str] = None, identity: Optional[str] = None) -> None:
    if request_id:
        request_id_var.set(request_id)
    if identity:
        identity_var.set(identity)


def generate_request_id() -> str:
    return str(uuid.uuid4())


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with its id and duration."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get('X-Request-ID', generate_request_id())
        set_request_context(request_id=request_id)

        logger = get_logger(__name__)
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                exc_info=True,
                extra={
                    'extra_fields': {
                        'method': request.method,
                        'path': request.url.path,
                        'duration_ms': (time.time() - start_time) * 1000,
                    }
                },
            )
            raise

        logger.info(
            f"Request completed: {request.method} {request.url.path}",
            extra={
                'extra_fields': {
                    'method': request.method,
                    'path': request.url.path,
                    'status_code': response.status_code,
                    'duration_ms': (time.time() - start_time) * 1000,
                }
            },
        )
        response.headers['X-Request-ID'] = request_id
        return response
