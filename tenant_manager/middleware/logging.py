"""
Request logging.

Each request gets an id (taken from X-Request-ID or generated) that is echoed
back in the response and attached to every log record emitted while the
request is handled. One access line is written per request, tagged with the
caller's auth scheme and tenant once the auth dependency has identified them.
"""

import json
import logging
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

current_request_id: ContextVar[str] = ContextVar("current_request_id", default="-")

REQUEST_ID_HEADER = "X-Request-ID"
CONTEXT_FIELDS = ("tenant_id", "auth_scheme", "method", "path", "status_code", "duration_ms", "client_ip")
UNLOGGED_PATHS = frozenset({"/health"})
NOISY_LOGGERS = ("apscheduler", "uvicorn", "uvicorn.access", "sqlalchemy.engine")


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = current_request_id.get()
        return True


class JsonLogFormatter(logging.Formatter):
    """Renders a record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "request_id": getattr(record, "request_id", "-"),
            "message": record.getMessage(),
        }
        entry.update({name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def client_ip(request: Request) -> str:
    """First hop of X-Forwarded-For / X-Real-IP, else the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For") or request.headers.get("X-Real-IP")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, logger_name: str = "tenant_manager.access"):
        super().__init__(app)
        self.access_log = logging.getLogger(logger_name)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        token = current_request_id.set(request_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._access(request, 500, started, failed=True)
            raise
        else:
            response.headers[REQUEST_ID_HEADER] = request_id
            self._access(request, response.status_code, started)
            return response
        finally:
            current_request_id.reset(token)

    def _access(self, request: Request, status_code: int, started: float, failed: bool = False) -> None:
        if request.url.path in UNLOGGED_PATHS:
            return

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        context = {
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "duration_ms": duration_ms,
            "client_ip": client_ip(request),
        }
        principal = getattr(request.state, "principal", None)
        if principal is not None:
            context["auth_scheme"] = principal.scheme
            if principal.tenant_id is not None:
                context["tenant_id"] = principal.tenant_id

        level = logging.ERROR if status_code >= 500 else logging.WARNING if status_code >= 400 else logging.INFO
        suffix = " (unhandled exception)" if failed else ""
        self.access_log.log(
            level, f"{request.method} {request.url.path} {status_code} in {duration_ms}ms{suffix}", extra=context
        )


def setup_structured_logging(log_level: str = "INFO", json_format: bool = True, log_file: str | None = None) -> None:
    """Replace the root handlers with one JSON (or plain text) handler."""
    level = getattr(logging, log_level.upper())
    handler: logging.Handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.addFilter(RequestContextFilter())
    if json_format:
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s"))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    logging.getLogger("tenant_manager").setLevel(level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
