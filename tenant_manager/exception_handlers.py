"""
Exception handlers that turn every failure into the same JSON envelope:

    {"error": {"status_code": 409, "error_code": "CONFLICT", "type": "Conflict",
               "message": "...", "details": {...}, "path": "/admin/tenants"}}

Details are omitted when empty. 401 responses carry a WWW-Authenticate header.
"""

import logging
from http import HTTPStatus
from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenant_manager.exceptions import ErrorCode, TenantManagerError

logger = logging.getLogger(__name__)

# Codes for errors raised by the framework rather than the service layer
FRAMEWORK_ERROR_CODES = {
    status.HTTP_400_BAD_REQUEST: ErrorCode.VALIDATION_FAILED,
    status.HTTP_401_UNAUTHORIZED: ErrorCode.AUTH_FAILED,
    status.HTTP_403_FORBIDDEN: ErrorCode.AUTH_ACCESS_DENIED,
    status.HTTP_404_NOT_FOUND: ErrorCode.RESOURCE_NOT_FOUND,
    status.HTTP_405_METHOD_NOT_ALLOWED: ErrorCode.VALIDATION_FAILED,
    status.HTTP_409_CONFLICT: ErrorCode.CONFLICT,
    status.HTTP_429_TOO_MANY_REQUESTS: ErrorCode.RATE_LIMIT_EXCEEDED,
}


def status_title(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Error"


def error_envelope(
    status_code: int,
    message: str,
    error_code: ErrorCode,
    path: str | None = None,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    body: dict[str, Any] = {
        "status_code": status_code,
        "error_code": error_code.value,
        "type": status_title(status_code),
        "message": message,
    }
    if details:
        body["details"] = details
    if path:
        body["path"] = path

    headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(status_code=status_code, content={"error": body}, headers=headers)


async def handle_service_error(request: Request, exc: TenantManagerError) -> JSONResponse:
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        level,
        f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}",
        extra={"status_code": exc.status_code, "path": request.url.path},
    )
    return error_envelope(exc.status_code, exc.message, exc.error_code, request.url.path, exc.details)


async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    error_code = FRAMEWORK_ERROR_CODES.get(exc.status_code, ErrorCode.UNKNOWN_ERROR)
    return error_envelope(exc.status_code, str(exc.detail), error_code, request.url.path)


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies and query strings; each problem is listed with its field path."""
    problems = [
        {
            "field": ".".join(str(part) for part in error["loc"] if part not in ("body", "query", "path")),
            "message": error["msg"],
        }
        for error in exc.errors()
    ]
    logger.info(f"Rejected request to {request.url.path}: {len(problems)} invalid field(s)")
    return error_envelope(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Request validation failed",
        ErrorCode.VALIDATION_FAILED,
        request.url.path,
        {"errors": problems},
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}", exc_info=exc)
    # The exception text stays in the log
    return error_envelope(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "An unexpected error occurred. Please try again later.",
        ErrorCode.INTERNAL_ERROR,
        request.url.path,
    )


def register_exception_handlers(app) -> None:
    app.add_exception_handler(TenantManagerError, handle_service_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(Exception, handle_unexpected_error)
