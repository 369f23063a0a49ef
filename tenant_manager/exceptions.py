"""
Exception classes for the tenant manager.

Every error raised by the service layer derives from TenantManagerError and
carries an HTTP status code plus a machine-readable error code, so the API
boundary can turn it into a structured response without guessing.
"""

import enum
from typing import Any

from fastapi import status


class ErrorCode(str, enum.Enum):
    """Machine-readable error codes returned in API error payloads."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    CONFLICT = "CONFLICT"
    PROVISIONING_FAILED = "PROVISIONING_FAILED"
    TRANSACTION_FAILED = "TRANSACTION_FAILED"
    AUTH_FAILED = "AUTH_FAILED"
    AUTH_TOKEN_EXPIRED = "AUTH_TOKEN_EXPIRED"
    AUTH_TOKEN_INVALID = "AUTH_TOKEN_INVALID"
    AUTH_ACCESS_DENIED = "AUTH_ACCESS_DENIED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    COMMERCE_UNAVAILABLE = "COMMERCE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class TenantManagerError(Exception):
    """Base exception class for all tenant manager errors"""

    error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


# ============================================================================
# Input Exceptions
# ============================================================================


class ValidationError(TenantManagerError):
    """Raised when input fails one or more validation rules"""

    error_code = ErrorCode.VALIDATION_FAILED

    def __init__(self, message: str = "Validation failed", errors: list[str] | None = None, field: str | None = None):
        self.errors = list(errors or [])
        details: dict[str, Any] = {"errors": self.errors}
        if field:
            details["field"] = field
        super().__init__(message=message, status_code=status.HTTP_400_BAD_REQUEST, details=details)


class ConflictError(TenantManagerError):
    """Raised when a unique attribute (username, email, subdomain...) is already taken"""

    error_code = ErrorCode.CONFLICT

    def __init__(self, resource_type: str, field: str, value: Any, errors: list[str] | None = None):
        self.field = field
        self.errors = list(errors or [f"{field} '{value}' is already taken"])
        super().__init__(
            message=f"{resource_type} with {field} '{value}' already exists",
            status_code=status.HTTP_409_CONFLICT,
            details={"resource_type": resource_type, "field": field, "value": value, "errors": self.errors},
        )


class InvalidStatusTransitionError(TenantManagerError):
    """Raised when a status change is not allowed from the current state"""

    error_code = ErrorCode.INVALID_STATUS_TRANSITION

    def __init__(self, current_status: str, target_status: str, resource_type: str = "Resource"):
        super().__init__(
            message=f"Cannot transition {resource_type} from '{current_status}' to '{target_status}'",
            status_code=status.HTTP_409_CONFLICT,
            details={"resource_type": resource_type, "current_status": current_status, "target_status": target_status},
        )


class NotFoundError(TenantManagerError):
    """Raised when an entity does not exist"""

    error_code = ErrorCode.RESOURCE_NOT_FOUND

    def __init__(self, resource_type: str, resource_id: Any | None = None):
        message = f"{resource_type} not found"
        if resource_id is not None:
            message = f"{resource_type} with id '{resource_id}' not found"
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": resource_id},
        )


# ============================================================================
# Provisioning & Transaction Exceptions
# ============================================================================


class ProvisioningError(TenantManagerError):
    """Raised when creating, destroying or dumping a tenant database fails"""

    error_code = ErrorCode.PROVISIONING_FAILED

    def __init__(self, message: str, tenant_id: int | None = None, step: str | None = None):
        self.tenant_id = tenant_id
        self.step = step
        details: dict[str, Any] = {}
        if tenant_id is not None:
            details["tenant_id"] = tenant_id
        if step:
            details["step"] = step
        super().__init__(message=message, status_code=status.HTTP_502_BAD_GATEWAY, details=details)


class TransactionError(TenantManagerError):
    """Raised when a multi-store operation fails partway"""

    error_code = ErrorCode.TRANSACTION_FAILED

    def __init__(
        self,
        message: str,
        completed_steps: list[str] | None = None,
        failed_step: str | None = None,
        backup_path: str | None = None,
    ):
        self.completed_steps = list(completed_steps or [])
        self.failed_step = failed_step
        self.backup_path = backup_path
        details: dict[str, Any] = {"completed_steps": self.completed_steps}
        if failed_step:
            details["failed_step"] = failed_step
        if backup_path:
            details["backup_path"] = backup_path
        super().__init__(message=message, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, details=details)


class CommerceError(TenantManagerError):
    """Raised when the commerce platform cannot be reached or answers with an error"""

    error_code = ErrorCode.COMMERCE_UNAVAILABLE

    def __init__(self, message: str, status_code: int | None = None):
        details = {"upstream_status": status_code} if status_code else {}
        super().__init__(message=message, status_code=status.HTTP_502_BAD_GATEWAY, details=details)


# ============================================================================
# Authentication & Authorization Exceptions
# ============================================================================


class AuthError(TenantManagerError):
    """Raised when authentication fails"""

    error_code = ErrorCode.AUTH_FAILED

    def __init__(
        self,
        message: str = "Authentication failed",
        status_code: int = status.HTTP_401_UNAUTHORIZED,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message=message, status_code=status_code, details=details)


class InvalidTokenError(AuthError):
    """Raised when a bearer token is malformed or its signature does not verify"""

    error_code = ErrorCode.AUTH_TOKEN_INVALID

    def __init__(self, message: str = "Invalid or malformed token"):
        super().__init__(message=message)


class TokenExpiredError(AuthError):
    """Raised when a bearer token has expired"""

    error_code = ErrorCode.AUTH_TOKEN_EXPIRED

    def __init__(self, message: str = "Token has expired"):
        super().__init__(message=message)


class AccessDeniedError(AuthError):
    """Raised when an authenticated caller may not act on a resource"""

    error_code = ErrorCode.AUTH_ACCESS_DENIED

    def __init__(self, message: str = "Access denied", details: dict[str, Any] | None = None):
        super().__init__(message=message, status_code=status.HTTP_403_FORBIDDEN, details=details)


class RateLimitExceededError(AuthError):
    """Raised when an API key exhausts its hourly request budget"""

    error_code = ErrorCode.RATE_LIMIT_EXCEEDED

    def __init__(self, message: str = "Rate limit exceeded. Please try again later.", reset_at: str | None = None):
        details = {"reset_at": reset_at} if reset_at else {}
        super().__init__(message=message, status_code=status.HTTP_429_TOO_MANY_REQUESTS, details=details)
