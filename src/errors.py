"""Exception hierarchy for the settlement core.

Validation, conflict, authorization and not-found errors surface to the caller
unchanged. ExternalServiceError carries a ``retryable`` flag so callers can tell
transient gateway trouble from a fatal rejection.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Stable error codes for API consumers."""

    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CONFLICT_ERROR = "CONFLICT_ERROR"
    NOT_FOUND = "NOT_FOUND"
    AUTHORIZATION_ERROR = "AUTHORIZATION_ERROR"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"


class SettlementError(Exception):
    """Base exception for all settlement errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary suitable for an API response."""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationError(SettlementError):
    """Bad caller input: amount below dust, malformed parameters."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details,
        )
        if field:
            self.details["field"] = field


class ConflictError(SettlementError):
    """Raised when a resource with the same identity already exists."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.CONFLICT_ERROR,
            status_code=409,
            details=details,
        )


class NotFoundError(SettlementError):
    """Raised when a requested resource is not found."""

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=ErrorCode.NOT_FOUND,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)},
        )
        self.resource = resource


class AuthorizationError(SettlementError):
    """Raised when a resource belongs to a different creator."""

    def __init__(self, message: str = "Not authorized to perform this action"):
        super().__init__(
            message=message,
            error_code=ErrorCode.AUTHORIZATION_ERROR,
            status_code=403,
        )


class ExternalServiceError(SettlementError):
    """Raised when an upstream service (blockchain gateway) fails."""

    def __init__(
        self,
        service: str,
        message: str = "External service error",
        retryable: bool = True,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=f"{service}: {message}",
            error_code=ErrorCode.EXTERNAL_SERVICE_ERROR,
            status_code=502,
            details=details,
        )
        self.service = service
        self.retryable = retryable
        self.details["retryable"] = retryable
