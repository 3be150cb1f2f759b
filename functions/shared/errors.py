"""
Standardized errors for the billing engine and its API.

APIError is the HTTP-facing error. BillingError carries an ErrorKind so
callers can choose between retrying, surfacing to the user, or logging,
without parsing messages.
"""

from enum import Enum
from typing import Optional


class APIError(Exception):
    """Base class for API errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_response(self, origin: Optional[str] = None) -> dict:
        """Convert to API Gateway response format."""
        from shared.response_utils import error_response

        return error_response(
            self.status_code,
            self.code,
            self.message,
            details=self.details or None,
            origin=origin,
        )


class UnauthorizedError(APIError):
    """Raised when the caller has no valid session."""

    def __init__(self, message: str = "Please log in to continue", code: str = "unauthorized"):
        super().__init__(code=code, message=message, status_code=401)


class ForbiddenError(APIError):
    """Raised when the caller is authenticated but not allowed."""

    def __init__(self, message: str = "You are not authorized to access this resource"):
        super().__init__(code="forbidden", message=message, status_code=403)


class InvalidRequestError(APIError):
    """Raised for general invalid request errors."""

    def __init__(self, message: str, details: Optional[dict] = None, code: str = "invalid_request"):
        super().__init__(
            code=code,
            message=message,
            status_code=400,
            details=details,
        )


class ErrorKind(Enum):
    VERIFICATION = "verification"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    TRANSIENT = "transient"


_KIND_STATUS = {
    ErrorKind.VERIFICATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.VALIDATION: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.TRANSIENT: 503,
}


class BillingError(Exception):
    """Base class for billing engine failures."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code or self.kind.value
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT

    def to_api_error(self) -> APIError:
        return APIError(self.code, self.message, status_code=_KIND_STATUS[self.kind])

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class VerificationError(BillingError):
    """Bad signature or malformed webhook payload. Nothing was written."""

    kind = ErrorKind.VERIFICATION


class PermanentError(BillingError):
    """Failure that redelivery can never fix."""


class NotFoundError(PermanentError):
    """Metadata points at a package, role, user or session that does not exist."""

    kind = ErrorKind.NOT_FOUND


class ValidationError(PermanentError):
    """Missing or inconsistent input."""

    kind = ErrorKind.VALIDATION


class ConflictError(PermanentError):
    """A lifecycle invariant would be violated (second live role, illegal transition)."""

    kind = ErrorKind.CONFLICT


class TransientError(BillingError):
    """Infrastructure failure (store, gateway, mail). Safe to retry."""

    kind = ErrorKind.TRANSIENT
