"""
Base exception hierarchy shared by every service.

Each service defines its own concrete errors, but derives them from one of
the categories below so the HTTP layer can map any failure to a status code
without knowing the service that raised it:

- ValidationFailedError: malformed input, rejected before any state change
- AuthenticityError: a signature or claimed identifier did not check out
- NotFoundError: a referenced order, item or address does not exist
- BusinessConflictError: the request is well formed but not allowed now
- UpstreamUnavailableError: a provider timed out or answered with an error
- ConfigurationError: the deployment is missing a required secret
"""

from typing import Any, Optional


class PayshipError(Exception):
    """Base exception carrying a machine-readable code and log context."""

    default_code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str, code: Optional[str] = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context = context

    def to_detail(self) -> dict[str, Any]:
        """Error body returned to API clients."""
        return {"message": self.message, "code": self.code}


class ValidationFailedError(PayshipError):
    default_code = "VALIDATION_ERROR"
    http_status = 400


class AuthenticityError(PayshipError):
    default_code = "AUTHENTICITY_FAILED"
    http_status = 400


class NotFoundError(PayshipError):
    default_code = "NOT_FOUND"
    http_status = 404


class BusinessConflictError(PayshipError):
    default_code = "CONFLICT"
    http_status = 409


class UpstreamUnavailableError(PayshipError):
    default_code = "UPSTREAM_UNAVAILABLE"
    http_status = 502


class ConfigurationError(PayshipError):
    default_code = "CONFIGURATION_ERROR"
    http_status = 500


class RepositoryError(PayshipError):
    """Raised when a database operation fails after rollback."""

    default_code = "DATABASE_ERROR"
    http_status = 500
