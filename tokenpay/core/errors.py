"""
Service exception hierarchy.

Every service error carries a stable error code (for client handling) and
the HTTP status the API answers with. Messages are safe to show to users;
the desktop client displays them as toasts and lets the user retry.
"""
from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base exception for all tokenpay service errors."""

    error_code = "service_error"
    http_status = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        http_status: Optional[int] = None,
        **details: Any,
    ):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        if http_status is not None:
            self.http_status = http_status
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        body: Dict[str, Any] = {
            "code": self.error_code,
            "message": self.message,
        }
        if self.details:
            body["details"] = self.details
        return {"error": body}


class ValidationError(ServiceError):
    """Request data failed a business rule."""

    error_code = "validation_error"
    http_status = 400


class AuthenticationError(ServiceError):
    """Caller could not be authenticated."""

    error_code = "authentication_failed"
    http_status = 401


class PermissionDeniedError(ServiceError):
    """Caller is authenticated but may not perform the action."""

    error_code = "permission_denied"
    http_status = 403


class NotFoundError(ServiceError):
    """Requested row does not exist or belongs to someone else."""

    error_code = "not_found"
    http_status = 404


class ConflictError(ServiceError):
    """Request collides with existing state."""

    error_code = "conflict"
    http_status = 409


class PaymentRequiredError(ServiceError):
    """Not enough tokens, or a payment has not gone through."""

    error_code = "payment_required"
    http_status = 402


class ExternalServiceError(ServiceError):
    """A provider (Stripe, identity) failed."""

    error_code = "external_service_error"
    http_status = 502
