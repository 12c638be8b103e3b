"""Business services: onboarding, catalog, token ledger, billing and KYC."""
from .errors import (
    AuthenticationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    PaymentRequiredError,
    PermissionDeniedError,
    ServiceError,
    ValidationError,
)

__all__ = [
    "AuthenticationError",
    "ConflictError",
    "ExternalServiceError",
    "NotFoundError",
    "PaymentRequiredError",
    "PermissionDeniedError",
    "ServiceError",
    "ValidationError",
]
