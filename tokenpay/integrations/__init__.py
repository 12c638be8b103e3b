"""External integrations: Stripe and the identity provider."""
from .identity import IdentityClaims, IdentityVerifier
from .stripe_client import StripeClient, StripeClientError, StripeErrorType

__all__ = [
    "IdentityClaims",
    "IdentityVerifier",
    "StripeClient",
    "StripeClientError",
    "StripeErrorType",
]
