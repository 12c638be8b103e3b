"""
FastAPI dependencies: service wiring, caller identity and admin access.
"""
import hmac
from typing import Optional

import redis.asyncio as aioredis
import structlog
from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tokenpay.config import get_settings
from tokenpay.core.catalog import CatalogService
from tokenpay.core.errors import AuthenticationError, PermissionDeniedError
from tokenpay.core.idempotency import IdempotencyManager
from tokenpay.core.kyc import KycService
from tokenpay.core.ledger import TokenLedger
from tokenpay.core.onboarding import OnboardingService, onboarding_required
from tokenpay.core.payment_methods import PaymentMethodService
from tokenpay.core.purchases import PurchaseService
from tokenpay.core.subscriptions import SubscriptionService
from tokenpay.database.connection import get_db
from tokenpay.database.models import Profile
from tokenpay.integrations.identity import IdentityClaims, IdentityVerifier
from tokenpay.integrations.stripe_client import StripeClient
from tokenpay.integrations.webhook_handler import WebhookHandler
from tokenpay.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


class Services:
    """One instance of every service, sharing the Stripe and Redis clients."""

    def __init__(
        self,
        stripe_client: Optional[StripeClient] = None,
        redis_client: Optional[aioredis.Redis] = None,
        identity: Optional[IdentityVerifier] = None,
    ) -> None:
        self.stripe_client = stripe_client or StripeClient()
        self.identity = identity or IdentityVerifier()
        self.onboarding = OnboardingService()
        self.ledger = TokenLedger()
        self.catalog = CatalogService(self.stripe_client)
        self.payment_methods = PaymentMethodService(self.stripe_client)
        self.purchases = PurchaseService(
            stripe_client=self.stripe_client,
            idempotency_manager=IdempotencyManager(redis_client),
            ledger=self.ledger,
            catalog=self.catalog,
            payment_methods=self.payment_methods,
        )
        self.subscriptions = SubscriptionService(
            self.stripe_client, self.catalog, self.payment_methods
        )
        self.kyc = KycService(self.stripe_client)
        self.webhooks = WebhookHandler(
            purchases=self.purchases,
            subscriptions=self.subscriptions,
            kyc=self.kyc,
            redis_client=redis_client,
        )
        self.health = HealthCheck(redis_client=redis_client, identity=self.identity)

    async def close(self) -> None:
        await self.purchases.close()
        await self.webhooks.close()


_services: Optional[Services] = None


def get_services() -> Services:
    """Process-wide services, created on first use."""
    global _services
    if _services is None:
        _services = Services()
    return _services


async def close_services() -> None:
    global _services
    if _services is not None:
        await _services.close()
        _services = None


async def get_current_claims(
    authorization: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> IdentityClaims:
    """
    Verify the `Authorization: Bearer <id token>` header.

    Raises:
        AuthenticationError: If the header is missing or the token is invalid
    """
    if not authorization:
        raise AuthenticationError("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Authorization header must be 'Bearer <token>'")
    claims = await services.identity.verify(token.strip())
    structlog.contextvars.bind_contextvars(user_id=claims.user_id)
    return claims


async def get_current_user(
    claims: IdentityClaims = Depends(get_current_claims),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Profile:
    """The caller's profile, created on the first authenticated request."""
    return await services.onboarding.ensure_profile(claims, db)


async def require_onboarded_user(profile: Profile = Depends(get_current_user)) -> Profile:
    """
    The caller's profile, once onboarding is done.

    Raises:
        PermissionDeniedError: While onboarding is still required
    """
    if onboarding_required(profile):
        raise PermissionDeniedError(
            "Complete onboarding first", error_code="onboarding_required"
        )
    return profile


async def require_admin(request: Request) -> None:
    """
    Check the admin API key header.

    Raises:
        AuthenticationError: If the header is missing
        PermissionDeniedError: If the key is wrong
    """
    settings = get_settings()
    provided = request.headers.get(settings.api_key_header)
    if not provided:
        raise AuthenticationError(f"Missing {settings.api_key_header} header")
    if not hmac.compare_digest(provided.encode(), settings.admin_api_key.encode()):
        logger.warning("admin_key_rejected", path=request.url.path)
        raise PermissionDeniedError("Invalid admin API key")
