"""
Stored card payment methods and Stripe customers.

Cards are saved through a SetupIntent on the client, then registered
here: the backend attaches them to the user's Stripe customer and caches
the display fields. Each user has at most one active default card.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tokenpay.core.errors import NotFoundError, ValidationError
from tokenpay.database.models import PaymentMethod, Profile
from tokenpay.integrations.stripe_client import StripeClient

logger = structlog.get_logger(__name__)


def serialize_payment_method(method: PaymentMethod) -> Dict[str, Any]:
    """Convert a payment method to a response dict."""
    return {
        "id": str(method.id),
        "stripe_payment_method_id": method.stripe_payment_method_id,
        "card_brand": method.card_brand,
        "card_last4": method.card_last4,
        "card_exp_month": method.card_exp_month,
        "card_exp_year": method.card_exp_year,
        "card_country": method.card_country,
        "card_funding": method.card_funding,
        "is_default": method.is_default,
        "usage_count": method.usage_count,
        "last_used_at": method.last_used_at.isoformat() if method.last_used_at else None,
        "created_at": method.created_at.isoformat(),
    }


class PaymentMethodService:
    """Customer and card management."""

    def __init__(self, stripe_client: Optional[StripeClient] = None) -> None:
        """
        Initialize payment method service.

        Args:
            stripe_client: Optional Stripe client
        """
        self._stripe_client = stripe_client

    @property
    def stripe_client(self) -> StripeClient:
        if self._stripe_client is None:
            self._stripe_client = StripeClient()
        return self._stripe_client

    async def ensure_customer(self, profile: Profile, db: AsyncSession) -> str:
        """
        Stripe customer id of a profile, creating the customer if needed.

        The id is stored on the profile and flushed; the caller commits.
        """
        if profile.stripe_customer_id:
            return profile.stripe_customer_id

        customer = await self.stripe_client.create_customer(
            email=profile.email,
            name=profile.full_name,
            metadata={"user_id": profile.id},
            idempotency_key=f"customer:{profile.id}",
        )
        profile.stripe_customer_id = customer.id
        await db.flush()
        logger.info("stripe_customer_linked", user_id=profile.id, customer_id=customer.id)
        return customer.id

    async def _require_profile(self, user_id: str, db: AsyncSession) -> Profile:
        profile = await db.get(Profile, user_id)
        if profile is None:
            raise NotFoundError("Profile not found", user_id=user_id)
        return profile

    async def _active_methods(self, user_id: str, db: AsyncSession) -> List[PaymentMethod]:
        result = await db.execute(
            select(PaymentMethod)
            .where(PaymentMethod.user_id == user_id, PaymentMethod.is_active.is_(True))
            .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.asc())
        )
        return list(result.scalars())

    async def _get_owned(self, user_id: str, method_id: str, db: AsyncSession) -> PaymentMethod:
        """Active method of the user, by local UUID or Stripe id."""
        result = await db.execute(
            select(PaymentMethod).where(
                PaymentMethod.user_id == user_id,
                PaymentMethod.is_active.is_(True),
            )
        )
        for method in result.scalars():
            if str(method.id) == method_id or method.stripe_payment_method_id == method_id:
                return method
        raise NotFoundError("Payment method not found", payment_method_id=method_id)

    async def _clear_default(self, user_id: str, db: AsyncSession) -> None:
        await db.execute(
            update(PaymentMethod)
            .where(PaymentMethod.user_id == user_id, PaymentMethod.is_default.is_(True))
            .values(is_default=False)
            .execution_options(synchronize_session="fetch")
        )

    async def create_setup_intent(self, user_id: str, db: AsyncSession) -> Dict[str, Any]:
        """SetupIntent the client confirms to save a new card."""
        profile = await self._require_profile(user_id, db)
        customer_id = await self.ensure_customer(profile, db)
        setup_intent = await self.stripe_client.create_setup_intent(customer_id)
        await db.commit()
        return {
            "setup_intent_id": setup_intent.id,
            "client_secret": setup_intent.client_secret,
            "customer_id": customer_id,
        }

    async def store_payment_method(
        self,
        user_id: str,
        stripe_payment_method_id: str,
        db: AsyncSession,
        make_default: bool = False,
    ) -> PaymentMethod:
        """
        Register a card saved on the client.

        The first active card becomes the default.

        Raises:
            ValidationError: If the payment method is not a card
        """
        profile = await self._require_profile(user_id, db)
        customer_id = await self.ensure_customer(profile, db)

        existing = await db.scalar(
            select(PaymentMethod).where(
                PaymentMethod.stripe_payment_method_id == stripe_payment_method_id
            )
        )
        if existing is not None and existing.user_id != user_id:
            raise NotFoundError("Payment method not found", payment_method_id=stripe_payment_method_id)

        stripe_method = await self.stripe_client.retrieve_payment_method(stripe_payment_method_id)
        card = getattr(stripe_method, "card", None)
        if stripe_method.type != "card" or card is None:
            raise ValidationError("Only card payment methods are supported")
        if getattr(stripe_method, "customer", None) != customer_id:
            await self.stripe_client.attach_payment_method(stripe_payment_method_id, customer_id)

        has_default = any(m.is_default for m in await self._active_methods(user_id, db))
        becomes_default = make_default or not has_default
        if becomes_default:
            await self._clear_default(user_id, db)

        method = existing or PaymentMethod(
            user_id=user_id,
            stripe_payment_method_id=stripe_payment_method_id,
        )
        method.stripe_customer_id = customer_id
        method.card_brand = card.brand
        method.card_last4 = card.last4
        method.card_exp_month = card.exp_month
        method.card_exp_year = card.exp_year
        method.card_country = getattr(card, "country", None)
        method.card_funding = getattr(card, "funding", None)
        method.is_active = True
        method.is_default = becomes_default or (existing is not None and existing.is_default)
        if existing is None:
            db.add(method)

        await db.commit()
        if becomes_default:
            await self.stripe_client.set_default_payment_method(customer_id, stripe_payment_method_id)

        logger.info(
            "payment_method_stored",
            user_id=user_id,
            payment_method_id=stripe_payment_method_id,
            is_default=method.is_default,
        )
        return method

    async def list_payment_methods(self, user_id: str, db: AsyncSession) -> List[PaymentMethod]:
        """Active cards, default first, then oldest first."""
        return await self._active_methods(user_id, db)

    async def get_default_or_oldest(
        self, user_id: str, db: AsyncSession
    ) -> Optional[PaymentMethod]:
        """The card to charge when the caller did not pick one."""
        methods = await self._active_methods(user_id, db)
        return methods[0] if methods else None

    async def get_owned_method(
        self, user_id: str, method_id: str, db: AsyncSession
    ) -> PaymentMethod:
        """
        Active method of the user, by local UUID or Stripe id.

        Raises:
            NotFoundError: If the user has no such active method
        """
        return await self._get_owned(user_id, method_id, db)

    async def set_default_payment_method(
        self, user_id: str, method_id: str, db: AsyncSession
    ) -> PaymentMethod:
        """Make one card the default, unsetting the others first."""
        method = await self._get_owned(user_id, method_id, db)
        if not method.is_default:
            await self._clear_default(user_id, db)
            method.is_default = True
            await db.commit()
            await self.stripe_client.set_default_payment_method(
                method.stripe_customer_id, method.stripe_payment_method_id
            )
            logger.info("default_payment_method_set", user_id=user_id, payment_method_id=str(method.id))
        return method

    async def delete_payment_method(
        self, user_id: str, method_id: str, db: AsyncSession
    ) -> Dict[str, Any]:
        """
        Soft delete a card and detach it in Stripe.

        When the default card is removed the oldest remaining card becomes
        the default.
        """
        method = await self._get_owned(user_id, method_id, db)
        was_default = method.is_default

        await self.stripe_client.detach_payment_method(method.stripe_payment_method_id)
        method.is_active = False
        method.is_default = False
        await db.flush()

        promoted: Optional[PaymentMethod] = None
        if was_default:
            remaining = await self._active_methods(user_id, db)
            if remaining:
                promoted = remaining[0]
                promoted.is_default = True

        await db.commit()
        if promoted is not None:
            await self.stripe_client.set_default_payment_method(
                promoted.stripe_customer_id, promoted.stripe_payment_method_id
            )

        logger.info(
            "payment_method_deleted",
            user_id=user_id,
            payment_method_id=str(method.id),
            promoted=str(promoted.id) if promoted else None,
        )
        return {
            "deleted": str(method.id),
            "new_default": str(promoted.id) if promoted else None,
        }

    async def track_usage(self, stripe_payment_method_id: str, db: AsyncSession) -> None:
        """Count a charge against a stored card; flushed, not committed."""
        await db.execute(
            update(PaymentMethod)
            .where(PaymentMethod.stripe_payment_method_id == stripe_payment_method_id)
            .values(
                usage_count=PaymentMethod.usage_count + 1,
                last_used_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
