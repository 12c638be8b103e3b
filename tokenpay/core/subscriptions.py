"""
Subscriptions.

The `subscriptions` table mirrors Stripe; Stripe stays the source of
truth and every change (create, cancel, webhook, sync) ends in
`apply_stripe_subscription`. The profile carries a summary:
`active`/`trialing` set id, status and period end, while
`canceled`/`past_due`/`unpaid` only update the status.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenpay.core.catalog import CatalogService
from tokenpay.core.errors import ConflictError, NotFoundError, ValidationError
from tokenpay.core.payment_methods import PaymentMethodService
from tokenpay.database.models import Profile, Subscription
from tokenpay.integrations.stripe_client import StripeClient, StripeClientError, stripe_value

logger = structlog.get_logger(__name__)

LIVE_STATUSES = ("active", "trialing", "past_due", "incomplete", "unpaid")
MIRROR_FULL_STATUSES = ("active", "trialing")
MIRROR_STATUS_ONLY = ("canceled", "past_due", "unpaid")


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _epoch(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def _is_stale(row: Subscription, stripe_subscription: Any) -> bool:
    """
    Whether an event for another Stripe subscription is older than the live row.

    Ordered by Stripe `created`, falling back to the current period start
    when either side lacks it. An event that cannot be ordered never
    displaces a live row.
    """
    if row.status not in LIVE_STATUSES:
        return False
    incoming = stripe_value(stripe_subscription, "created")
    current = row.stripe_created
    if incoming is None or current is None:
        incoming = stripe_value(stripe_subscription, "current_period_start")
        current = _epoch(row.current_period_start)
    if current is None:
        return False
    return incoming is None or int(incoming) < current


def _first_price(stripe_subscription: Any) -> Dict[str, Optional[str]]:
    """Price and product id of the subscription's first item."""
    items = stripe_value(stripe_subscription, "items")
    data = stripe_value(items, "data") or []
    if not data:
        return {"price_id": None, "product_id": None}
    price = stripe_value(data[0], "price")
    product = stripe_value(price, "product")
    if product is not None and not isinstance(product, str):
        product = stripe_value(product, "id")
    return {"price_id": stripe_value(price, "id"), "product_id": product}


def serialize_subscription(subscription: Subscription) -> Dict[str, Any]:
    """Convert a subscription to a response dict."""

    def iso(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    return {
        "id": str(subscription.id),
        "stripe_subscription_id": subscription.stripe_subscription_id,
        "stripe_price_id": subscription.stripe_price_id,
        "stripe_product_id": subscription.stripe_product_id,
        "subscription_plan_id": (
            str(subscription.subscription_plan_id) if subscription.subscription_plan_id else None
        ),
        "status": subscription.status,
        "current_period_start": iso(subscription.current_period_start),
        "current_period_end": iso(subscription.current_period_end),
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "cancel_at": iso(subscription.cancel_at),
        "canceled_at": iso(subscription.canceled_at),
    }


class SubscriptionService:
    """Create, cancel and synchronise subscriptions."""

    def __init__(
        self,
        stripe_client: Optional[StripeClient] = None,
        catalog: Optional[CatalogService] = None,
        payment_methods: Optional[PaymentMethodService] = None,
    ) -> None:
        """
        Initialize subscription service.

        Args:
            stripe_client: Optional Stripe client
            catalog: Optional catalog service
            payment_methods: Optional payment method service
        """
        self._stripe_client = stripe_client
        self.catalog = catalog or CatalogService(stripe_client)
        self.payment_methods = payment_methods or PaymentMethodService(stripe_client)

    @property
    def stripe_client(self) -> StripeClient:
        if self._stripe_client is None:
            self._stripe_client = StripeClient()
        return self._stripe_client

    async def _get_row(self, user_id: str, db: AsyncSession) -> Optional[Subscription]:
        result = await db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create_subscription(
        self, user_id: str, stripe_price_id: str, db: AsyncSession
    ) -> Dict[str, Any]:
        """
        Subscribe a user to a plan price.

        Charges the default (or oldest) stored card.

        Raises:
            NotFoundError: If the price or profile is unknown
            ValidationError: If the user has no stored card
            ConflictError: If the user already has a live subscription
        """
        price = await self.catalog.get_subscription_price(stripe_price_id, db)
        profile = await db.get(Profile, user_id)
        if profile is None:
            raise NotFoundError("Profile not found", user_id=user_id)

        current = await self._get_row(user_id, db)
        if current is not None and current.status in LIVE_STATUSES:
            raise ConflictError(
                "You already have an active subscription",
                subscription_id=current.stripe_subscription_id,
                status=current.status,
            )

        method = await self.payment_methods.get_default_or_oldest(user_id, db)
        if method is None:
            raise ValidationError("Add a payment method before subscribing")

        customer_id = await self.payment_methods.ensure_customer(profile, db)
        if method.stripe_customer_id != customer_id:
            await self.stripe_client.attach_payment_method(method.stripe_payment_method_id, customer_id)
        await self.stripe_client.set_default_payment_method(
            customer_id, method.stripe_payment_method_id
        )

        stripe_subscription = await self.stripe_client.create_subscription(
            customer_id=customer_id,
            price_id=price.stripe_price_id,
            payment_method_id=method.stripe_payment_method_id,
            metadata={
                "user_id": user_id,
                "price_id": price.stripe_price_id,
                "subscription_plan_id": str(price.subscription_plan_id),
            },
            trial_period_days=price.trial_period_days,
        )

        subscription = await self.apply_stripe_subscription(stripe_subscription, db, user_id=user_id)
        logger.info(
            "subscription_started",
            user_id=user_id,
            subscription_id=stripe_subscription.id,
            status=stripe_subscription.status,
        )
        result = serialize_subscription(subscription)
        latest_invoice = stripe_value(stripe_subscription, "latest_invoice")
        payment_intent = stripe_value(latest_invoice, "payment_intent")
        result["client_secret"] = stripe_value(payment_intent, "client_secret")
        return result

    async def cancel_subscription(self, user_id: str, db: AsyncSession) -> Dict[str, Any]:
        """
        Cancel at the end of the current period.

        Raises:
            NotFoundError: If the user has no live subscription
        """
        current = await self._get_row(user_id, db)
        if current is None or current.status not in LIVE_STATUSES:
            raise NotFoundError("No active subscription")

        stripe_subscription = await self.stripe_client.cancel_subscription_at_period_end(
            current.stripe_subscription_id
        )
        subscription = await self.apply_stripe_subscription(stripe_subscription, db, user_id=user_id)
        logger.info(
            "subscription_cancel_scheduled",
            user_id=user_id,
            subscription_id=current.stripe_subscription_id,
        )
        return serialize_subscription(subscription)

    async def get_subscription(self, user_id: str, db: AsyncSession) -> Optional[Dict[str, Any]]:
        """The user's subscription, or None."""
        current = await self._get_row(user_id, db)
        return serialize_subscription(current) if current else None

    async def sync_subscription(self, user_id: str, db: AsyncSession) -> Optional[Dict[str, Any]]:
        """Re-read the user's subscription from Stripe."""
        current = await self._get_row(user_id, db)
        if current is None:
            return None
        stripe_subscription = await self.stripe_client.retrieve_subscription(
            current.stripe_subscription_id
        )
        subscription = await self.apply_stripe_subscription(stripe_subscription, db, user_id=user_id)
        return serialize_subscription(subscription)

    async def sync_all_subscriptions(self, db: AsyncSession) -> Dict[str, Any]:
        """
        Re-read every non-canceled subscription from Stripe (admin).

        One failing subscription does not stop the rest.

        Returns:
            Dict[str, Any]: Number updated and the per-subscription errors
        """
        result = await db.execute(
            select(Subscription.user_id, Subscription.stripe_subscription_id).where(
                Subscription.status != "canceled"
            )
        )
        rows = result.all()
        updated = 0
        errors: List[Dict[str, str]] = []
        for user_id, stripe_subscription_id in rows:
            try:
                stripe_subscription = await self.stripe_client.retrieve_subscription(
                    stripe_subscription_id
                )
                await self.apply_stripe_subscription(stripe_subscription, db, user_id=user_id)
                updated += 1
            except StripeClientError as e:
                await db.rollback()
                errors.append({"subscription_id": stripe_subscription_id, "error": e.message})
                logger.warning(
                    "subscription_sync_failed",
                    subscription_id=stripe_subscription_id,
                    error=e.message,
                )

        logger.info("subscriptions_synced", updated=updated, errors=len(errors))
        return {"updated": updated, "errors": errors}

    async def _resolve_user(
        self, stripe_subscription: Any, db: AsyncSession
    ) -> Optional[str]:
        metadata = stripe_value(stripe_subscription, "metadata") or {}
        user_id = stripe_value(metadata, "user_id")
        if user_id:
            return user_id
        customer_id = stripe_value(stripe_subscription, "customer")
        if customer_id:
            return await db.scalar(
                select(Profile.id).where(Profile.stripe_customer_id == customer_id)
            )
        return None

    async def apply_stripe_subscription(
        self,
        stripe_subscription: Any,
        db: AsyncSession,
        user_id: Optional[str] = None,
    ) -> Optional[Subscription]:
        """
        Upsert the local row from a Stripe subscription and mirror it on the profile.

        Args:
            stripe_subscription: Stripe subscription object or webhook payload
            db: Database session
            user_id: Owner, when the caller already knows it

        Returns:
            Optional[Subscription]: The row, or None if no user matches or the
            event is for an older subscription than the user's live one
        """
        stripe_subscription_id = stripe_value(stripe_subscription, "id")
        subscription = await db.scalar(
            select(Subscription).where(
                Subscription.stripe_subscription_id == stripe_subscription_id
            )
        )
        if user_id is None:
            user_id = subscription.user_id if subscription else await self._resolve_user(
                stripe_subscription, db
            )
        if user_id is None:
            logger.warning("subscription_user_unknown", subscription_id=stripe_subscription_id)
            return None

        if subscription is None:
            # One row per user: a new Stripe subscription replaces the old one
            subscription = await self._get_row(user_id, db)
            if subscription is not None and _is_stale(subscription, stripe_subscription):
                await db.commit()
                logger.info(
                    "subscription_event_stale",
                    user_id=user_id,
                    subscription_id=stripe_subscription_id,
                    current_subscription_id=subscription.stripe_subscription_id,
                    status=stripe_value(stripe_subscription, "status"),
                )
                return None
        if subscription is None:
            subscription = Subscription(user_id=user_id)
            db.add(subscription)

        ids = _first_price(stripe_subscription)
        status = stripe_value(stripe_subscription, "status")
        price = (
            await self.catalog.find_subscription_price(ids["price_id"], db)
            if ids["price_id"]
            else None
        )

        subscription.stripe_subscription_id = stripe_subscription_id
        subscription.stripe_customer_id = stripe_value(stripe_subscription, "customer")
        subscription.stripe_price_id = ids["price_id"] or subscription.stripe_price_id or ""
        subscription.stripe_product_id = ids["product_id"]
        subscription.subscription_plan_id = price.subscription_plan_id if price else None
        subscription.subscription_price_id = price.id if price else None
        subscription.status = status
        subscription.current_period_start = _from_timestamp(
            stripe_value(stripe_subscription, "current_period_start")
        )
        subscription.current_period_end = _from_timestamp(
            stripe_value(stripe_subscription, "current_period_end")
        )
        subscription.cancel_at_period_end = bool(
            stripe_value(stripe_subscription, "cancel_at_period_end", False)
        )
        subscription.cancel_at = _from_timestamp(stripe_value(stripe_subscription, "cancel_at"))
        subscription.canceled_at = _from_timestamp(stripe_value(stripe_subscription, "canceled_at"))
        created = stripe_value(stripe_subscription, "created")
        subscription.stripe_created = int(created) if created is not None else None

        profile = await db.get(Profile, user_id)
        if profile is not None:
            if status in MIRROR_FULL_STATUSES:
                profile.subscription_id = stripe_subscription_id
                profile.subscription_status = status
                period_end = stripe_value(stripe_subscription, "current_period_end")
                profile.subscription_period_end = int(period_end) if period_end else None
            elif status in MIRROR_STATUS_ONLY:
                profile.subscription_status = status

        await db.commit()
        logger.info(
            "subscription_applied",
            user_id=user_id,
            subscription_id=stripe_subscription_id,
            status=status,
            cancel_at_period_end=subscription.cancel_at_period_end,
        )
        return subscription
