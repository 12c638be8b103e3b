"""
Token package purchases.

Flow for `create_purchase_intent`:
1. Resolve the catalog price
2. Check idempotency (Redis, then purchases table)
3. Acquire distributed lock on the idempotency key
4. Ensure the Stripe customer
5. Create the PaymentIntent (confirmed at once for a stored card)
6. Insert the pending purchase and commit
7. Release lock

Completion is driven either by the client (`complete_purchase`) or by the
`payment_intent.succeeded` webhook; whichever runs first wins the
pending -> completed transition and credits the tokens.
"""
import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis
import structlog
from redlock import Redlock
from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tokenpay.config import get_settings
from tokenpay.core.catalog import CatalogService, tokens_for_amount
from tokenpay.core.errors import (
    ConflictError,
    NotFoundError,
    PaymentRequiredError,
    ValidationError,
)
from tokenpay.core.idempotency import IdempotencyManager
from tokenpay.core.ledger import TokenLedger
from tokenpay.core.payment_methods import PaymentMethodService
from tokenpay.database.models import PackagePrice, Profile, Purchase
from tokenpay.integrations.stripe_client import StripeClient, stripe_value
from tokenpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class PurchaseInProgressError(ConflictError):
    """Another request holds the lock for the same purchase."""

    error_code = "purchase_in_progress"


class PaymentIncompleteError(PaymentRequiredError):
    """The PaymentIntent has not succeeded."""

    error_code = "payment_incomplete"


def serialize_purchase(purchase: Purchase) -> Dict[str, Any]:
    """Convert a purchase to a response dict."""
    return {
        "id": str(purchase.id),
        "user_id": purchase.user_id,
        "stripe_payment_intent_id": purchase.stripe_payment_intent_id,
        "stripe_price_id": purchase.stripe_price_id,
        "package_id": str(purchase.package_id) if purchase.package_id else None,
        "product_name": purchase.product_name,
        "amount_paid": purchase.amount_paid,
        "currency": purchase.currency,
        "status": purchase.status,
        "tokens_purchased": purchase.tokens_purchased,
        "refunded_amount_cents": purchase.refunded_amount_cents,
        "error_message": purchase.error_message,
        "purchased_at": purchase.purchased_at.isoformat(),
        "completed_at": purchase.completed_at.isoformat() if purchase.completed_at else None,
        "refunded_at": purchase.refunded_at.isoformat() if purchase.refunded_at else None,
    }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def tokens_for_refund(purchase: Purchase, refunded_cents: int) -> int:
    """Tokens matching `refunded_cents` of the purchase, rounded down."""
    if refunded_cents >= purchase.amount_paid:
        return purchase.tokens_purchased
    return purchase.tokens_purchased * refunded_cents // purchase.amount_paid


class PurchaseService:
    """Creates, completes, fails and refunds token package purchases."""

    def __init__(
        self,
        stripe_client: Optional[StripeClient] = None,
        idempotency_manager: Optional[IdempotencyManager] = None,
        ledger: Optional[TokenLedger] = None,
        catalog: Optional[CatalogService] = None,
        payment_methods: Optional[PaymentMethodService] = None,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        """
        Initialize purchase service.

        Args:
            stripe_client: Optional Stripe client
            idempotency_manager: Optional idempotency manager
            ledger: Optional token ledger
            catalog: Optional catalog service
            payment_methods: Optional payment method service
            redis_client: Optional Redis client shared with the idempotency manager
        """
        self.settings = get_settings()
        self._stripe_client = stripe_client
        self.idempotency_manager = idempotency_manager or IdempotencyManager(redis_client)
        self.ledger = ledger or TokenLedger()
        self.catalog = catalog or CatalogService(stripe_client)
        self.payment_methods = payment_methods or PaymentMethodService(stripe_client)
        self.redlock: Optional[Redlock] = None

    @property
    def stripe_client(self) -> StripeClient:
        if self._stripe_client is None:
            self._stripe_client = StripeClient()
        return self._stripe_client

    def _get_redlock(self) -> Redlock:
        """Get or create Redlock instance."""
        if self.redlock is None:
            self.redlock = Redlock([self.settings.redis_url])
        return self.redlock

    async def create_purchase_intent(
        self,
        user_id: str,
        stripe_price_id: str,
        db: AsyncSession,
        payment_method_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Start buying a token package.

        Args:
            user_id: Purchasing user
            stripe_price_id: Catalog price to buy
            db: Database session
            payment_method_id: Stored card to charge immediately (local or Stripe id)
            request_id: Client request id; retries with the same id return
                the first response

        Returns:
            Dict[str, Any]: Purchase id, PaymentIntent id, client secret and status

        Raises:
            NotFoundError: If the price, profile or card is unknown
            PurchaseInProgressError: If the same request is being processed
            StripeClientError: If Stripe rejects the intent
        """
        price = await self.catalog.get_package_price(stripe_price_id, db)
        idempotency_key = IdempotencyManager.generate_key(user_id, stripe_price_id, request_id)

        cached = await self._cached_response(idempotency_key, db)
        if cached:
            return cached

        lock_key = f"purchase:lock:{idempotency_key}"
        redlock = self._get_redlock()
        lock = await asyncio.to_thread(redlock.lock, lock_key, self.settings.redis_lock_timeout * 1000)
        if not lock:
            metrics.record_distributed_lock("failed")
            logger.warning("purchase_lock_acquisition_failed", lock_key=lock_key)
            raise PurchaseInProgressError("This purchase is already being processed")
        metrics.record_distributed_lock("acquired")

        try:
            # A concurrent request may have finished while we waited for the lock
            cached = await self._cached_response(idempotency_key, db)
            if cached:
                return cached
            return await self._create_locked(
                user_id, price, idempotency_key, db, payment_method_id
            )
        finally:
            await asyncio.to_thread(redlock.unlock, lock)

    async def _cached_response(
        self, idempotency_key: str, db: AsyncSession
    ) -> Optional[Dict[str, Any]]:
        cached = await self.idempotency_manager.check_idempotency(idempotency_key, db)
        if not cached:
            return None
        if "client_secret" not in cached:
            intent = await self.stripe_client.retrieve_payment_intent(cached["payment_intent_id"])
            cached["client_secret"] = intent.client_secret
        logger.info("purchase_idempotent_return", idempotency_key=idempotency_key)
        return cached

    async def _create_locked(
        self,
        user_id: str,
        price: PackagePrice,
        idempotency_key: str,
        db: AsyncSession,
        payment_method_id: Optional[str],
    ) -> Dict[str, Any]:
        profile = await db.get(Profile, user_id)
        if profile is None:
            raise NotFoundError("Profile not found", user_id=user_id)

        stripe_payment_method_id: Optional[str] = None
        if payment_method_id:
            method = await self.payment_methods.get_owned_method(user_id, payment_method_id, db)
            stripe_payment_method_id = method.stripe_payment_method_id

        customer_id = await self.payment_methods.ensure_customer(profile, db)
        package = price.package
        purchase_id = uuid.uuid4()

        payment_intent = await self.stripe_client.create_payment_intent(
            amount_cents=price.amount_cents,
            currency=price.currency,
            customer_id=customer_id,
            idempotency_key=f"purchase:{idempotency_key}",
            metadata={
                "user_id": user_id,
                "price_id": price.stripe_price_id,
                "purchase_id": str(purchase_id),
                "package_id": str(package.id),
                "token_amount": str(price.token_amount),
            },
            payment_method_id=stripe_payment_method_id,
            description=f"{package.name} ({price.token_amount} tokens)",
        )

        purchase = Purchase(
            id=purchase_id,
            user_id=user_id,
            idempotency_key=idempotency_key,
            stripe_payment_intent_id=payment_intent.id,
            stripe_price_id=price.stripe_price_id,
            stripe_product_id=package.stripe_product_id,
            stripe_customer_id=customer_id,
            package_id=package.id,
            package_price_id=price.id,
            payment_method_id=stripe_payment_method_id,
            amount_paid=price.amount_cents,
            currency=price.currency,
            status="pending",
            tokens_purchased=0,
            product_name=package.name,
        )
        db.add(purchase)
        if stripe_payment_method_id:
            await self.payment_methods.track_usage(stripe_payment_method_id, db)
        await db.commit()

        metrics.record_purchase("pending", price.currency, price.amount_cents)
        logger.info(
            "purchase_created",
            user_id=user_id,
            purchase_id=str(purchase_id),
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )

        response = {
            "purchase_id": str(purchase_id),
            "payment_intent_id": payment_intent.id,
            "client_secret": payment_intent.client_secret,
            "status": "pending",
            "amount_cents": price.amount_cents,
            "currency": price.currency,
            "stripe_price_id": price.stripe_price_id,
            "token_amount": price.token_amount,
        }

        if payment_intent.status == "succeeded":
            completed = await self.complete_purchase(payment_intent.id, db, user_id=user_id)
            response["status"] = completed["status"]

        await self.idempotency_manager.store_response(idempotency_key, response)
        return response

    async def get_by_payment_intent(
        self, payment_intent_id: str, db: AsyncSession
    ) -> Optional[Purchase]:
        result = await db.execute(
            select(Purchase)
            .where(Purchase.stripe_payment_intent_id == payment_intent_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _record_from_intent(self, payment_intent: Any, db: AsyncSession) -> Purchase:
        """Insert a pending purchase for an intent this service never saw."""
        metadata = dict(stripe_value(payment_intent, "metadata") or {})
        user_id = metadata.get("user_id")
        stripe_price_id = metadata.get("price_id")
        if not user_id or not stripe_price_id:
            raise ValidationError(
                "PaymentIntent carries no purchase metadata",
                payment_intent_id=payment_intent.id,
            )

        price = await db.scalar(
            select(PackagePrice).where(PackagePrice.stripe_price_id == stripe_price_id)
        )
        purchase = Purchase(
            user_id=user_id,
            stripe_payment_intent_id=payment_intent.id,
            stripe_price_id=stripe_price_id,
            stripe_customer_id=stripe_value(payment_intent, "customer"),
            package_id=price.package_id if price else None,
            package_price_id=price.id if price else None,
            amount_paid=payment_intent.amount,
            currency=payment_intent.currency,
            status="pending",
            tokens_purchased=0,
            product_name=price.package.name if price else None,
        )
        db.add(purchase)
        await db.flush()
        logger.info(
            "purchase_recorded_from_intent",
            user_id=user_id,
            payment_intent_id=payment_intent.id,
        )
        return purchase

    async def _tokens_for(self, purchase: Purchase, payment_intent: Any, db: AsyncSession) -> int:
        if purchase.package_price_id is not None:
            price = await db.get(PackagePrice, purchase.package_price_id)
            if price is not None:
                return price.token_amount
        metadata = dict(stripe_value(payment_intent, "metadata") or {})
        return tokens_for_amount(purchase.amount_paid, metadata)

    async def complete_purchase(
        self,
        payment_intent_id: str,
        db: AsyncSession,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Mark a purchase completed and credit its tokens, exactly once.

        Args:
            payment_intent_id: Stripe PaymentIntent id
            db: Database session
            user_id: When given, the purchase must belong to this user

        Returns:
            Dict[str, Any]: The purchase, with `newly_completed` telling
            whether this call did the crediting

        Raises:
            PaymentIncompleteError: If the intent has not succeeded
            NotFoundError: If the purchase belongs to another user
        """
        payment_intent = await self.stripe_client.retrieve_payment_intent(payment_intent_id)
        if payment_intent.status != "succeeded":
            raise PaymentIncompleteError(
                f"Payment not completed (status: {payment_intent.status})",
                payment_intent_status=payment_intent.status,
            )

        purchase = await self.get_by_payment_intent(payment_intent_id, db)
        if purchase is None:
            purchase = await self._record_from_intent(payment_intent, db)
        if user_id is not None and purchase.user_id != user_id:
            raise NotFoundError("Purchase not found", payment_intent_id=payment_intent_id)

        tokens = await self._tokens_for(purchase, payment_intent, db)
        now = _utcnow()
        # A failed intent can still succeed later with another card
        transition = await db.execute(
            update(Purchase)
            .where(Purchase.id == purchase.id, Purchase.status.in_(("pending", "failed")))
            .values(
                status="completed",
                completed_at=now,
                tokens_purchased=tokens,
                error_message=None,
                payment_method_id=stripe_value(payment_intent, "payment_method")
                or purchase.payment_method_id,
            )
            .execution_options(synchronize_session=False)
        )

        newly_completed = transition.rowcount == 1
        if newly_completed:
            await db.refresh(purchase)
            await self.ledger.credit(
                purchase.user_id,
                tokens,
                db,
                transaction_type="purchase",
                purchase_id=purchase.id,
                package_id=purchase.package_id,
                description=f"Purchased {purchase.product_name or 'token package'}",
                metadata={"stripe_payment_intent_id": payment_intent_id},
            )
            await db.execute(
                update(Profile)
                .where(Profile.id == purchase.user_id)
                .values(
                    total_purchases=Profile.total_purchases + 1,
                    total_spent_cents=Profile.total_spent_cents + purchase.amount_paid,
                    last_purchase_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            metrics.record_purchase("completed", purchase.currency)
            logger.info(
                "purchase_completed",
                user_id=purchase.user_id,
                purchase_id=str(purchase.id),
                tokens=tokens,
            )
        else:
            await db.commit()
            await db.refresh(purchase)
            logger.info(
                "purchase_already_completed",
                purchase_id=str(purchase.id),
                status=purchase.status,
            )

        result = serialize_purchase(purchase)
        result["newly_completed"] = newly_completed
        return result

    async def fail_purchase(
        self, payment_intent_id: str, reason: Optional[str], db: AsyncSession
    ) -> bool:
        """
        Move a pending purchase to failed.

        Returns:
            bool: True if a pending purchase was failed
        """
        result = await db.execute(
            update(Purchase)
            .where(
                Purchase.stripe_payment_intent_id == payment_intent_id,
                Purchase.status == "pending",
            )
            .values(status="failed", error_message=reason or "Payment failed")
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        failed = result.rowcount == 1
        if failed:
            metrics.record_purchase("failed", self.settings.default_currency)
            logger.info("purchase_failed", payment_intent_id=payment_intent_id, reason=reason)
        return failed

    async def mark_refunded(
        self,
        purchase: Purchase,
        db: AsyncSession,
        refunded_amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """
        Record a refund of a completed purchase and reverse its tokens.

        `refunded_amount_cents` is the cumulative amount refunded on the
        payment so far (Stripe's `charge.amount_refunded`); None means the
        whole amount. A partial refund keeps the purchase completed and
        takes back tokens in proportion to the money returned; reaching the
        full amount moves it to refunded. Replaying the same total is a
        no-op, so an admin refund followed by its webhook reverses once.

        Returns:
            bool: True if this call recorded new refunded money
        """
        await db.refresh(purchase)
        already = purchase.refunded_amount_cents
        total = purchase.amount_paid
        if refunded_amount_cents is not None:
            total = min(refunded_amount_cents, purchase.amount_paid)
        if purchase.status != "completed" or total <= already:
            await db.commit()
            return False

        fully_refunded = total >= purchase.amount_paid
        result = await db.execute(
            update(Purchase)
            .where(
                Purchase.id == purchase.id,
                Purchase.status == "completed",
                Purchase.refunded_amount_cents == already,
            )
            .values(
                status="refunded" if fully_refunded else "completed",
                refunded_amount_cents=total,
                refunded_at=_utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.commit()
            return False

        await db.refresh(purchase)
        tokens = tokens_for_refund(purchase, total) - tokens_for_refund(purchase, already)
        await self.ledger.reverse_purchase(purchase, db, reason=reason, tokens=tokens)
        newly_refunded = total - already
        await db.execute(
            update(Profile)
            .where(Profile.id == purchase.user_id)
            .values(
                total_spent_cents=case(
                    (
                        Profile.total_spent_cents > newly_refunded,
                        Profile.total_spent_cents - newly_refunded,
                    ),
                    else_=0,
                )
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        metrics.record_purchase(
            "refunded" if fully_refunded else "partially_refunded", purchase.currency
        )
        logger.info(
            "purchase_refunded",
            purchase_id=str(purchase.id),
            user_id=purchase.user_id,
            refunded_amount_cents=newly_refunded,
            total_refunded_cents=total,
            tokens_reversed=tokens,
            fully_refunded=fully_refunded,
        )
        return True

    async def refund_purchase(
        self,
        purchase_id: str | uuid.UUID,
        db: AsyncSession,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Refund a completed purchase through Stripe (admin).

        Without `amount_cents` the rest of the payment is refunded.

        Raises:
            NotFoundError: If the purchase does not exist
            ConflictError: If it is not completed
            ValidationError: If the amount exceeds what is left to refund
        """
        purchase = await db.get(Purchase, uuid.UUID(str(purchase_id)))
        if purchase is None:
            raise NotFoundError("Purchase not found", purchase_id=str(purchase_id))
        if purchase.status != "completed":
            raise ConflictError(f"Cannot refund purchase with status: {purchase.status}")
        already = purchase.refunded_amount_cents
        refundable = purchase.amount_paid - already
        if amount_cents is not None and not 0 < amount_cents <= refundable:
            raise ValidationError(
                "Refund amount must be between 1 and the amount not yet refunded",
                refundable_cents=refundable,
            )

        refund = await self.stripe_client.create_refund(
            payment_intent_id=purchase.stripe_payment_intent_id,
            amount_cents=amount_cents,
            reason=reason,
            idempotency_key=f"refund:{purchase.id}:{already}",
        )
        await self.mark_refunded(
            purchase, db, refunded_amount_cents=already + refund.amount, reason=reason
        )
        await db.refresh(purchase)

        return {
            "purchase_id": str(purchase.id),
            "refund_id": refund.id,
            "status": refund.status,
            "amount_cents": refund.amount,
            "purchase_status": purchase.status,
            "refunded_amount_cents": purchase.refunded_amount_cents,
        }

    async def list_purchases(
        self, user_id: str, db: AsyncSession, limit: int = 50, offset: int = 0
    ) -> List[Dict[str, Any]]:
        """A user's purchases, newest first."""
        result = await db.execute(
            select(Purchase)
            .where(Purchase.user_id == user_id)
            .order_by(Purchase.purchased_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return [serialize_purchase(p) for p in result.scalars()]

    async def get_purchase_summary(self, user_id: str, db: AsyncSession) -> Dict[str, Any]:
        """Counts per status, net spend on completed purchases, first and last purchase."""
        rows = (
            await db.execute(
                select(
                    Purchase.status,
                    func.count(),
                    func.coalesce(func.sum(Purchase.amount_paid - Purchase.refunded_amount_cents), 0),
                )
                .where(Purchase.user_id == user_id)
                .group_by(Purchase.status)
            )
        ).all()
        by_status = {status: {"count": count, "amount": amount} for status, count, amount in rows}

        bounds = (
            await db.execute(
                select(func.min(Purchase.purchased_at), func.max(Purchase.purchased_at)).where(
                    Purchase.user_id == user_id
                )
            )
        ).one()
        tokens = await db.scalar(
            select(func.coalesce(func.sum(Purchase.tokens_purchased), 0)).where(
                Purchase.user_id == user_id, Purchase.status == "completed"
            )
        )

        return {
            "total_purchases": sum(v["count"] for v in by_status.values()),
            "completed_purchases": by_status.get("completed", {}).get("count", 0),
            "pending_purchases": by_status.get("pending", {}).get("count", 0),
            "failed_purchases": by_status.get("failed", {}).get("count", 0),
            "refunded_purchases": by_status.get("refunded", {}).get("count", 0),
            "total_spent_cents": by_status.get("completed", {}).get("amount", 0),
            "total_tokens_purchased": tokens or 0,
            "first_purchase_at": bounds[0].isoformat() if bounds[0] else None,
            "last_purchase_at": bounds[1].isoformat() if bounds[1] else None,
        }

    async def close(self) -> None:
        """Close Redis connections."""
        await self.idempotency_manager.close()
