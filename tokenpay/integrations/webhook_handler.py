"""
Stripe webhook handler with signature verification and event deduplication.

Implements:
- Webhook signature verification
- Event deduplication using Redis
- Routing of purchase, refund, subscription and Connect account events
  to the owning services
"""
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import stripe
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from tokenpay.config import get_settings
from tokenpay.core.errors import ServiceError
from tokenpay.core.kyc import KycService
from tokenpay.core.purchases import PurchaseService
from tokenpay.core.subscriptions import SubscriptionService
from tokenpay.integrations.stripe_client import stripe_value
from tokenpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PROCESSED_TTL_SECONDS = 86400 * 7

EventHandler = Callable[[Any, AsyncSession], Awaitable[Dict[str, Any]]]


class WebhookError(ServiceError):
    """Raised when a webhook cannot be verified."""

    error_code = "webhook_error"
    http_status = 400


class WebhookProcessingError(ServiceError):
    """Raised when a verified event fails; Stripe redelivers it."""

    error_code = "webhook_processing_failed"
    http_status = 500


class WebhookHandler:
    """
    Handles Stripe webhook events with deduplication and processing.

    Features:
    - Signature verification using the endpoint's webhook secret
    - Event deduplication (processed event ids kept in Redis for 7 days)
    - Event type routing to the purchase, subscription and KYC services
    """

    def __init__(
        self,
        purchases: Optional[PurchaseService] = None,
        subscriptions: Optional[SubscriptionService] = None,
        kyc: Optional[KycService] = None,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            purchases: Purchase service
            subscriptions: Subscription service
            kyc: KYC service
            redis_client: Optional Redis client for event deduplication
        """
        self.settings = get_settings()
        self.purchases = purchases or PurchaseService()
        self.subscriptions = subscriptions or SubscriptionService()
        self.kyc = kyc or KycService()
        self.redis_client = redis_client
        self._owns_redis = redis_client is None
        self.event_handlers: Dict[str, EventHandler] = {}

        self.register_handler("payment_intent.succeeded", self.handle_payment_intent_succeeded)
        self.register_handler("payment_intent.payment_failed", self.handle_payment_intent_failed)
        self.register_handler("charge.refunded", self.handle_charge_refunded)
        for event_type in (
            "customer.subscription.created",
            "customer.subscription.updated",
            "customer.subscription.deleted",
        ):
            self.register_handler(event_type, self.handle_subscription_event)
        self.register_handler("account.updated", self.handle_account_updated)

    async def _ensure_redis(self) -> aioredis.Redis:
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Stripe event type (e.g., 'payment_intent.succeeded')
            handler: Async callable taking the event object and a session
        """
        self.event_handlers[event_type] = handler

    def verify_signature(
        self, payload: bytes, signature: Optional[str], secret: Optional[str] = None
    ) -> stripe.Event:
        """
        Verify webhook signature and construct event.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value
            secret: Optional webhook secret (uses config if not provided)

        Returns:
            stripe.Event: Verified Stripe event

        Raises:
            WebhookError: If the header is missing, the signature is wrong
                or the payload is not an event
        """
        if not signature:
            raise WebhookError("Missing Stripe-Signature header")

        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=secret or self.settings.stripe_webhook_secret,
            )
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise WebhookError("Invalid webhook signature") from e
        except ValueError as e:
            logger.error("webhook_payload_invalid", error=str(e))
            raise WebhookError("Invalid webhook payload") from e

        logger.info("webhook_signature_verified", event_id=event.id, event_type=event.type)
        return event

    @staticmethod
    def _processed_key(event_id: str) -> str:
        return f"webhook:processed:{event_id}"

    async def is_event_processed(self, event_id: str) -> bool:
        """
        Check if webhook event has already been processed.

        Returns False when Redis is unreachable so the event is not lost.
        """
        try:
            redis = await self._ensure_redis()
            return bool(await redis.exists(self._processed_key(event_id)))
        except aioredis.RedisError as e:
            logger.warning("webhook_dedup_check_error", error=str(e), event_id=event_id)
            return False

    async def mark_event_processed(
        self, event_id: str, ttl_seconds: int = PROCESSED_TTL_SECONDS
    ) -> None:
        try:
            redis = await self._ensure_redis()
            await redis.setex(self._processed_key(event_id), ttl_seconds, "1")
        except aioredis.RedisError as e:
            logger.warning("webhook_mark_processed_error", error=str(e), event_id=event_id)

    async def process_event(self, event: Any, db: AsyncSession) -> Dict[str, Any]:
        """
        Process a verified webhook event.

        Args:
            event: Verified Stripe event
            db: Database session

        Returns:
            Dict[str, Any]: Processing result with a `status` of success,
            duplicate or no_handler

        Raises:
            WebhookProcessingError: If the handler fails
        """
        event_id = stripe_value(event, "id")
        event_type = stripe_value(event, "type")
        event_object = stripe_value(stripe_value(event, "data"), "object")
        started = time.perf_counter()

        if await self.is_event_processed(event_id):
            logger.info("webhook_event_already_processed", event_id=event_id, event_type=event_type)
            metrics.record_webhook_event(event_type, "duplicate", time.perf_counter() - started)
            return {"status": "duplicate", "event_id": event_id, "event_type": event_type}

        handler = self.event_handlers.get(event_type)
        if handler is None:
            logger.info("webhook_no_handler", event_id=event_id, event_type=event_type)
            await self.mark_event_processed(event_id)
            metrics.record_webhook_event(event_type, "no_handler", time.perf_counter() - started)
            return {"status": "no_handler", "event_id": event_id, "event_type": event_type}

        try:
            result = await handler(event_object, db)
        except Exception as e:
            await db.rollback()
            metrics.record_webhook_event(event_type, "error", time.perf_counter() - started)
            logger.error(
                "webhook_event_processing_failed",
                event_id=event_id,
                event_type=event_type,
                error=str(e),
                exc_info=True,
            )
            raise WebhookProcessingError(
                f"Failed to process event {event_id}", event_type=event_type
            ) from e

        await self.mark_event_processed(event_id)
        metrics.record_webhook_event(event_type, "success", time.perf_counter() - started)
        logger.info("webhook_event_processed", event_id=event_id, event_type=event_type)
        return {"status": "success", "event_id": event_id, "event_type": event_type, "result": result}

    async def handle_payment_intent_succeeded(
        self, payment_intent: Any, db: AsyncSession
    ) -> Dict[str, Any]:
        """
        Complete the purchase and credit its tokens (no-op if already done).

        Subscription invoices also raise this event; those intents, and any
        intent that is neither tracked nor tagged with purchase metadata,
        are acknowledged without touching purchases.
        """
        payment_intent_id = stripe_value(payment_intent, "id")
        if stripe_value(payment_intent, "invoice"):
            logger.info("payment_intent_for_invoice_skipped", payment_intent_id=payment_intent_id)
            return {
                "payment_intent_id": payment_intent_id,
                "status": "skipped",
                "reason": "Subscription invoice payment",
            }

        metadata = stripe_value(payment_intent, "metadata") or {}
        tagged = stripe_value(metadata, "user_id") and stripe_value(metadata, "price_id")
        if not tagged and await self.purchases.get_by_payment_intent(payment_intent_id, db) is None:
            logger.warning("payment_intent_not_a_purchase", payment_intent_id=payment_intent_id)
            return {
                "payment_intent_id": payment_intent_id,
                "status": "skipped",
                "reason": "Not a token purchase",
            }

        purchase = await self.purchases.complete_purchase(payment_intent_id, db)
        return {
            "payment_intent_id": payment_intent_id,
            "purchase_id": purchase["id"],
            "newly_completed": purchase["newly_completed"],
        }

    async def handle_payment_intent_failed(
        self, payment_intent: Any, db: AsyncSession
    ) -> Dict[str, Any]:
        payment_intent_id = stripe_value(payment_intent, "id")
        last_error = stripe_value(payment_intent, "last_payment_error") or {}
        reason = stripe_value(last_error, "message") or "Payment failed"
        failed = await self.purchases.fail_purchase(payment_intent_id, reason, db)
        return {"payment_intent_id": payment_intent_id, "failed": failed, "error": reason}

    async def handle_charge_refunded(self, charge: Any, db: AsyncSession) -> Dict[str, Any]:
        """
        Record a full or partial refund and reverse the matching tokens.

        Stripe sends this event for partial refunds too; `amount_refunded`
        is cumulative, so a charge with `refunded` unset and less than
        `amount` refunded is passed on as a partial total.
        """
        payment_intent_id = stripe_value(charge, "payment_intent")
        if not payment_intent_id:
            logger.warning("charge_refunded_no_payment_intent", charge_id=stripe_value(charge, "id"))
            return {"status": "skipped", "reason": "No payment_intent associated"}

        purchase = await self.purchases.get_by_payment_intent(payment_intent_id, db)
        if purchase is None:
            logger.warning("refunded_purchase_not_found", payment_intent_id=payment_intent_id)
            return {"status": "skipped", "reason": "Unknown payment_intent"}

        amount = stripe_value(charge, "amount")
        amount_refunded = stripe_value(charge, "amount_refunded")
        partial = (
            not stripe_value(charge, "refunded")
            and amount is not None
            and amount_refunded is not None
            and amount_refunded < amount
        )
        refunded = await self.purchases.mark_refunded(
            purchase,
            db,
            refunded_amount_cents=amount_refunded if partial else None,
            reason="charge.refunded",
        )
        return {"payment_intent_id": payment_intent_id, "refunded": refunded, "partial": partial}

    async def handle_subscription_event(
        self, stripe_subscription: Any, db: AsyncSession
    ) -> Dict[str, Any]:
        subscription = await self.subscriptions.apply_stripe_subscription(stripe_subscription, db)
        return {
            "subscription_id": stripe_value(stripe_subscription, "id"),
            "applied": subscription is not None,
            "status": stripe_value(stripe_subscription, "status"),
        }

    async def handle_account_updated(self, account: Any, db: AsyncSession) -> Dict[str, Any]:
        contractor = await self.kyc.apply_connect_account(account, db)
        return {"account_id": stripe_value(account, "id"), "applied": contractor is not None}

    async def close(self) -> None:
        """Close the Redis connection if this handler opened it."""
        if self._owns_redis and self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
