"""
Unit tests for Stripe webhook handling.
"""
import hashlib
import hmac
import json
import time
from typing import Any, Dict
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import func, select

from tokenpay.core.idempotency import IdempotencyManager
from tokenpay.core.purchases import PurchaseService
from tokenpay.database.models import Purchase
from tokenpay.integrations.webhook_handler import (
    PROCESSED_TTL_SECONDS,
    WebhookError,
    WebhookHandler,
    WebhookProcessingError,
)

WEBHOOK_SECRET = "whsec_test_fake_secret"


def _sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def _event(event_type: str, obj: Dict[str, Any], event_id: str = "evt_1") -> Dict[str, Any]:
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


@pytest.fixture
def purchases() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def subscriptions() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def kyc() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def db() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def handler(purchases: Any, subscriptions: Any, kyc: Any, redis_client: Any) -> WebhookHandler:
    return WebhookHandler(
        purchases=purchases, subscriptions=subscriptions, kyc=kyc, redis_client=redis_client
    )


class TestSignatureVerification:
    """Test suite for webhook signature checks."""

    @pytest.mark.unit
    def test_valid_signature(self, handler: WebhookHandler) -> None:
        payload = json.dumps(_event("payment_intent.succeeded", {"id": "pi_1"})).encode("utf-8")

        event = handler.verify_signature(payload, _sign(payload))

        assert event.id == "evt_1"
        assert event.type == "payment_intent.succeeded"

    @pytest.mark.unit
    def test_missing_header(self, handler: WebhookHandler) -> None:
        with pytest.raises(WebhookError) as exc_info:
            handler.verify_signature(b"{}", None)
        assert exc_info.value.http_status == 400

    @pytest.mark.unit
    def test_wrong_secret(self, handler: WebhookHandler) -> None:
        payload = json.dumps(_event("payment_intent.succeeded", {"id": "pi_1"})).encode("utf-8")

        with pytest.raises(WebhookError):
            handler.verify_signature(payload, _sign(payload, secret="whsec_other"))

    @pytest.mark.unit
    def test_tampered_payload(self, handler: WebhookHandler) -> None:
        payload = json.dumps(_event("charge.refunded", {"id": "ch_1"})).encode("utf-8")
        signature = _sign(payload)

        with pytest.raises(WebhookError):
            handler.verify_signature(payload.replace(b"ch_1", b"ch_2"), signature)

    @pytest.mark.unit
    def test_signed_garbage(self, handler: WebhookHandler) -> None:
        payload = b"not json"

        with pytest.raises(WebhookError):
            handler.verify_signature(payload, _sign(payload))


class TestEventProcessing:
    """Test suite for routing and deduplication."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_succeeded_completes_purchase(
        self, handler: WebhookHandler, purchases: Any, redis_client: Any, db: Any
    ) -> None:
        """Test a new event is routed, then remembered for seven days."""
        purchases.complete_purchase.return_value = {"id": "purchase-1", "newly_completed": True}

        result = await handler.process_event(
            _event("payment_intent.succeeded", {"id": "pi_1"}), db
        )

        assert result["status"] == "success"
        assert result["result"] == {
            "payment_intent_id": "pi_1",
            "purchase_id": "purchase-1",
            "newly_completed": True,
        }
        purchases.complete_purchase.assert_awaited_once_with("pi_1", db)
        redis_client.setex.assert_awaited_once_with(
            "webhook:processed:evt_1", PROCESSED_TTL_SECONDS, "1"
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invoice_payment_is_acknowledged(
        self, handler: WebhookHandler, purchases: Any, redis_client: Any, db: Any
    ) -> None:
        """Test a subscription invoice payment is skipped instead of failing forever."""
        intent = {"id": "pi_invoice", "invoice": "in_1", "metadata": {}}

        result = await handler.process_event(_event("payment_intent.succeeded", intent), db)

        assert result["status"] == "success"
        assert result["result"]["status"] == "skipped"
        purchases.complete_purchase.assert_not_called()
        redis_client.setex.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_untracked_intent_without_metadata_is_acknowledged(
        self, handler: WebhookHandler, purchases: Any, db: Any
    ) -> None:
        purchases.get_by_payment_intent.return_value = None

        result = await handler.process_event(
            _event("payment_intent.succeeded", {"id": "pi_other", "metadata": {}}), db
        )

        assert result["result"] == {
            "payment_intent_id": "pi_other",
            "status": "skipped",
            "reason": "Not a token purchase",
        }
        purchases.get_by_payment_intent.assert_awaited_once_with("pi_other", db)
        purchases.complete_purchase.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_tagged_intent_is_completed_even_when_untracked(
        self, handler: WebhookHandler, purchases: Any, db: Any
    ) -> None:
        """Test an intent created elsewhere with purchase metadata is still recorded."""
        purchases.complete_purchase.return_value = {"id": "purchase-9", "newly_completed": True}
        intent = {"id": "pi_9", "metadata": {"user_id": "user_alice", "price_id": "price_500"}}

        result = await handler.process_event(_event("payment_intent.succeeded", intent), db)

        assert result["result"]["purchase_id"] == "purchase-9"
        purchases.get_by_payment_intent.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_event_is_skipped(
        self, handler: WebhookHandler, purchases: Any, redis_client: Any, db: Any
    ) -> None:
        redis_client.exists.return_value = 1

        result = await handler.process_event(
            _event("payment_intent.succeeded", {"id": "pi_1"}), db
        )

        assert result["status"] == "duplicate"
        purchases.complete_purchase.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unhandled_type_is_acknowledged(
        self, handler: WebhookHandler, redis_client: Any, db: Any
    ) -> None:
        result = await handler.process_event(_event("invoice.created", {"id": "in_1"}), db)

        assert result["status"] == "no_handler"
        redis_client.setex.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_outage_still_processes(
        self, handler: WebhookHandler, purchases: Any, redis_client: Any, db: Any
    ) -> None:
        """Test an unreachable dedup store does not drop events."""
        redis_client.exists.side_effect = RedisConnectionError("down")
        redis_client.setex.side_effect = RedisConnectionError("down")
        purchases.complete_purchase.return_value = {"id": "purchase-1", "newly_completed": False}

        result = await handler.process_event(
            _event("payment_intent.succeeded", {"id": "pi_1"}), db
        )

        assert result["status"] == "success"
        purchases.complete_purchase.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_handler_failure_rolls_back_and_is_retried(
        self, handler: WebhookHandler, purchases: Any, redis_client: Any, db: Any
    ) -> None:
        """Test a failing handler is not marked processed so Stripe redelivers."""
        purchases.complete_purchase.side_effect = RuntimeError("database down")

        with pytest.raises(WebhookProcessingError) as exc_info:
            await handler.process_event(_event("payment_intent.succeeded", {"id": "pi_1"}), db)

        assert exc_info.value.http_status == 500
        db.rollback.assert_awaited_once()
        redis_client.setex.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_failed_uses_stripe_message(
        self, handler: WebhookHandler, purchases: Any, db: Any
    ) -> None:
        purchases.fail_purchase.return_value = True
        intent = {"id": "pi_2", "last_payment_error": {"message": "Your card was declined."}}

        result = await handler.process_event(_event("payment_intent.payment_failed", intent), db)

        purchases.fail_purchase.assert_awaited_once_with("pi_2", "Your card was declined.", db)
        assert result["result"]["failed"] is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_charge_refunded(self, handler: WebhookHandler, purchases: Any, db: Any) -> None:
        purchase = object()
        purchases.get_by_payment_intent.return_value = purchase
        purchases.mark_refunded.return_value = True
        charge = {
            "id": "ch_1",
            "payment_intent": "pi_3",
            "amount": 749,
            "amount_refunded": 749,
            "refunded": True,
        }

        result = await handler.process_event(_event("charge.refunded", charge), db)

        assert result["result"] == {"payment_intent_id": "pi_3", "refunded": True, "partial": False}
        purchases.mark_refunded.assert_awaited_once_with(
            purchase, db, refunded_amount_cents=None, reason="charge.refunded"
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_charge_refund_passes_cumulative_amount(
        self, handler: WebhookHandler, purchases: Any, db: Any
    ) -> None:
        """Test a partially refunded charge is not treated as a full refund."""
        purchase = object()
        purchases.get_by_payment_intent.return_value = purchase
        purchases.mark_refunded.return_value = True
        charge = {
            "id": "ch_1",
            "payment_intent": "pi_3",
            "amount": 749,
            "amount_refunded": 100,
            "refunded": False,
        }

        result = await handler.process_event(_event("charge.refunded", charge), db)

        assert result["result"]["partial"] is True
        purchases.mark_refunded.assert_awaited_once_with(
            purchase, db, refunded_amount_cents=100, reason="charge.refunded"
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_charge_refunded_without_purchase(
        self, handler: WebhookHandler, purchases: Any, db: Any
    ) -> None:
        purchases.get_by_payment_intent.return_value = None

        unknown = await handler.process_event(
            _event("charge.refunded", {"id": "ch_1", "payment_intent": "pi_x"}), db
        )
        no_intent = await handler.process_event(
            _event("charge.refunded", {"id": "ch_2", "payment_intent": None}, event_id="evt_2"), db
        )

        assert unknown["result"]["status"] == "skipped"
        assert no_intent["result"]["status"] == "skipped"
        purchases.mark_refunded.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "event_type",
        [
            "customer.subscription.created",
            "customer.subscription.updated",
            "customer.subscription.deleted",
        ],
    )
    async def test_subscription_events(
        self, handler: WebhookHandler, subscriptions: Any, db: Any, event_type: str
    ) -> None:
        subscription = {"id": "sub_1", "status": "active"}

        result = await handler.process_event(_event(event_type, subscription), db)

        subscriptions.apply_stripe_subscription.assert_awaited_once_with(subscription, db)
        assert result["result"]["subscription_id"] == "sub_1"
        assert result["result"]["applied"] is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_account_updated(self, handler: WebhookHandler, kyc: Any, db: Any) -> None:
        kyc.apply_connect_account.return_value = None
        account = {"id": "acct_1", "charges_enabled": True}

        result = await handler.process_event(_event("account.updated", account), db)

        kyc.apply_connect_account.assert_awaited_once_with(account, db)
        assert result["result"] == {"account_id": "acct_1", "applied": False}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_close_leaves_injected_redis_open(
        self, handler: WebhookHandler, redis_client: Any
    ) -> None:
        await handler.close()
        redis_client.aclose.assert_not_called()


class TestPaymentIntentsOnDatabase:
    """Test suite for payment intent events against the real purchase service."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invoice_intent_without_metadata(
        self, stripe_client: Any, redis_client: Any, test_db: Any
    ) -> None:
        """Test an invoice intent with empty metadata is acknowledged and records nothing."""
        handler = WebhookHandler(
            purchases=PurchaseService(
                stripe_client=stripe_client,
                idempotency_manager=IdempotencyManager(redis_client),
            ),
            subscriptions=AsyncMock(),
            kyc=AsyncMock(),
            redis_client=redis_client,
        )

        invoice_intent = {"id": "pi_invoice", "invoice": "in_1", "metadata": {}}
        invoice = await handler.process_event(
            _event("payment_intent.succeeded", invoice_intent), test_db
        )
        bare = await handler.process_event(
            _event("payment_intent.succeeded", {"id": "pi_bare", "metadata": {}}, event_id="evt_2"),
            test_db,
        )

        assert invoice["result"]["status"] == "skipped"
        assert bare["result"]["status"] == "skipped"
        stripe_client.retrieve_payment_intent.assert_not_called()
        assert await test_db.scalar(select(func.count()).select_from(Purchase)) == 0
