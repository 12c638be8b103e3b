"""
Stripe API client with retry logic and error classification.

Implements:
- Exponential backoff for transient and rate-limit errors
- Circuit breaker pattern
- Idempotency keys on every create call that accepts one
- Customers, setup/payment intents, payment methods, subscriptions,
  prices, refunds, Connect accounts and file uploads
"""
import asyncio
import io
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from tokenpay.config import get_settings
from tokenpay.core.errors import ExternalServiceError
from tokenpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with backoff


class StripeClientError(ExternalServiceError):
    """A Stripe call failed; `error_type` drives retries."""

    error_code = "stripe_error"

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
        stripe_code: Optional[str] = None,
    ):
        """
        Initialize Stripe error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original Stripe exception
            stripe_code: Stripe error code (e.g. 'card_declined')
        """
        http_status = None
        if isinstance(original_error, stripe.CardError):
            http_status = 402
        elif isinstance(original_error, stripe.InvalidRequestError):
            http_status = 400
        super().__init__(message, http_status=http_status)
        self.error_type = error_type
        self.original_error = original_error
        self.stripe_code = stripe_code
        if stripe_code:
            self.details["stripe_code"] = stripe_code


def stripe_value(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a Stripe object, webhook payload dict or nested object."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, StripeClientError) and error.error_type != StripeErrorType.PERMANENT


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Stops calling Stripe for `timeout` seconds once `failure_threshold`
    consecutive calls failed.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self) -> None:
        """
        Raise if the circuit is open and the timeout has not elapsed.

        Raises:
            StripeClientError: If circuit is open
        """
        if self.state != "open":
            return
        if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
            self._set_state("half_open")
            self.success_count = 0
            logger.info("circuit_breaker_half_open")
            return
        raise StripeClientError("Payment provider temporarily unavailable", StripeErrorType.TRANSIENT)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold and self.state != "open":
            self._set_state("open")
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


class StripeClient:
    """
    Wrapper for the Stripe API.

    The Stripe SDK is blocking, so each call runs in a worker thread behind
    the circuit breaker. Errors are classified; permanent ones (card
    declined, invalid request) are raised at once, the rest are retried
    with exponential backoff.
    """

    def __init__(self) -> None:
        """Initialize Stripe client."""
        settings = get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.circuit_breaker = CircuitBreaker()

        logger.info(
            "stripe_client_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        if isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        if isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
            ),
        ):
            return StripeErrorType.PERMANENT
        # Unknown errors are treated as transient
        return StripeErrorType.TRANSIENT

    def _to_client_error(self, operation: str, error: stripe.StripeError) -> StripeClientError:
        error_type = self._classify_error(error)
        metrics.record_stripe_api_error(error_type.value)
        logger.error(
            "stripe_api_error",
            operation=operation,
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )
        message = getattr(error, "user_message", None) or str(error)
        return StripeClientError(
            message=message,
            error_type=error_type,
            original_error=error,
            stripe_code=getattr(error, "code", None),
        )

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(4),
        wait=wait_exponential(multiplier=1, min=1, max=16),
        reraise=True,
    )
    async def _call(self, operation: str, func: Callable[..., Any], **kwargs: Any) -> Any:
        """
        Run one Stripe SDK call with breaker, metrics and classification.

        Args:
            operation: Short name used in logs and metrics
            func: Stripe SDK callable
            **kwargs: Arguments for `func`

        Returns:
            The Stripe object returned by `func`

        Raises:
            StripeClientError: If the call fails
        """
        self.circuit_breaker.before_call()
        started = time.perf_counter()
        try:
            result = await asyncio.to_thread(func, **kwargs)
        except stripe.StripeError as e:
            self.circuit_breaker.on_failure()
            metrics.record_stripe_api_call(operation, "error", time.perf_counter() - started)
            raise self._to_client_error(operation, e) from e
        self.circuit_breaker.on_success()
        metrics.record_stripe_api_call(operation, "success", time.perf_counter() - started)
        return result

    # Customers

    async def create_customer(
        self,
        email: Optional[str],
        name: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> stripe.Customer:
        """Create a Stripe customer."""
        kwargs: Dict[str, Any] = {"metadata": metadata or {}}
        if email:
            kwargs["email"] = email
        if name:
            kwargs["name"] = name
        if idempotency_key:
            kwargs["idempotency_key"] = idempotency_key
        customer = await self._call("create_customer", stripe.Customer.create, **kwargs)
        logger.info("stripe_customer_created", customer_id=customer.id)
        return customer

    async def set_default_payment_method(
        self, customer_id: str, payment_method_id: str
    ) -> stripe.Customer:
        """Make a payment method the customer's invoice default."""
        return await self._call(
            "set_default_payment_method",
            stripe.Customer.modify,
            id=customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
        )

    # Payment methods

    async def create_setup_intent(self, customer_id: str) -> stripe.SetupIntent:
        """Create a SetupIntent for saving a card off-session."""
        return await self._call(
            "create_setup_intent",
            stripe.SetupIntent.create,
            customer=customer_id,
            payment_method_types=["card"],
            usage="off_session",
        )

    async def retrieve_payment_method(self, payment_method_id: str) -> stripe.PaymentMethod:
        """Retrieve a payment method."""
        return await self._call(
            "retrieve_payment_method", stripe.PaymentMethod.retrieve, id=payment_method_id
        )

    async def attach_payment_method(
        self, payment_method_id: str, customer_id: str
    ) -> stripe.PaymentMethod:
        """Attach a payment method to a customer."""
        return await self._call(
            "attach_payment_method",
            stripe.PaymentMethod.attach,
            payment_method=payment_method_id,
            customer=customer_id,
        )

    async def detach_payment_method(self, payment_method_id: str) -> stripe.PaymentMethod:
        """Detach a payment method from its customer."""
        return await self._call(
            "detach_payment_method",
            stripe.PaymentMethod.detach,
            payment_method=payment_method_id,
        )

    # Payment intents

    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        customer_id: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
        payment_method_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> stripe.PaymentIntent:
        """
        Create a Stripe PaymentIntent with idempotency.

        With `payment_method_id` the intent is confirmed immediately
        against the stored card; otherwise the client confirms it with
        the returned client secret.

        Args:
            amount_cents: Amount in cents
            currency: Currency code (e.g., 'aud')
            customer_id: Stripe customer ID
            idempotency_key: Idempotency key for preventing duplicates
            metadata: Optional metadata
            payment_method_id: Optional stored payment method to charge
            description: Optional statement description

        Returns:
            stripe.PaymentIntent: Created payment intent

        Raises:
            StripeClientError: If payment creation fails
        """
        logger.info(
            "creating_payment_intent",
            amount_cents=amount_cents,
            currency=currency,
            idempotency_key=idempotency_key,
        )
        kwargs: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "customer": customer_id,
            "idempotency_key": idempotency_key,
            "metadata": metadata or {},
        }
        if description:
            kwargs["description"] = description
        if payment_method_id:
            kwargs.update(
                payment_method=payment_method_id,
                confirm=True,
                off_session=False,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
            )
        else:
            kwargs["automatic_payment_methods"] = {"enabled": True}

        payment_intent = await self._call(
            "create_payment_intent", stripe.PaymentIntent.create, **kwargs
        )
        logger.info(
            "payment_intent_created",
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )
        return payment_intent

    async def retrieve_payment_intent(self, payment_intent_id: str) -> stripe.PaymentIntent:
        """Retrieve a PaymentIntent by ID."""
        logger.info("retrieving_payment_intent", payment_intent_id=payment_intent_id)
        return await self._call(
            "retrieve_payment_intent", stripe.PaymentIntent.retrieve, id=payment_intent_id
        )

    async def create_refund(
        self,
        payment_intent_id: str,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> stripe.Refund:
        """
        Create a refund for a payment.

        Args:
            payment_intent_id: Stripe PaymentIntent ID
            amount_cents: Optional partial refund amount
            reason: Optional refund reason
            idempotency_key: Optional idempotency key

        Returns:
            stripe.Refund: Created refund

        Raises:
            StripeClientError: If refund creation fails
        """
        logger.info(
            "creating_refund",
            payment_intent_id=payment_intent_id,
            amount_cents=amount_cents,
        )
        kwargs: Dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount_cents:
            kwargs["amount"] = amount_cents
        if reason:
            kwargs["reason"] = reason
        if idempotency_key:
            kwargs["idempotency_key"] = idempotency_key
        refund = await self._call("create_refund", stripe.Refund.create, **kwargs)
        logger.info("refund_created", refund_id=refund.id, status=refund.status)
        return refund

    # Catalog

    async def retrieve_product(self, product_id: str) -> stripe.Product:
        """Retrieve a product."""
        return await self._call("retrieve_product", stripe.Product.retrieve, id=product_id)

    async def list_prices(self, product_id: str, active: bool = True) -> List[stripe.Price]:
        """List every price of a product, following pagination."""
        page = await self._call(
            "list_prices", stripe.Price.list, product=product_id, active=active, limit=100
        )
        return list(page.auto_paging_iter())

    # Subscriptions

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        payment_method_id: str,
        metadata: Optional[Dict[str, str]] = None,
        trial_period_days: int = 0,
        idempotency_key: Optional[str] = None,
    ) -> stripe.Subscription:
        """Create a subscription charged to `payment_method_id`."""
        kwargs: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "default_payment_method": payment_method_id,
            "metadata": metadata or {},
            "expand": ["latest_invoice.payment_intent"],
        }
        if trial_period_days > 0:
            kwargs["trial_period_days"] = trial_period_days
        if idempotency_key:
            kwargs["idempotency_key"] = idempotency_key
        subscription = await self._call(
            "create_subscription", stripe.Subscription.create, **kwargs
        )
        logger.info(
            "subscription_created",
            subscription_id=subscription.id,
            status=subscription.status,
        )
        return subscription

    async def retrieve_subscription(self, subscription_id: str) -> stripe.Subscription:
        """Retrieve a subscription."""
        return await self._call(
            "retrieve_subscription", stripe.Subscription.retrieve, id=subscription_id
        )

    async def cancel_subscription_at_period_end(
        self, subscription_id: str
    ) -> stripe.Subscription:
        """Schedule cancellation at the end of the current period."""
        return await self._call(
            "cancel_subscription",
            stripe.Subscription.modify,
            id=subscription_id,
            cancel_at_period_end=True,
        )

    # Connect

    async def create_connect_account(
        self,
        email: str,
        country: str,
        business_type: str,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> stripe.Account:
        """Create a Connect account with card payments and transfers requested."""
        kwargs: Dict[str, Any] = {
            "type": self.settings.stripe_connect_account_type,
            "email": email,
            "country": country,
            "business_type": business_type,
            "capabilities": {
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
            },
            "metadata": metadata or {},
        }
        if idempotency_key:
            kwargs["idempotency_key"] = idempotency_key
        account = await self._call("create_connect_account", stripe.Account.create, **kwargs)
        logger.info("connect_account_created", account_id=account.id)
        return account

    # Files

    async def upload_file(
        self, purpose: str, file_name: str, content: bytes
    ) -> stripe.File:
        """Upload a file (KYC document) to Stripe; the SDK names the part after `file_name`."""
        buffer = io.BytesIO(content)
        buffer.name = file_name
        return await self._call(
            "upload_file",
            stripe.File.create,
            purpose=purpose,
            file=buffer,
        )
