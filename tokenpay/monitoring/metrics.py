"""
Prometheus metrics for the billing and KYC backend.

Tracks:
- Purchases by status
- Tokens credited and debited by ledger transaction type
- Idempotency cache hits and distributed lock outcomes
- Stripe API calls, errors and circuit breaker state
- Webhook events
- KYC submissions, status changes and document uploads
"""
from prometheus_client import Counter, Gauge, Histogram

# Purchase metrics
purchases_total = Counter(
    "tokenpay_purchases_total",
    "Token package purchases by resulting status",
    ["status", "currency"],
)

purchase_amount_cents = Histogram(
    "tokenpay_purchase_amount_cents",
    "Token package purchase amounts in cents",
    buckets=(149, 749, 1499, 3099, 6299, 15999, 50000),
)

# Ledger metrics
tokens_credited_total = Counter(
    "tokenpay_tokens_credited_total",
    "Tokens credited to user balances",
    ["transaction_type"],
)

tokens_debited_total = Counter(
    "tokenpay_tokens_debited_total",
    "Tokens debited from user balances",
    ["transaction_type"],
)

token_consume_rejections_total = Counter(
    "tokenpay_token_consume_rejections_total",
    "Consumption attempts rejected for insufficient balance",
)

# Idempotency metrics
idempotency_cache_hits_total = Counter(
    "tokenpay_idempotency_cache_hits_total",
    "Idempotency lookups by source",
    ["source"],  # redis, database, miss
)

distributed_lock_acquisitions_total = Counter(
    "tokenpay_distributed_lock_acquisitions_total",
    "Distributed lock acquisition attempts",
    ["status"],  # acquired, failed
)

# Stripe API metrics
stripe_api_requests_total = Counter(
    "tokenpay_stripe_api_requests_total",
    "Stripe API requests",
    ["operation", "status"],
)

stripe_api_errors_total = Counter(
    "tokenpay_stripe_api_errors_total",
    "Stripe API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

stripe_api_duration_seconds = Histogram(
    "tokenpay_stripe_api_duration_seconds",
    "Stripe API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

stripe_circuit_breaker_state = Gauge(
    "tokenpay_stripe_circuit_breaker_state",
    "Stripe circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_processed_total = Counter(
    "tokenpay_webhook_events_processed_total",
    "Webhook events processed",
    ["event_type", "status"],  # success, failed, duplicate, no_handler
)

webhook_processing_duration_seconds = Histogram(
    "tokenpay_webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# KYC metrics
kyc_submissions_total = Counter(
    "tokenpay_kyc_submissions_total",
    "KYC submissions by contractor type",
    ["contractor_type"],
)

kyc_status_changes_total = Counter(
    "tokenpay_kyc_status_changes_total",
    "KYC status transitions",
    ["from_status", "to_status"],
)

kyc_document_uploads_total = Counter(
    "tokenpay_kyc_document_uploads_total",
    "KYC document uploads by document type and Stripe upload status",
    ["document_type", "status"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_purchase(status: str, currency: str, amount_cents: int = 0) -> None:
        """Record a purchase reaching `status`."""
        purchases_total.labels(status=status, currency=currency).inc()
        if amount_cents > 0:
            purchase_amount_cents.observe(amount_cents)

    @staticmethod
    def record_token_movement(transaction_type: str, token_amount: int) -> None:
        """Record a ledger row; sign decides credit or debit."""
        if token_amount > 0:
            tokens_credited_total.labels(transaction_type=transaction_type).inc(token_amount)
        elif token_amount < 0:
            tokens_debited_total.labels(transaction_type=transaction_type).inc(-token_amount)

    @staticmethod
    def record_consume_rejected() -> None:
        """Record an insufficient-balance rejection."""
        token_consume_rejections_total.inc()

    @staticmethod
    def record_idempotency_cache_hit(source: str) -> None:
        """Record idempotency cache hit."""
        idempotency_cache_hits_total.labels(source=source).inc()

    @staticmethod
    def record_distributed_lock(status: str) -> None:
        """Record distributed lock acquisition."""
        distributed_lock_acquisitions_total.labels(status=status).inc()

    @staticmethod
    def record_stripe_api_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record Stripe API call."""
        stripe_api_requests_total.labels(operation=operation, status=status).inc()
        stripe_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_stripe_api_error(error_type: str) -> None:
        """Record Stripe API error."""
        stripe_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        stripe_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_kyc_submission(contractor_type: str) -> None:
        """Record a KYC submission."""
        kyc_submissions_total.labels(contractor_type=contractor_type).inc()

    @staticmethod
    def record_kyc_status_change(from_status: str, to_status: str) -> None:
        """Record a KYC status transition."""
        kyc_status_changes_total.labels(from_status=from_status, to_status=to_status).inc()

    @staticmethod
    def record_document_upload(document_type: str, status: str) -> None:
        """Record a KYC document upload."""
        kyc_document_uploads_total.labels(document_type=document_type, status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
