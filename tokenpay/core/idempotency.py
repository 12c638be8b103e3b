"""
Idempotency for purchase creation.

Two tiers:
1. Redis cache of the full response (fast path)
2. The `purchases.idempotency_key` unique column (durable fallback)

The key is `{user_id}:{stripe_price_id}:{request_id}`, so a double-clicked
"Buy" button that reuses one request id maps to a single PaymentIntent.
"""
import json
import uuid
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenpay.config import get_settings
from tokenpay.core.errors import ServiceError
from tokenpay.database.models import Purchase
from tokenpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

_CACHE_PREFIX = "idempotency:purchase:"


class IdempotencyError(ServiceError):
    """Raised when the durable idempotency lookup fails."""

    error_code = "idempotency_error"


class IdempotencyManager:
    """Caches purchase-creation responses by idempotency key."""

    def __init__(self, redis_client: Optional[aioredis.Redis] = None):
        """
        Initialize idempotency manager.

        Args:
            redis_client: Optional Redis client (creates one if not provided)
        """
        self.settings = get_settings()
        self.redis_client = redis_client
        self._owns_redis = redis_client is None

    async def _ensure_redis(self) -> aioredis.Redis:
        """Return the injected client or lazily connect one."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    @staticmethod
    def generate_key(
        user_id: str, stripe_price_id: str, request_id: Optional[str] = None
    ) -> str:
        """
        Build the idempotency key for a purchase request.

        Without a client request id every call is unique.

        Args:
            user_id: Purchasing user
            stripe_price_id: Price being bought
            request_id: Client-generated id, reused on retries

        Returns:
            str: Idempotency key
        """
        return f"{user_id}:{stripe_price_id}:{request_id or uuid.uuid4().hex}"

    async def check_idempotency(
        self, idempotency_key: str, db: AsyncSession
    ) -> Optional[Dict[str, Any]]:
        """
        Look up an earlier response for this key.

        Redis first, then the purchases table. A database hit carries no
        `client_secret`; the caller re-reads it from the PaymentIntent.

        Args:
            idempotency_key: The idempotency key to check
            db: Database session

        Returns:
            Optional[Dict[str, Any]]: Earlier response, or None

        Raises:
            IdempotencyError: If the database lookup fails
        """
        try:
            redis = await self._ensure_redis()
            cached_response = await redis.get(f"{_CACHE_PREFIX}{idempotency_key}")
            if cached_response:
                logger.info("idempotency_cache_hit", idempotency_key=idempotency_key, source="redis")
                metrics.record_idempotency_cache_hit("redis")
                return json.loads(cached_response)
        except Exception as e:
            logger.warning("redis_cache_error", error=str(e), idempotency_key=idempotency_key)

        try:
            result = await db.execute(
                select(Purchase).where(Purchase.idempotency_key == idempotency_key)
            )
            purchase = result.scalar_one_or_none()
        except Exception as e:
            logger.error(
                "database_idempotency_check_error",
                error=str(e),
                idempotency_key=idempotency_key,
            )
            raise IdempotencyError(f"Failed to check idempotency: {e}") from e

        if purchase is None:
            metrics.record_idempotency_cache_hit("miss")
            return None

        logger.info("idempotency_cache_hit", idempotency_key=idempotency_key, source="database")
        metrics.record_idempotency_cache_hit("database")
        return {
            "purchase_id": str(purchase.id),
            "payment_intent_id": purchase.stripe_payment_intent_id,
            "status": purchase.status,
            "amount_cents": purchase.amount_paid,
            "currency": purchase.currency,
            "stripe_price_id": purchase.stripe_price_id,
        }

    async def store_response(self, idempotency_key: str, response: Dict[str, Any]) -> None:
        """Cache a response; Redis failures are logged and ignored."""
        try:
            redis = await self._ensure_redis()
            await redis.setex(
                f"{_CACHE_PREFIX}{idempotency_key}",
                self.settings.idempotency_cache_ttl,
                json.dumps(response),
            )
            logger.info("idempotency_response_cached", idempotency_key=idempotency_key)
        except Exception as e:
            logger.warning(
                "idempotency_cache_store_error",
                error=str(e),
                idempotency_key=idempotency_key,
            )

    async def close(self) -> None:
        """Close the Redis connection if this manager opened it."""
        if self._owns_redis and self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
