"""
Unit tests for purchase idempotency.
"""
import json
from typing import Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tokenpay.core.idempotency import IdempotencyManager
from tokenpay.database.models import Purchase


@pytest.fixture
def manager(redis_client: Any) -> IdempotencyManager:
    return IdempotencyManager(redis_client)


class TestIdempotencyManager:
    """Test suite for IdempotencyManager."""

    @pytest.mark.unit
    def test_key_reuses_request_id(self) -> None:
        key = IdempotencyManager.generate_key("user_alice", "price_500", "click-1")

        assert key == "user_alice:price_500:click-1"
        assert IdempotencyManager.generate_key("user_alice", "price_500") != (
            IdempotencyManager.generate_key("user_alice", "price_500")
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_hit(self, manager: IdempotencyManager, redis_client: Any, test_db: Any) -> None:
        cached = {"purchase_id": "p-1", "client_secret": "pi_1_secret"}
        redis_client.get.return_value = json.dumps(cached)

        result = await manager.check_idempotency("user_alice:price_500:click-1", test_db)

        assert result == cached
        redis_client.get.assert_awaited_once_with(
            "idempotency:purchase:user_alice:price_500:click-1"
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_database_fallback(
        self, manager: IdempotencyManager, redis_client: Any, test_db: Any, profile: Any
    ) -> None:
        """Test a purchase row answers when Redis has nothing cached."""
        test_db.add(
            Purchase(
                user_id=profile.id,
                idempotency_key="user_alice:price_500:click-1",
                stripe_payment_intent_id="pi_db",
                stripe_price_id="price_500",
                amount_paid=749,
                currency="aud",
                status="pending",
            )
        )
        await test_db.commit()
        redis_client.get.side_effect = RedisConnectionError("down")

        result = await manager.check_idempotency("user_alice:price_500:click-1", test_db)

        assert result["payment_intent_id"] == "pi_db"
        assert result["amount_cents"] == 749
        assert "client_secret" not in result

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_miss(self, manager: IdempotencyManager, test_db: Any) -> None:
        assert await manager.check_idempotency("user_alice:price_500:new", test_db) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_store_response(self, manager: IdempotencyManager, redis_client: Any) -> None:
        await manager.store_response("k", {"purchase_id": "p-1"})

        key, ttl, body = redis_client.setex.call_args.args
        assert key == "idempotency:purchase:k"
        assert ttl == manager.settings.idempotency_cache_ttl
        assert json.loads(body) == {"purchase_id": "p-1"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_store_failure_is_ignored(
        self, manager: IdempotencyManager, redis_client: Any
    ) -> None:
        redis_client.setex.side_effect = RedisConnectionError("down")

        await manager.store_response("k", {"purchase_id": "p-1"})

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_close_keeps_injected_client(
        self, manager: IdempotencyManager, redis_client: Any
    ) -> None:
        await manager.close()
        redis_client.aclose.assert_not_called()
