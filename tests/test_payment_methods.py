"""
Unit tests for stored cards.
"""
from types import SimpleNamespace
from typing import Any

import pytest

from tokenpay.core.errors import NotFoundError, ValidationError
from tokenpay.core.payment_methods import PaymentMethodService, serialize_payment_method
from tokenpay.database.models import Profile


@pytest.fixture
def service(stripe_client: Any) -> PaymentMethodService:
    stripe_client.create_customer.return_value = SimpleNamespace(id="cus_test_123")
    return PaymentMethodService(stripe_client)


class TestPaymentMethodService:
    """Test suite for PaymentMethodService."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ensure_customer_creates_once(
        self, service: PaymentMethodService, stripe_client: Any, test_db: Any, profile: Any
    ) -> None:
        """Test the Stripe customer is created on first use and then reused."""
        first = await service.ensure_customer(profile, test_db)
        second = await service.ensure_customer(profile, test_db)

        assert first == second == "cus_test_123"
        stripe_client.create_customer.assert_called_once()
        assert stripe_client.create_customer.call_args.kwargs["idempotency_key"] == "customer:user_alice"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_setup_intent(
        self, service: PaymentMethodService, stripe_client: Any, test_db: Any, profile: Any
    ) -> None:
        stripe_client.create_setup_intent.return_value = SimpleNamespace(
            id="seti_1", client_secret="seti_1_secret"
        )

        result = await service.create_setup_intent(profile.id, test_db)

        assert result == {
            "setup_intent_id": "seti_1",
            "client_secret": "seti_1_secret",
            "customer_id": "cus_test_123",
        }
        stored = await test_db.get(Profile, profile.id, populate_existing=True)
        assert stored.stripe_customer_id == "cus_test_123"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_first_card_becomes_default(
        self,
        service: PaymentMethodService,
        stripe_client: Any,
        test_db: Any,
        profile: Any,
        make_card: Any,
    ) -> None:
        """Test storing attaches the card and makes the first one default."""
        stripe_client.retrieve_payment_method.return_value = make_card(id="pm_1")

        method = await service.store_payment_method(profile.id, "pm_1", test_db)

        assert method.is_default is True
        assert method.card_last4 == "4242"
        stripe_client.attach_payment_method.assert_awaited_once_with("pm_1", "cus_test_123")
        stripe_client.set_default_payment_method.assert_awaited_once_with("cus_test_123", "pm_1")
        assert serialize_payment_method(method)["card_brand"] == "visa"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_card_is_not_default(
        self,
        service: PaymentMethodService,
        stripe_client: Any,
        test_db: Any,
        profile: Any,
        make_card: Any,
    ) -> None:
        stripe_client.retrieve_payment_method.side_effect = [
            make_card(id="pm_1"),
            make_card(id="pm_2", last4="1881", customer="cus_test_123"),
        ]
        await service.store_payment_method(profile.id, "pm_1", test_db)

        second = await service.store_payment_method(profile.id, "pm_2", test_db)

        assert second.is_default is False
        stripe_client.attach_payment_method.assert_awaited_once()
        methods = await service.list_payment_methods(profile.id, test_db)
        assert [m.stripe_payment_method_id for m in methods] == ["pm_1", "pm_2"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejects_non_card(
        self,
        service: PaymentMethodService,
        stripe_client: Any,
        test_db: Any,
        profile: Any,
        make_card: Any,
    ) -> None:
        stripe_client.retrieve_payment_method.return_value = make_card(type="au_becs_debit")

        with pytest.raises(ValidationError):
            await service.store_payment_method(profile.id, "pm_card_visa", test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_set_default_switches_cards(
        self,
        service: PaymentMethodService,
        stripe_client: Any,
        test_db: Any,
        profile: Any,
        make_card: Any,
    ) -> None:
        """Test only one card is default after switching."""
        stripe_client.retrieve_payment_method.side_effect = [make_card(id="pm_1"), make_card(id="pm_2")]
        await service.store_payment_method(profile.id, "pm_1", test_db)
        second = await service.store_payment_method(profile.id, "pm_2", test_db)

        await service.set_default_payment_method(profile.id, str(second.id), test_db)

        methods = await service.list_payment_methods(profile.id, test_db)
        defaults = [m.stripe_payment_method_id for m in methods if m.is_default]
        assert defaults == ["pm_2"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_delete_default_promotes_oldest(
        self,
        service: PaymentMethodService,
        stripe_client: Any,
        test_db: Any,
        profile: Any,
        make_card: Any,
    ) -> None:
        stripe_client.retrieve_payment_method.side_effect = [make_card(id="pm_1"), make_card(id="pm_2")]
        first = await service.store_payment_method(profile.id, "pm_1", test_db)
        second = await service.store_payment_method(profile.id, "pm_2", test_db)

        result = await service.delete_payment_method(profile.id, "pm_1", test_db)

        assert result == {"deleted": str(first.id), "new_default": str(second.id)}
        stripe_client.detach_payment_method.assert_awaited_once_with("pm_1")
        methods = await service.list_payment_methods(profile.id, test_db)
        assert [(m.stripe_payment_method_id, m.is_default) for m in methods] == [("pm_2", True)]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_other_users_card_is_not_found(
        self,
        service: PaymentMethodService,
        stripe_client: Any,
        test_db: Any,
        profile: Any,
        make_card: Any,
    ) -> None:
        stripe_client.retrieve_payment_method.return_value = make_card(id="pm_1")
        await service.store_payment_method(profile.id, "pm_1", test_db)

        with pytest.raises(NotFoundError):
            await service.delete_payment_method("someone_else", "pm_1", test_db)
