"""
Unit tests for the package and plan catalog.
"""
from types import SimpleNamespace
from typing import Any

import pytest

from tokenpay.core.catalog import TOKEN_TIERS, CatalogService, tokens_for_amount
from tokenpay.core.errors import NotFoundError, ValidationError
from tokenpay.database.models import Package, PackagePrice


def _stripe_price(id: str, unit_amount: int | None, type: str = "one_time", **metadata: str) -> SimpleNamespace:
    return SimpleNamespace(
        id=id, type=type, unit_amount=unit_amount, currency="aud", metadata=metadata
    )


class TestTokensForAmount:
    """Test suite for token amount resolution."""

    @pytest.mark.unit
    def test_metadata_wins_over_tiers(self) -> None:
        assert tokens_for_amount(749, {"token_amount": "650"}) == 650

    @pytest.mark.unit
    @pytest.mark.parametrize("amount_cents,tokens", sorted(TOKEN_TIERS.items()))
    def test_tier_table(self, amount_cents: int, tokens: int) -> None:
        assert tokens_for_amount(amount_cents) == tokens

    @pytest.mark.unit
    def test_unknown_amount(self) -> None:
        with pytest.raises(ValidationError):
            tokens_for_amount(1234)

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", ["abc", "0", "-10"])
    def test_bad_metadata(self, raw: str) -> None:
        with pytest.raises(ValidationError):
            tokens_for_amount(749, {"token_amount": raw})


class TestCatalogService:
    """Test suite for CatalogService."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_packages_hides_packages_without_active_prices(
        self, test_db: Any, package_price: Any
    ) -> None:
        """Test only sellable packages are listed."""
        retired = Package(name="Retired", stripe_product_id="prod_retired", prices=[])
        retired.prices.append(
            PackagePrice(
                stripe_price_id="price_old", amount_cents=149, token_amount=100, is_active=False
            )
        )
        test_db.add(retired)
        await test_db.commit()

        packages = await CatalogService().list_packages(test_db)

        assert [p["name"] for p in packages] == ["Starter"]
        assert packages[0]["prices"][0]["stripe_price_id"] == "price_500"
        assert packages[0]["prices"][0]["token_amount"] == 500

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_subscription_plans(self, test_db: Any, subscription_price: Any) -> None:
        plans = await CatalogService().list_subscription_plans(test_db)

        assert len(plans) == 1
        assert plans[0]["prices"][0]["interval_type"] == "month"
        assert plans[0]["prices"][0]["trial_period_days"] == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_package_price(self, test_db: Any, package_price: Any) -> None:
        """Test active prices resolve and unknown ones do not."""
        service = CatalogService()

        price = await service.get_package_price("price_500", test_db)
        assert price.package.name == "Starter"

        with pytest.raises(NotFoundError):
            await service.get_package_price("price_nope", test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_subscription_price_is_not_a_package_price(
        self, test_db: Any, subscription_price: Any
    ) -> None:
        service = CatalogService()

        with pytest.raises(NotFoundError):
            await service.get_package_price("price_pro_month", test_db)
        assert (await service.get_subscription_price("price_pro_month", test_db)).plan.name == "Pro"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sync_package_prices(
        self, test_db: Any, package_price: Any, stripe_client: Any
    ) -> None:
        """Test Stripe prices are created, updated, and skipped when unusable."""
        stripe_client.list_prices.return_value = [
            _stripe_price("price_500", 799, token_amount="600"),
            _stripe_price("price_1000", 1499),
            _stripe_price("price_monthly", 999, type="recurring"),
            _stripe_price("price_odd", 123),
        ]
        service = CatalogService(stripe_client)

        result = await service.sync_package_prices("prod_starter", test_db)

        assert result["created"] == 1
        assert result["updated"] == 1
        assert result["skipped"] == 2
        assert result["deactivated"] == 0
        updated = await service.get_package_price("price_500", test_db)
        assert updated.amount_cents == 799
        assert updated.token_amount == 600
        created = await service.get_package_price("price_1000", test_db)
        assert created.token_amount == 1000
        stripe_client.retrieve_product.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sync_deactivates_missing_prices(
        self, test_db: Any, package_price: Any, stripe_client: Any
    ) -> None:
        stripe_client.list_prices.return_value = []

        result = await CatalogService(stripe_client).sync_package_prices("prod_starter", test_db)

        assert result["deactivated"] == 1
        assert await CatalogService().list_packages(test_db) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sync_creates_unknown_product(self, test_db: Any, stripe_client: Any) -> None:
        """Test a product missing locally is created from Stripe."""
        stripe_client.retrieve_product.return_value = SimpleNamespace(
            name="Mega", description="Lots of tokens", active=True
        )
        stripe_client.list_prices.return_value = [_stripe_price("price_mega", 15999)]

        result = await CatalogService(stripe_client).sync_package_prices("prod_mega", test_db)

        assert result["created"] == 1
        packages = await CatalogService().list_packages(test_db)
        assert packages[0]["name"] == "Mega"
        assert packages[0]["prices"][0]["token_amount"] == 100000

    @pytest.mark.unit
    def test_publishable_key(self) -> None:
        assert CatalogService().get_publishable_key() == "pk_test_fake_key_for_testing"
