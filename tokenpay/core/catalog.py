"""Token package and subscription plan catalog."""
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenpay.config import get_settings
from tokenpay.core.errors import NotFoundError, ValidationError
from tokenpay.database.models import (
    Package,
    PackagePrice,
    SubscriptionPlan,
    SubscriptionPrice,
)
from tokenpay.integrations.stripe_client import StripeClient

logger = structlog.get_logger(__name__)

# Tokens granted per one-time price (in cents) when Stripe metadata has no `token_amount`
TOKEN_TIERS: Dict[int, int] = {
    149: 100,
    749: 500,
    1499: 1000,
    3099: 5000,
    6299: 25000,
    15999: 100000,
}


def tokens_for_amount(amount_cents: int, metadata: Optional[Dict[str, Any]] = None) -> int:
    """
    Token amount of a price.

    Stripe price metadata `token_amount` wins; otherwise the tier table.

    Raises:
        ValidationError: If neither source knows the price
    """
    raw = (metadata or {}).get("token_amount")
    if raw not in (None, ""):
        try:
            tokens = int(raw)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid token_amount metadata: {raw!r}") from e
        if tokens <= 0:
            raise ValidationError("token_amount metadata must be positive")
        return tokens
    if amount_cents in TOKEN_TIERS:
        return TOKEN_TIERS[amount_cents]
    raise ValidationError(
        f"No token amount known for a price of {amount_cents} cents",
        amount_cents=amount_cents,
    )


def _price_dict(price: PackagePrice | SubscriptionPrice) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": str(price.id),
        "stripe_price_id": price.stripe_price_id,
        "amount_cents": price.amount_cents,
        "currency": price.currency,
        "interval_type": price.interval_type,
        "interval_count": price.interval_count,
        "token_amount": price.token_amount,
    }
    if isinstance(price, SubscriptionPrice):
        data["trial_period_days"] = price.trial_period_days
    return data


def _catalog_entry(item: Package | SubscriptionPlan) -> Dict[str, Any]:
    prices = sorted(
        (p for p in item.prices if p.is_active), key=lambda p: p.amount_cents
    )
    return {
        "id": str(item.id),
        "name": item.name,
        "description": item.description,
        "stripe_product_id": item.stripe_product_id,
        "features": list(item.features or []),
        "sort_order": item.sort_order,
        "prices": [_price_dict(p) for p in prices],
    }


class CatalogService:
    """Read access to the catalog plus the admin Stripe price sync."""

    def __init__(self, stripe_client: Optional[StripeClient] = None) -> None:
        """
        Initialize catalog service.

        Args:
            stripe_client: Optional Stripe client (created lazily for syncs)
        """
        self.settings = get_settings()
        self._stripe_client = stripe_client

    @property
    def stripe_client(self) -> StripeClient:
        if self._stripe_client is None:
            self._stripe_client = StripeClient()
        return self._stripe_client

    async def list_packages(self, db: AsyncSession) -> List[Dict[str, Any]]:
        """Active packages that have at least one active price."""
        result = await db.execute(
            select(Package).where(Package.is_active.is_(True)).order_by(Package.sort_order, Package.name)
        )
        entries = [_catalog_entry(p) for p in result.scalars()]
        return [e for e in entries if e["prices"]]

    async def list_subscription_plans(self, db: AsyncSession) -> List[Dict[str, Any]]:
        """Active subscription plans that have at least one active price."""
        result = await db.execute(
            select(SubscriptionPlan)
            .where(SubscriptionPlan.is_active.is_(True))
            .order_by(SubscriptionPlan.sort_order, SubscriptionPlan.name)
        )
        entries = [_catalog_entry(p) for p in result.scalars()]
        return [e for e in entries if e["prices"]]

    async def get_package_price(self, stripe_price_id: str, db: AsyncSession) -> PackagePrice:
        """
        Active package price by Stripe id.

        Raises:
            NotFoundError: If the price is unknown or inactive
        """
        result = await db.execute(
            select(PackagePrice)
            .join(Package)
            .where(
                PackagePrice.stripe_price_id == stripe_price_id,
                PackagePrice.is_active.is_(True),
                Package.is_active.is_(True),
            )
        )
        price = result.scalar_one_or_none()
        if price is None:
            raise NotFoundError("Package price not found", stripe_price_id=stripe_price_id)
        return price

    async def get_subscription_price(
        self, stripe_price_id: str, db: AsyncSession
    ) -> SubscriptionPrice:
        """
        Active subscription price by Stripe id.

        Raises:
            NotFoundError: If the price is unknown or inactive
        """
        result = await db.execute(
            select(SubscriptionPrice)
            .join(SubscriptionPlan)
            .where(
                SubscriptionPrice.stripe_price_id == stripe_price_id,
                SubscriptionPrice.is_active.is_(True),
                SubscriptionPlan.is_active.is_(True),
            )
        )
        price = result.scalar_one_or_none()
        if price is None:
            raise NotFoundError("Subscription price not found", stripe_price_id=stripe_price_id)
        return price

    async def find_subscription_price(
        self, stripe_price_id: str, db: AsyncSession
    ) -> Optional[SubscriptionPrice]:
        """Subscription price by Stripe id, active or not."""
        result = await db.execute(
            select(SubscriptionPrice).where(SubscriptionPrice.stripe_price_id == stripe_price_id)
        )
        return result.scalar_one_or_none()

    async def sync_package_prices(
        self, stripe_product_id: str, db: AsyncSession
    ) -> Dict[str, Any]:
        """
        Mirror a Stripe product's one-time prices into the catalog.

        Creates the package row when missing. Prices that are no longer
        active in Stripe are deactivated locally.

        Args:
            stripe_product_id: Stripe product to sync
            db: Database session

        Returns:
            Dict[str, Any]: Counts of created, updated and deactivated prices
        """
        result = await db.execute(
            select(Package).where(Package.stripe_product_id == stripe_product_id)
        )
        package = result.scalar_one_or_none()
        if package is None:
            product = await self.stripe_client.retrieve_product(stripe_product_id)
            package = Package(
                name=product.name,
                description=getattr(product, "description", None),
                stripe_product_id=stripe_product_id,
                features=[],
                is_active=bool(product.active),
                prices=[],
            )
            db.add(package)
            await db.flush()
            logger.info("package_created_from_stripe", stripe_product_id=stripe_product_id)

        stripe_prices = await self.stripe_client.list_prices(stripe_product_id)
        existing = {p.stripe_price_id: p for p in package.prices}
        seen = set()
        created = updated = skipped = 0

        for sp in stripe_prices:
            if sp.type != "one_time" or sp.unit_amount is None:
                skipped += 1
                continue
            metadata = dict(sp.metadata or {})
            try:
                token_amount = tokens_for_amount(sp.unit_amount, metadata)
            except ValidationError as e:
                logger.warning("price_sync_skipped", stripe_price_id=sp.id, reason=e.message)
                skipped += 1
                continue

            seen.add(sp.id)
            price = existing.get(sp.id)
            if price is None:
                package.prices.append(
                    PackagePrice(
                        stripe_price_id=sp.id,
                        amount_cents=sp.unit_amount,
                        currency=sp.currency,
                        interval_type="one_time",
                        token_amount=token_amount,
                        is_active=True,
                    )
                )
                created += 1
            else:
                price.amount_cents = sp.unit_amount
                price.currency = sp.currency
                price.token_amount = token_amount
                price.is_active = True
                updated += 1

        deactivated = 0
        for stripe_price_id, price in existing.items():
            if stripe_price_id not in seen and price.is_active:
                price.is_active = False
                deactivated += 1

        await db.commit()
        logger.info(
            "package_prices_synced",
            stripe_product_id=stripe_product_id,
            created=created,
            updated=updated,
            deactivated=deactivated,
            skipped=skipped,
        )
        return {
            "package_id": str(package.id),
            "created": created,
            "updated": updated,
            "deactivated": deactivated,
            "skipped": skipped,
        }

    def get_publishable_key(self) -> str:
        """Publishable key the client needs to initialise Stripe.js."""
        return self.settings.stripe_publishable_key
