"""
Pytest configuration and fixtures.

Service tests run against an in-memory SQLite database; Stripe and Redis
are mocked.
"""
import os

os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake_key_for_testing")
os.environ.setdefault("STRIPE_PUBLISHABLE_KEY", "pk_test_fake_key_for_testing")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_fake_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("IDENTITY_PROJECT_ID", "tokenpay-test")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("APP_ENV", "test")

from types import SimpleNamespace  # noqa: E402
from typing import Any, AsyncGenerator, Callable, Dict, Optional  # noqa: E402
from unittest.mock import AsyncMock, MagicMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

from tokenpay.database.models import (  # noqa: E402
    Base,
    Package,
    PackagePrice,
    Profile,
    SubscriptionPlan,
    SubscriptionPrice,
)
from tokenpay.integrations.stripe_client import StripeClient  # noqa: E402


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, Any]:
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def stripe_client() -> AsyncMock:
    """Stripe client mock; configure return values per test."""
    return AsyncMock(spec=StripeClient)


@pytest.fixture
def redis_client() -> AsyncMock:
    """Redis mock with an empty cache."""
    client = AsyncMock()
    client.get.return_value = None
    client.exists.return_value = 0
    return client


@pytest.fixture
def redlock() -> MagicMock:
    """Redlock stand-in that always grants the lock."""
    lock = MagicMock()
    lock.lock.return_value = MagicMock(name="lock")
    return lock


@pytest_asyncio.fixture
async def profile(test_db: AsyncSession) -> Profile:
    """An onboarded user."""
    user = Profile(
        id="user_alice",
        email="alice@example.com",
        username="alice",
        full_name="Alice Example",
        onboarding_complete=True,
    )
    test_db.add(user)
    await test_db.commit()
    return user


@pytest_asyncio.fixture
async def package_price(test_db: AsyncSession) -> PackagePrice:
    """A 500 token package sold for 7.49 AUD."""
    package = Package(
        name="Starter",
        description="500 tokens",
        stripe_product_id="prod_starter",
        features=["500 tokens"],
        prices=[],
    )
    price = PackagePrice(
        stripe_price_id="price_500",
        amount_cents=749,
        currency="aud",
        token_amount=500,
    )
    package.prices.append(price)
    test_db.add(package)
    await test_db.commit()
    return price


@pytest_asyncio.fixture
async def subscription_price(test_db: AsyncSession) -> SubscriptionPrice:
    """Monthly price of the Pro plan."""
    plan = SubscriptionPlan(
        name="Pro",
        stripe_product_id="prod_pro",
        features=["Priority support"],
        prices=[],
    )
    price = SubscriptionPrice(
        stripe_price_id="price_pro_month",
        amount_cents=1999,
        currency="aud",
        interval_type="month",
    )
    plan.prices.append(price)
    test_db.add(plan)
    await test_db.commit()
    return price


@pytest.fixture
def make_payment_intent() -> Callable[..., SimpleNamespace]:
    """Build PaymentIntent-shaped objects."""

    def factory(
        id: str = "pi_test_123",
        status: str = "requires_payment_method",
        amount: int = 749,
        currency: str = "aud",
        metadata: Optional[Dict[str, str]] = None,
        payment_method: Optional[str] = None,
        customer: Optional[str] = "cus_test_123",
    ) -> SimpleNamespace:
        return SimpleNamespace(
            id=id,
            status=status,
            amount=amount,
            currency=currency,
            metadata=metadata or {},
            payment_method=payment_method,
            customer=customer,
            client_secret=f"{id}_secret_abc",
        )

    return factory


@pytest.fixture
def make_card() -> Callable[..., SimpleNamespace]:
    """Build card PaymentMethod-shaped objects."""

    def factory(
        id: str = "pm_card_visa",
        last4: str = "4242",
        customer: Optional[str] = None,
        type: str = "card",
    ) -> SimpleNamespace:
        return SimpleNamespace(
            id=id,
            type=type,
            customer=customer,
            card=SimpleNamespace(
                brand="visa",
                last4=last4,
                exp_month=12,
                exp_year=2030,
                country="AU",
                funding="credit",
            ),
        )

    return factory
