"""SQLAlchemy database models for profiles, billing, token ledger and contractor KYC."""
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Timezone-aware current time used for column defaults."""
    return datetime.now(timezone.utc)


PURCHASE_STATUSES = ("pending", "completed", "failed", "refunded")
TOKEN_TRANSACTION_TYPES = ("purchase", "usage", "bonus", "refund", "admin_adjustment")
CONTRACTOR_TYPES = ("individual", "business")
KYC_STATUSES = ("pending", "submitted", "under_review", "approved", "rejected", "expired")
UPLOAD_STATUSES = ("pending", "uploaded", "failed")
VERIFICATION_STATUSES = ("pending", "verified", "rejected", "requires_action")


def _in_check(column: str, values: tuple) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class TimestampMixin:
    """created_at / updated_at maintained on the Python side."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class Profile(TimestampMixin, Base):
    """
    User profile table.

    The primary key is the identity provider's subject id. Token counters
    and purchase stats are maintained by the ledger and purchase services.
    """

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    username: Mapped[Optional[str]] = mapped_column(String(30), unique=True, nullable=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    onboarding_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    subscription_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    subscription_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    subscription_period_end: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    total_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tokens_remaining: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tokens_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    total_purchases: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_spent_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_purchase_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    is_contractor: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        CheckConstraint("tokens_remaining >= 0", name="non_negative_token_balance"),
        CheckConstraint("tokens_used >= 0", name="non_negative_tokens_used"),
        CheckConstraint("total_tokens >= 0", name="non_negative_total_tokens"),
    )

    def __repr__(self) -> str:
        """String representation of Profile."""
        return f"<Profile(id={self.id}, username={self.username})>"


class Package(TimestampMixin, Base):
    """Token package catalog entry (one Stripe product)."""

    __tablename__ = "packages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stripe_product_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    features: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    prices: Mapped[List["PackagePrice"]] = relationship(
        back_populates="package", cascade="all, delete-orphan", lazy="selectin"
    )


class PackagePrice(TimestampMixin, Base):
    """Price tier of a token package; grants `token_amount` tokens."""

    __tablename__ = "package_prices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    package_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("packages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    stripe_price_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="aud")
    interval_type: Mapped[str] = mapped_column(String(20), nullable=False, default="one_time")
    interval_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    token_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    package: Mapped[Package] = relationship(back_populates="prices", lazy="joined")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="positive_package_amount"),
        CheckConstraint("token_amount > 0", name="positive_package_tokens"),
    )


class SubscriptionPlan(TimestampMixin, Base):
    """Subscription plan catalog entry."""

    __tablename__ = "subscription_plans"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stripe_product_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    features: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    prices: Mapped[List["SubscriptionPrice"]] = relationship(
        back_populates="plan", cascade="all, delete-orphan", lazy="selectin"
    )


class SubscriptionPrice(TimestampMixin, Base):
    """Recurring price of a subscription plan."""

    __tablename__ = "subscription_prices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_plan_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscription_plans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    stripe_price_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="aud")
    interval_type: Mapped[str] = mapped_column(String(20), nullable=False)
    interval_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    token_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    trial_period_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    plan: Mapped[SubscriptionPlan] = relationship(back_populates="prices", lazy="joined")

    __table_args__ = (
        CheckConstraint("interval_type IN ('day', 'week', 'month', 'year')", name="valid_interval"),
    )


class Purchase(TimestampMixin, Base):
    """
    Token package purchases.

    One row per PaymentIntent. Status moves pending -> completed | failed,
    and completed -> refunded once the whole amount is refunded. Partial
    refunds keep the purchase completed and accumulate in
    `refunded_amount_cents`. Tokens are credited exactly once, on the
    pending -> completed transition.
    """

    __tablename__ = "purchases"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    stripe_payment_intent_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False
    )
    stripe_price_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    stripe_product_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    package_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("packages.id", ondelete="SET NULL"), nullable=True, index=True
    )
    package_price_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("package_prices.id", ondelete="SET NULL"), nullable=True
    )
    payment_method_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount_paid: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="aud")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    tokens_purchased: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    refunded_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    product_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    purchased_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount_paid > 0", name="positive_amount_paid"),
        CheckConstraint(
            "refunded_amount_cents >= 0 AND refunded_amount_cents <= amount_paid",
            name="refund_within_amount_paid",
        ),
        CheckConstraint(_in_check("status", PURCHASE_STATUSES), name="valid_purchase_status"),
        Index("idx_purchases_user_status", "user_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation of Purchase."""
        return (
            f"<Purchase(id={self.id}, user_id={self.user_id}, "
            f"amount={self.amount_paid}, status={self.status})>"
        )


class Subscription(TimestampMixin, Base):
    """Subscription records (one per user)."""

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("profiles.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    stripe_subscription_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stripe_price_id: Mapped[str] = mapped_column(String(255), nullable=False)
    stripe_product_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    subscription_plan_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("subscription_plans.id", ondelete="SET NULL"), nullable=True
    )
    subscription_price_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("subscription_prices.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="incomplete", index=True)
    current_period_start: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancel_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # Stripe `created`, epoch seconds
    stripe_created: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)


class TokenTransaction(Base):
    """
    Token ledger.

    Append-only. Credits are positive, debits negative; `balance_after`
    is the user's `tokens_remaining` once the row was applied.
    """

    __tablename__ = "user_token_transactions"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    user_id: Mapped[str] = mapped_column(
        ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    package_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("packages.id", ondelete="SET NULL"), nullable=True
    )
    purchase_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("purchases.id", ondelete="SET NULL"), nullable=True, index=True
    )
    transaction_type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    token_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metadata_: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    __table_args__ = (
        CheckConstraint(
            _in_check("transaction_type", TOKEN_TRANSACTION_TYPES),
            name="valid_transaction_type",
        ),
        CheckConstraint("token_amount <> 0", name="non_zero_token_amount"),
        Index("idx_token_transactions_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of TokenTransaction."""
        return (
            f"<TokenTransaction(id={self.id}, user_id={self.user_id}, "
            f"type={self.transaction_type}, amount={self.token_amount})>"
        )


class PaymentMethod(TimestampMixin, Base):
    """
    Stored card payment methods.

    At most one active default per user, enforced by a partial unique index.
    """

    __tablename__ = "payment_methods"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    stripe_payment_method_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False
    )
    stripe_customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    card_brand: Mapped[str] = mapped_column(String(30), nullable=False)
    card_last4: Mapped[str] = mapped_column(String(4), nullable=False)
    card_exp_month: Mapped[int] = mapped_column(Integer, nullable=False)
    card_exp_year: Mapped[int] = mapped_column(Integer, nullable=False)
    card_country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    card_funding: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("card_exp_month BETWEEN 1 AND 12", name="valid_exp_month"),
        Index(
            "idx_payment_methods_user_default",
            "user_id",
            unique=True,
            postgresql_where=text("is_default AND is_active"),
            sqlite_where=text("is_default AND is_active"),
        ),
    )


class Contractor(TimestampMixin, Base):
    """Contractor KYC profile linked to a Stripe Connect account."""

    __tablename__ = "contractors"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("profiles.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    contractor_type: Mapped[str] = mapped_column(String(20), nullable=False, default="individual")
    kyc_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)

    stripe_connect_account_id: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, nullable=True
    )
    stripe_connect_account_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    stripe_connect_requirements_completed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    kyc_submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    kyc_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    kyc_rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    kyc_rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    kyc_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Business contractors
    business_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    business_tax_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    business_website_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    business_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    industry_mcc_code: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    company_registration_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    company_structure: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Individual contractors
    first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    date_of_birth: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    national_id_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    national_id_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    addresses: Mapped[List["ContractorAddress"]] = relationship(
        cascade="all, delete-orphan", lazy="selectin"
    )
    bank_accounts: Mapped[List["ContractorBankAccount"]] = relationship(
        cascade="all, delete-orphan", lazy="selectin"
    )
    beneficial_owners: Mapped[List["ContractorBeneficialOwner"]] = relationship(
        cascade="all, delete-orphan", lazy="selectin"
    )
    representatives: Mapped[List["ContractorRepresentative"]] = relationship(
        cascade="all, delete-orphan", lazy="selectin"
    )
    documents: Mapped[List["ContractorDocumentUpload"]] = relationship(
        cascade="all, delete-orphan", lazy="selectin"
    )

    __table_args__ = (
        CheckConstraint(_in_check("contractor_type", CONTRACTOR_TYPES), name="valid_contractor_type"),
        CheckConstraint(_in_check("kyc_status", KYC_STATUSES), name="valid_kyc_status"),
    )

    def __repr__(self) -> str:
        """String representation of Contractor."""
        return (
            f"<Contractor(id={self.id}, user_id={self.user_id}, "
            f"type={self.contractor_type}, kyc_status={self.kyc_status})>"
        )


class _VerifiableMixin:
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    verification_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class ContractorAddress(_VerifiableMixin, TimestampMixin, Base):
    """Contractor postal address."""

    __tablename__ = "contractor_addresses"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    contractor_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("contractors.id", ondelete="CASCADE"), nullable=False, index=True
    )
    address_type: Mapped[str] = mapped_column(String(20), nullable=False, default="residential")
    street_address: Mapped[str] = mapped_column(String(255), nullable=False)
    street_address_2: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    city: Mapped[str] = mapped_column(String(100), nullable=False)
    state_province: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    postal_code: Mapped[str] = mapped_column(String(20), nullable=False)
    country: Mapped[str] = mapped_column(String(2), nullable=False)


class ContractorBankAccount(_VerifiableMixin, TimestampMixin, Base):
    """Payout bank account. Only the last four digits of the number are kept."""

    __tablename__ = "contractor_bank_accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    contractor_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("contractors.id", ondelete="CASCADE"), nullable=False, index=True
    )
    account_holder_name: Mapped[str] = mapped_column(String(255), nullable=False)
    account_number_last4: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    routing_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    bank_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    account_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    stripe_bank_account_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stripe_bank_account_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)


class _PersonMixin:
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    date_of_birth: Mapped[date] = mapped_column(Date, nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    street_address: Mapped[str] = mapped_column(String(255), nullable=False)
    street_address_2: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    city: Mapped[str] = mapped_column(String(100), nullable=False)
    state_province: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    postal_code: Mapped[str] = mapped_column(String(20), nullable=False)
    country: Mapped[str] = mapped_column(String(2), nullable=False)
    national_id_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    national_id_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)


class ContractorBeneficialOwner(_PersonMixin, _VerifiableMixin, TimestampMixin, Base):
    """Beneficial owner of a business contractor."""

    __tablename__ = "contractor_beneficial_owners"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    contractor_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("contractors.id", ondelete="CASCADE"), nullable=False, index=True
    )
    ownership_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    title: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "ownership_percentage > 0 AND ownership_percentage <= 100",
            name="valid_ownership_percentage",
        ),
    )


class ContractorRepresentative(_PersonMixin, _VerifiableMixin, TimestampMixin, Base):
    """Representative (director, signatory) of a business contractor."""

    __tablename__ = "contractor_representatives"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    contractor_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("contractors.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    is_authorized_signatory: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class ContractorDocumentUpload(TimestampMixin, Base):
    """KYC document uploaded to Stripe's File API."""

    __tablename__ = "contractor_document_uploads"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    contractor_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("contractors.id", ondelete="CASCADE"), nullable=False, index=True
    )
    document_type: Mapped[str] = mapped_column(String(50), nullable=False)
    document_purpose: Mapped[str] = mapped_column(String(50), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    file_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    stripe_file_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stripe_upload_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    stripe_upload_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    verification_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )
    verification_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    required_for_capability: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    requirement_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        CheckConstraint(_in_check("stripe_upload_status", UPLOAD_STATUSES), name="valid_upload_status"),
        CheckConstraint(
            _in_check("verification_status", VERIFICATION_STATUSES),
            name="valid_verification_status",
        ),
    )


class KycFormDraft(TimestampMixin, Base):
    """Auto-saved, possibly incomplete KYC form (one per user)."""

    __tablename__ = "contractor_kyc_form_data"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("profiles.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    kyc_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
