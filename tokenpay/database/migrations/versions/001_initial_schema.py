"""Initial database schema

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import List, Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> List[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def _verification() -> List[sa.Column]:
    return [
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verification_notes", sa.Text(), nullable=True),
    ]


def _person() -> List[sa.Column]:
    return [
        sa.Column("first_name", sa.String(length=100), nullable=False),
        sa.Column("last_name", sa.String(length=100), nullable=False),
        sa.Column("date_of_birth", sa.Date(), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone_number", sa.String(length=32), nullable=True),
        sa.Column("street_address", sa.String(length=255), nullable=False),
        sa.Column("street_address_2", sa.String(length=255), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=False),
        sa.Column("state_province", sa.String(length=100), nullable=True),
        sa.Column("postal_code", sa.String(length=20), nullable=False),
        sa.Column("country", sa.String(length=2), nullable=False),
        sa.Column("national_id_number", sa.String(length=64), nullable=True),
        sa.Column("national_id_type", sa.String(length=20), nullable=True),
    ]


def _contractor_fk() -> sa.Column:
    return sa.Column(
        "contractor_id",
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey("contractors.id", ondelete="CASCADE"),
        nullable=False,
    )


def upgrade() -> None:
    """Upgrade database schema."""
    # Create profiles table
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(length=128), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("username", sa.String(length=30), nullable=True),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("avatar_url", sa.Text(), nullable=True),
        sa.Column("onboarding_complete", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=True),
        sa.Column("subscription_id", sa.String(length=255), nullable=True),
        sa.Column("subscription_status", sa.String(length=50), nullable=True),
        sa.Column("subscription_period_end", sa.BigInteger(), nullable=True),
        sa.Column("total_tokens", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("tokens_remaining", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("tokens_used", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_purchases", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_spent_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("last_purchase_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_contractor", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint("tokens_remaining >= 0", name="non_negative_token_balance"),
        sa.CheckConstraint("tokens_used >= 0", name="non_negative_tokens_used"),
        sa.CheckConstraint("total_tokens >= 0", name="non_negative_total_tokens"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("username"),
    )
    op.create_index(
        "idx_profiles_username_lower", "profiles", [sa.text("lower(username)")], unique=True
    )

    # Catalog tables
    for table in ("packages", "subscription_plans"):
        op.create_table(
            table,
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("stripe_product_id", sa.String(length=255), nullable=False),
            sa.Column(
                "features",
                postgresql.JSONB(astext_type=sa.Text()),
                nullable=False,
                server_default=sa.text("'[]'::jsonb"),
            ),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("stripe_product_id"),
        )
        op.create_index(op.f(f"ix_{table}_is_active"), table, ["is_active"], unique=False)

    op.create_table(
        "package_prices",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "package_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("packages.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("stripe_price_id", sa.String(length=255), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="aud"),
        sa.Column("interval_type", sa.String(length=20), nullable=False, server_default="one_time"),
        sa.Column("interval_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("token_amount", sa.BigInteger(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="positive_package_amount"),
        sa.CheckConstraint("token_amount > 0", name="positive_package_tokens"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("stripe_price_id"),
    )
    op.create_index(op.f("ix_package_prices_package_id"), "package_prices", ["package_id"])

    op.create_table(
        "subscription_prices",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "subscription_plan_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("subscription_plans.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("stripe_price_id", sa.String(length=255), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="aud"),
        sa.Column("interval_type", sa.String(length=20), nullable=False),
        sa.Column("interval_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("token_amount", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("trial_period_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint(
            "interval_type IN ('day', 'week', 'month', 'year')", name="valid_interval"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("stripe_price_id"),
    )
    op.create_index(
        op.f("ix_subscription_prices_subscription_plan_id"),
        "subscription_prices",
        ["subscription_plan_id"],
    )

    # Create purchases table
    op.create_table(
        "purchases",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "user_id",
            sa.String(length=128),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(length=255), nullable=False),
        sa.Column("stripe_price_id", sa.String(length=255), nullable=False),
        sa.Column("stripe_product_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=True),
        sa.Column(
            "package_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("packages.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "package_price_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("package_prices.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("payment_method_id", sa.String(length=255), nullable=True),
        sa.Column("amount_paid", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="aud"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("tokens_purchased", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("refunded_amount_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("product_name", sa.String(length=255), nullable=True),
        sa.Column("purchased_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount_paid > 0", name="positive_amount_paid"),
        sa.CheckConstraint(
            "refunded_amount_cents >= 0 AND refunded_amount_cents <= amount_paid",
            name="refund_within_amount_paid",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'refunded')",
            name="valid_purchase_status",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
        sa.UniqueConstraint("stripe_payment_intent_id"),
    )
    op.create_index("idx_purchases_user_status", "purchases", ["user_id", "status"])
    op.create_index(op.f("ix_purchases_user_id"), "purchases", ["user_id"])
    op.create_index(op.f("ix_purchases_status"), "purchases", ["status"])
    op.create_index(op.f("ix_purchases_stripe_price_id"), "purchases", ["stripe_price_id"])
    op.create_index(op.f("ix_purchases_package_id"), "purchases", ["package_id"])

    # Create subscriptions table
    op.create_table(
        "subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "user_id",
            sa.String(length=128),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("stripe_subscription_id", sa.String(length=255), nullable=False),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_price_id", sa.String(length=255), nullable=False),
        sa.Column("stripe_product_id", sa.String(length=255), nullable=True),
        sa.Column(
            "subscription_plan_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("subscription_plans.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "subscription_price_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("subscription_prices.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="incomplete"),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cancel_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stripe_created", sa.BigInteger(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
        sa.UniqueConstraint("stripe_subscription_id"),
    )
    op.create_index(op.f("ix_subscriptions_status"), "subscriptions", ["status"])

    # Create user_token_transactions table
    op.create_table(
        "user_token_transactions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column(
            "user_id",
            sa.String(length=128),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "package_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("packages.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "purchase_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("purchases.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("transaction_type", sa.String(length=30), nullable=False),
        sa.Column("token_amount", sa.BigInteger(), nullable=False),
        sa.Column("balance_after", sa.BigInteger(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "transaction_type IN ('purchase', 'usage', 'bonus', 'refund', 'admin_adjustment')",
            name="valid_transaction_type",
        ),
        sa.CheckConstraint("token_amount <> 0", name="non_zero_token_amount"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_token_transactions_user_created",
        "user_token_transactions",
        ["user_id", "created_at"],
    )
    op.create_index(op.f("ix_user_token_transactions_user_id"), "user_token_transactions", ["user_id"])
    op.create_index(
        op.f("ix_user_token_transactions_purchase_id"), "user_token_transactions", ["purchase_id"]
    )
    op.create_index(
        op.f("ix_user_token_transactions_transaction_type"),
        "user_token_transactions",
        ["transaction_type"],
    )
    op.create_index(
        op.f("ix_user_token_transactions_created_at"), "user_token_transactions", ["created_at"]
    )

    # Create payment_methods table
    op.create_table(
        "payment_methods",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "user_id",
            sa.String(length=128),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("stripe_payment_method_id", sa.String(length=255), nullable=False),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=False),
        sa.Column("card_brand", sa.String(length=30), nullable=False),
        sa.Column("card_last4", sa.String(length=4), nullable=False),
        sa.Column("card_exp_month", sa.Integer(), nullable=False),
        sa.Column("card_exp_year", sa.Integer(), nullable=False),
        sa.Column("card_country", sa.String(length=2), nullable=True),
        sa.Column("card_funding", sa.String(length=20), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("card_exp_month BETWEEN 1 AND 12", name="valid_exp_month"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("stripe_payment_method_id"),
    )
    op.create_index(op.f("ix_payment_methods_user_id"), "payment_methods", ["user_id"])
    op.create_index(
        "idx_payment_methods_user_default",
        "payment_methods",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("is_default AND is_active"),
    )

    # Contractor KYC tables
    op.create_table(
        "contractors",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "user_id",
            sa.String(length=128),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("contractor_type", sa.String(length=20), nullable=False, server_default="individual"),
        sa.Column("kyc_status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("stripe_connect_account_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_connect_account_status", sa.String(length=50), nullable=True),
        sa.Column(
            "stripe_connect_requirements_completed",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("kyc_submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("kyc_approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("kyc_rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("kyc_rejection_reason", sa.Text(), nullable=True),
        sa.Column("kyc_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("business_name", sa.String(length=255), nullable=True),
        sa.Column("business_tax_id", sa.String(length=64), nullable=True),
        sa.Column("business_website_url", sa.Text(), nullable=True),
        sa.Column("business_description", sa.Text(), nullable=True),
        sa.Column("industry_mcc_code", sa.String(length=4), nullable=True),
        sa.Column("company_registration_number", sa.String(length=64), nullable=True),
        sa.Column("company_structure", sa.String(length=50), nullable=True),
        sa.Column("first_name", sa.String(length=100), nullable=True),
        sa.Column("last_name", sa.String(length=100), nullable=True),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.Column("phone_number", sa.String(length=32), nullable=True),
        sa.Column("national_id_number", sa.String(length=64), nullable=True),
        sa.Column("national_id_type", sa.String(length=20), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "contractor_type IN ('individual', 'business')", name="valid_contractor_type"
        ),
        sa.CheckConstraint(
            "kyc_status IN ('pending', 'submitted', 'under_review', 'approved', 'rejected', 'expired')",
            name="valid_kyc_status",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
        sa.UniqueConstraint("stripe_connect_account_id"),
    )
    op.create_index(op.f("ix_contractors_kyc_status"), "contractors", ["kyc_status"])

    op.create_table(
        "contractor_addresses",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        _contractor_fk(),
        sa.Column("address_type", sa.String(length=20), nullable=False, server_default="residential"),
        sa.Column("street_address", sa.String(length=255), nullable=False),
        sa.Column("street_address_2", sa.String(length=255), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=False),
        sa.Column("state_province", sa.String(length=100), nullable=True),
        sa.Column("postal_code", sa.String(length=20), nullable=False),
        sa.Column("country", sa.String(length=2), nullable=False),
        *_verification(),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "contractor_bank_accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        _contractor_fk(),
        sa.Column("account_holder_name", sa.String(length=255), nullable=False),
        sa.Column("account_number_last4", sa.String(length=4), nullable=True),
        sa.Column("routing_number", sa.String(length=32), nullable=True),
        sa.Column("bank_name", sa.String(length=255), nullable=True),
        sa.Column("account_type", sa.String(length=20), nullable=True),
        sa.Column("stripe_bank_account_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_bank_account_status", sa.String(length=50), nullable=True),
        *_verification(),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "contractor_beneficial_owners",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        _contractor_fk(),
        *_person(),
        sa.Column("ownership_percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("title", sa.String(length=100), nullable=True),
        *_verification(),
        *_timestamps(),
        sa.CheckConstraint(
            "ownership_percentage > 0 AND ownership_percentage <= 100",
            name="valid_ownership_percentage",
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "contractor_representatives",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        _contractor_fk(),
        *_person(),
        sa.Column("title", sa.String(length=100), nullable=False),
        sa.Column("is_authorized_signatory", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_verification(),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "contractor_document_uploads",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        _contractor_fk(),
        sa.Column("document_type", sa.String(length=50), nullable=False),
        sa.Column("document_purpose", sa.String(length=50), nullable=False),
        sa.Column("file_name", sa.String(length=255), nullable=False),
        sa.Column("file_size", sa.BigInteger(), nullable=False),
        sa.Column("mime_type", sa.String(length=100), nullable=False),
        sa.Column("file_hash", sa.String(length=64), nullable=False),
        sa.Column("stripe_file_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_upload_status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("stripe_upload_error", sa.Text(), nullable=True),
        sa.Column("verification_status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("verification_notes", sa.Text(), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "required_for_capability",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("requirement_id", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "stripe_upload_status IN ('pending', 'uploaded', 'failed')",
            name="valid_upload_status",
        ),
        sa.CheckConstraint(
            "verification_status IN ('pending', 'verified', 'rejected', 'requires_action')",
            name="valid_verification_status",
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    for table in (
        "contractor_addresses",
        "contractor_bank_accounts",
        "contractor_beneficial_owners",
        "contractor_representatives",
        "contractor_document_uploads",
    ):
        op.create_index(op.f(f"ix_{table}_contractor_id"), table, ["contractor_id"])

    op.create_table(
        "contractor_kyc_form_data",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "user_id",
            sa.String(length=128),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("kyc_data", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )


def downgrade() -> None:
    """Downgrade database schema."""
    for table in (
        "contractor_kyc_form_data",
        "contractor_document_uploads",
        "contractor_representatives",
        "contractor_beneficial_owners",
        "contractor_bank_accounts",
        "contractor_addresses",
        "contractors",
        "payment_methods",
        "user_token_transactions",
        "subscriptions",
        "purchases",
        "subscription_prices",
        "package_prices",
        "subscription_plans",
        "packages",
        "profiles",
    ):
        op.drop_table(table)
