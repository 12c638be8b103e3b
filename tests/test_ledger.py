"""
Unit tests for the token ledger.
"""
from typing import Any

import pytest
from sqlalchemy import func, select

from tokenpay.core.errors import NotFoundError, ValidationError
from tokenpay.core.ledger import InsufficientTokensError, TokenLedger
from tokenpay.database.models import Purchase, TokenTransaction


async def _count_rows(db: Any, transaction_type: str) -> int:
    return await db.scalar(
        select(func.count())
        .select_from(TokenTransaction)
        .where(TokenTransaction.transaction_type == transaction_type)
    )


class TestTokenLedger:
    """Test suite for TokenLedger."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_credit_increases_balance_and_appends_row(self, test_db: Any, profile: Any) -> None:
        """Test a credit moves both counters and records the new balance."""
        ledger = TokenLedger()

        row = await ledger.credit(profile.id, 500, test_db, description="Starter pack")
        await test_db.commit()

        balance = await ledger.get_balance(profile.id, test_db)
        assert balance == {"total_tokens": 500, "tokens_remaining": 500, "tokens_used": 0}
        assert row.token_amount == 500
        assert row.balance_after == 500
        assert row.transaction_type == "purchase"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_credit_rejects_non_positive_amount(self, test_db: Any, profile: Any) -> None:
        """Test credits must be positive."""
        with pytest.raises(ValidationError):
            await TokenLedger().credit(profile.id, 0, test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_credit_unknown_profile(self, test_db: Any) -> None:
        """Test crediting a missing profile fails."""
        with pytest.raises(NotFoundError):
            await TokenLedger().credit("nobody", 10, test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_consume_debits_and_counts_usage(self, test_db: Any, profile: Any) -> None:
        """Test consumption lowers the balance and raises tokens_used."""
        ledger = TokenLedger()
        await ledger.credit(profile.id, 100, test_db)
        await test_db.commit()

        result = await ledger.consume(profile.id, 30, test_db, description="Summary")

        assert result["tokens_remaining"] == 70
        assert result["transaction"]["token_amount"] == -30
        assert result["transaction"]["transaction_type"] == "usage"
        balance = await ledger.get_balance(profile.id, test_db)
        assert balance == {"total_tokens": 100, "tokens_remaining": 70, "tokens_used": 30}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_consume_more_than_balance_writes_nothing(self, test_db: Any, profile: Any) -> None:
        """Test an overdraft is rejected without touching balance or ledger."""
        ledger = TokenLedger()
        await ledger.credit(profile.id, 20, test_db)
        await test_db.commit()

        with pytest.raises(InsufficientTokensError) as exc_info:
            await ledger.consume(profile.id, 21, test_db)

        assert exc_info.value.http_status == 402
        assert exc_info.value.details["tokens_remaining"] == 20
        balance = await ledger.get_balance(profile.id, test_db)
        assert balance["tokens_remaining"] == 20
        assert balance["tokens_used"] == 0
        assert await _count_rows(test_db, "usage") == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_consume_rejects_non_positive_amount(self, test_db: Any, profile: Any) -> None:
        with pytest.raises(ValidationError):
            await TokenLedger().consume(profile.id, -5, test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_adjust_positive_and_negative(self, test_db: Any, profile: Any) -> None:
        """Test admin adjustments in both directions."""
        ledger = TokenLedger()

        credited = await ledger.adjust(profile.id, 50, "Goodwill", test_db, transaction_type="bonus")
        debited = await ledger.adjust(profile.id, -20, "Correction", test_db)

        assert credited["tokens_remaining"] == 50
        assert credited["transaction"]["transaction_type"] == "bonus"
        assert debited["tokens_remaining"] == 30
        assert debited["transaction"]["token_amount"] == -20
        balance = await ledger.get_balance(profile.id, test_db)
        assert balance["tokens_used"] == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_adjust_cannot_overdraw(self, test_db: Any, profile: Any) -> None:
        with pytest.raises(InsufficientTokensError):
            await TokenLedger().adjust(profile.id, -1, "Correction", test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_adjust_validation(self, test_db: Any, profile: Any) -> None:
        """Test zero deltas and negative bonuses are rejected."""
        ledger = TokenLedger()
        with pytest.raises(ValidationError):
            await ledger.adjust(profile.id, 0, "Nothing", test_db)
        with pytest.raises(ValidationError):
            await ledger.adjust(profile.id, -5, "Bad bonus", test_db, transaction_type="bonus")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reverse_purchase_records_shortfall(self, test_db: Any, profile: Any) -> None:
        """Test a refund reversal takes back only what is left."""
        ledger = TokenLedger()
        purchase = Purchase(
            user_id=profile.id,
            stripe_payment_intent_id="pi_refund",
            stripe_price_id="price_500",
            amount_paid=749,
            currency="aud",
            status="refunded",
            tokens_purchased=500,
        )
        test_db.add(purchase)
        await test_db.flush()
        await ledger.credit(profile.id, 500, test_db, purchase_id=purchase.id)
        await test_db.commit()
        await ledger.consume(profile.id, 450, test_db)

        row = await ledger.reverse_purchase(purchase, test_db, reason="Customer request")
        await test_db.commit()

        assert row is not None
        assert row.token_amount == -50
        assert row.balance_after == 0
        assert row.metadata_["shortfall"] == 450
        balance = await ledger.get_balance(profile.id, test_db)
        assert balance == {"total_tokens": 500, "tokens_remaining": 0, "tokens_used": 450}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reverse_purchase_with_empty_balance(self, test_db: Any, profile: Any) -> None:
        """Test nothing is written when every token was already spent."""
        purchase = Purchase(
            user_id=profile.id,
            stripe_payment_intent_id="pi_spent",
            stripe_price_id="price_500",
            amount_paid=749,
            status="refunded",
            tokens_purchased=500,
        )
        test_db.add(purchase)
        await test_db.commit()

        assert await TokenLedger().reverse_purchase(purchase, test_db) is None
        assert await _count_rows(test_db, "refund") == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reverse_purchase_partial_share(self, test_db: Any, profile: Any) -> None:
        ledger = TokenLedger()
        purchase = Purchase(
            user_id=profile.id,
            stripe_payment_intent_id="pi_partial",
            stripe_price_id="price_500",
            amount_paid=749,
            status="completed",
            tokens_purchased=500,
            refunded_amount_cents=100,
        )
        test_db.add(purchase)
        await test_db.flush()
        await ledger.credit(profile.id, 500, test_db, purchase_id=purchase.id)
        await test_db.commit()

        row = await ledger.reverse_purchase(purchase, test_db, tokens=66)
        await test_db.commit()

        assert row.token_amount == -66
        assert row.metadata_["tokens_reversed"] == 66
        assert row.metadata_["shortfall"] == 0
        assert (await ledger.get_balance(profile.id, test_db))["tokens_remaining"] == 434

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_transactions_newest_first(self, test_db: Any, profile: Any) -> None:
        """Test history paging and ordering."""
        ledger = TokenLedger()
        await ledger.credit(profile.id, 100, test_db)
        await test_db.commit()
        await ledger.consume(profile.id, 10, test_db)
        await ledger.consume(profile.id, 20, test_db)

        page = await ledger.list_transactions(profile.id, test_db, limit=2)

        assert page["total"] == 3
        assert [t["token_amount"] for t in page["transactions"]] == [-20, -10]
        assert page["transactions"][0]["balance_after"] == 70
