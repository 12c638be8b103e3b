"""
Token ledger.

Balances live on `profiles` (`tokens_remaining`, `total_tokens`,
`tokens_used`); every movement also appends a `user_token_transactions`
row carrying the signed amount and the resulting balance.

Balance changes are single conditional UPDATE statements, so two
concurrent requests can neither overdraw an account nor lose an
increment. Debits never take `tokens_remaining` below zero.
"""
import uuid
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tokenpay.core.errors import NotFoundError, PaymentRequiredError, ValidationError
from tokenpay.database.models import Profile, Purchase, TokenTransaction
from tokenpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CREDIT_TYPES = ("purchase", "bonus", "refund", "admin_adjustment")


class InsufficientTokensError(PaymentRequiredError):
    """Raised when a debit exceeds the user's remaining tokens."""

    error_code = "insufficient_tokens"


def serialize_transaction(row: TokenTransaction) -> Dict[str, Any]:
    """Convert a ledger row to a response dict."""
    return {
        "id": row.id,
        "user_id": row.user_id,
        "transaction_type": row.transaction_type,
        "token_amount": row.token_amount,
        "balance_after": row.balance_after,
        "description": row.description,
        "purchase_id": str(row.purchase_id) if row.purchase_id else None,
        "package_id": str(row.package_id) if row.package_id else None,
        "metadata": row.metadata_ or {},
        "created_at": row.created_at.isoformat(),
    }


class TokenLedger:
    """
    Credits, debits and history of user token balances.

    `credit` and `reverse_purchase` join the caller's transaction (they
    flush, the caller commits); `consume` and `adjust` are complete
    operations and commit.
    """

    async def _append(
        self,
        db: AsyncSession,
        user_id: str,
        transaction_type: str,
        token_amount: int,
        balance_after: int,
        description: Optional[str],
        purchase_id: Optional[uuid.UUID] = None,
        package_id: Optional[uuid.UUID] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TokenTransaction:
        row = TokenTransaction(
            user_id=user_id,
            transaction_type=transaction_type,
            token_amount=token_amount,
            balance_after=balance_after,
            description=description,
            purchase_id=purchase_id,
            package_id=package_id,
            metadata_=metadata or {},
        )
        db.add(row)
        await db.flush()
        return row

    async def _debit(
        self, db: AsyncSession, user_id: str, amount: int, count_as_usage: bool
    ) -> int:
        """Conditionally debit `amount`; returns the new balance."""
        values: Dict[str, Any] = {"tokens_remaining": Profile.tokens_remaining - amount}
        if count_as_usage:
            values["tokens_used"] = Profile.tokens_used + amount
        stmt = (
            update(Profile)
            .where(Profile.id == user_id, Profile.tokens_remaining >= amount)
            .values(**values)
            .returning(Profile.tokens_remaining)
            .execution_options(synchronize_session=False)
        )
        balance = (await db.execute(stmt)).scalar_one_or_none()
        if balance is not None:
            return balance

        current = await db.scalar(select(Profile.tokens_remaining).where(Profile.id == user_id))
        if current is None:
            raise NotFoundError("Profile not found", user_id=user_id)
        metrics.record_consume_rejected()
        logger.warning(
            "token_debit_rejected",
            user_id=user_id,
            requested=amount,
            tokens_remaining=current,
        )
        raise InsufficientTokensError(
            f"Insufficient tokens: {current} remaining, {amount} required",
            tokens_remaining=current,
            requested=amount,
        )

    async def credit(
        self,
        user_id: str,
        amount: int,
        db: AsyncSession,
        transaction_type: str = "purchase",
        purchase_id: Optional[uuid.UUID] = None,
        package_id: Optional[uuid.UUID] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TokenTransaction:
        """
        Add tokens to a balance.

        Args:
            user_id: Profile to credit
            amount: Positive number of tokens
            db: Database session (not committed)
            transaction_type: One of purchase, bonus, refund, admin_adjustment
            purchase_id: Purchase that paid for the tokens
            package_id: Package the tokens came from
            description: Human readable reason
            metadata: Extra JSON stored on the ledger row

        Returns:
            TokenTransaction: The appended ledger row

        Raises:
            ValidationError: If amount or type is invalid
            NotFoundError: If the profile does not exist
        """
        if amount <= 0:
            raise ValidationError("Credit amount must be positive", amount=amount)
        if transaction_type not in CREDIT_TYPES:
            raise ValidationError(f"Invalid credit type: {transaction_type}")

        stmt = (
            update(Profile)
            .where(Profile.id == user_id)
            .values(
                tokens_remaining=Profile.tokens_remaining + amount,
                total_tokens=Profile.total_tokens + amount,
            )
            .returning(Profile.tokens_remaining)
            .execution_options(synchronize_session=False)
        )
        balance = (await db.execute(stmt)).scalar_one_or_none()
        if balance is None:
            raise NotFoundError("Profile not found", user_id=user_id)

        row = await self._append(
            db,
            user_id=user_id,
            transaction_type=transaction_type,
            token_amount=amount,
            balance_after=balance,
            description=description,
            purchase_id=purchase_id,
            package_id=package_id,
            metadata=metadata,
        )
        metrics.record_token_movement(transaction_type, amount)
        logger.info(
            "tokens_credited",
            user_id=user_id,
            amount=amount,
            transaction_type=transaction_type,
            balance_after=balance,
        )
        return row

    async def consume(
        self,
        user_id: str,
        amount: int,
        db: AsyncSession,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Spend tokens.

        Nothing is written when the balance is too small.

        Args:
            user_id: Profile to debit
            amount: Positive number of tokens
            db: Database session
            description: What the tokens were spent on
            metadata: Extra JSON stored on the ledger row

        Returns:
            Dict[str, Any]: The ledger row and the new balance

        Raises:
            ValidationError: If amount is not positive
            InsufficientTokensError: If the balance is below `amount`
            NotFoundError: If the profile does not exist
        """
        if amount <= 0:
            raise ValidationError("Token amount must be positive", amount=amount)

        try:
            balance = await self._debit(db, user_id, amount, count_as_usage=True)
            row = await self._append(
                db,
                user_id=user_id,
                transaction_type="usage",
                token_amount=-amount,
                balance_after=balance,
                description=description or "Token usage",
                metadata=metadata,
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        metrics.record_token_movement("usage", -amount)
        logger.info("tokens_consumed", user_id=user_id, amount=amount, balance_after=balance)
        return {"transaction": serialize_transaction(row), "tokens_remaining": balance}

    async def reverse_purchase(
        self,
        purchase: Purchase,
        db: AsyncSession,
        reason: Optional[str] = None,
        tokens: Optional[int] = None,
    ) -> Optional[TokenTransaction]:
        """
        Take back the tokens of a refunded purchase.

        Debits `min(tokens, tokens_remaining)`; tokens already spent cannot
        be recovered and are recorded as `shortfall`.

        Args:
            purchase: Refunded purchase
            db: Database session (not committed)
            reason: Refund reason for the ledger row
            tokens: Tokens to take back; defaults to all of `tokens_purchased`

        Returns:
            Optional[TokenTransaction]: The ledger row, or None when nothing
            could be debited
        """
        to_reverse = purchase.tokens_purchased if tokens is None else tokens
        if to_reverse <= 0:
            return None

        remaining = await db.scalar(
            select(Profile.tokens_remaining).where(Profile.id == purchase.user_id)
        )
        if remaining is None:
            raise NotFoundError("Profile not found", user_id=purchase.user_id)

        amount = min(to_reverse, remaining)
        shortfall = to_reverse - amount
        if amount == 0:
            logger.warning(
                "refund_reversal_nothing_to_debit",
                user_id=purchase.user_id,
                purchase_id=str(purchase.id),
                shortfall=shortfall,
            )
            return None

        # Balance can move between the read and the debit; the guard still holds.
        balance = await self._debit(db, purchase.user_id, amount, count_as_usage=False)
        row = await self._append(
            db,
            user_id=purchase.user_id,
            transaction_type="refund",
            token_amount=-amount,
            balance_after=balance,
            description=reason or "Purchase refunded",
            purchase_id=purchase.id,
            package_id=purchase.package_id,
            metadata={
                "stripe_payment_intent_id": purchase.stripe_payment_intent_id,
                "tokens_purchased": purchase.tokens_purchased,
                "tokens_reversed": to_reverse,
                "shortfall": shortfall,
            },
        )
        metrics.record_token_movement("refund", -amount)
        logger.info(
            "purchase_tokens_reversed",
            user_id=purchase.user_id,
            purchase_id=str(purchase.id),
            amount=amount,
            shortfall=shortfall,
        )
        return row

    async def adjust(
        self,
        user_id: str,
        delta: int,
        reason: str,
        db: AsyncSession,
        transaction_type: str = "admin_adjustment",
    ) -> Dict[str, Any]:
        """
        Manually change a balance (admin).

        Positive deltas credit as `admin_adjustment` or `bonus`; negative
        deltas go through the same guard as consumption.

        Args:
            user_id: Profile to adjust
            delta: Signed number of tokens, not zero
            reason: Why the balance changed
            db: Database session
            transaction_type: admin_adjustment or bonus

        Returns:
            Dict[str, Any]: The ledger row and the new balance
        """
        if delta == 0:
            raise ValidationError("Adjustment must not be zero")
        if transaction_type not in ("admin_adjustment", "bonus"):
            raise ValidationError(f"Invalid adjustment type: {transaction_type}")
        if transaction_type == "bonus" and delta < 0:
            raise ValidationError("Bonus adjustments must be positive")

        try:
            if delta > 0:
                row = await self.credit(
                    user_id,
                    delta,
                    db,
                    transaction_type=transaction_type,
                    description=reason,
                    metadata={"reason": reason},
                )
                balance = row.balance_after
            else:
                balance = await self._debit(db, user_id, -delta, count_as_usage=False)
                row = await self._append(
                    db,
                    user_id=user_id,
                    transaction_type=transaction_type,
                    token_amount=delta,
                    balance_after=balance,
                    description=reason,
                    metadata={"reason": reason},
                )
                metrics.record_token_movement(transaction_type, delta)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            "tokens_adjusted",
            user_id=user_id,
            delta=delta,
            transaction_type=transaction_type,
            balance_after=balance,
        )
        return {"transaction": serialize_transaction(row), "tokens_remaining": balance}

    async def get_balance(self, user_id: str, db: AsyncSession) -> Dict[str, int]:
        """
        Current token counters of a user.

        Raises:
            NotFoundError: If the profile does not exist
        """
        row = (
            await db.execute(
                select(
                    Profile.total_tokens, Profile.tokens_remaining, Profile.tokens_used
                ).where(Profile.id == user_id)
            )
        ).one_or_none()
        if row is None:
            raise NotFoundError("Profile not found", user_id=user_id)
        return {
            "total_tokens": row.total_tokens,
            "tokens_remaining": row.tokens_remaining,
            "tokens_used": row.tokens_used,
        }

    async def list_transactions(
        self, user_id: str, db: AsyncSession, limit: int = 50, offset: int = 0
    ) -> Dict[str, Any]:
        """Newest-first page of a user's ledger rows."""
        total = await db.scalar(
            select(func.count()).select_from(TokenTransaction).where(
                TokenTransaction.user_id == user_id
            )
        )
        result = await db.execute(
            select(TokenTransaction)
            .where(TokenTransaction.user_id == user_id)
            .order_by(TokenTransaction.created_at.desc(), TokenTransaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        rows: List[TokenTransaction] = list(result.scalars())
        return {
            "transactions": [serialize_transaction(row) for row in rows],
            "total": total or 0,
            "limit": limit,
            "offset": offset,
        }
