"""Credit ledger -- balance queries, atomic grants, deductions and refunds.

Every balance change is a single conditional UPDATE ... RETURNING, so two
concurrent requests for the same user serialize on the row lock instead of
racing through a read-modify-write in Python. ``credit_balance`` and the
``total_credits_earned`` / ``total_credits_spent`` counters move in the same
statement; a CHECK constraint keeps ``balance = earned - spent``.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from imagecredit.errors import InsufficientCreditsError, UserNotFoundError, ValidationFailedError
from imagecredit.services.audit_logger import AuditLogger

audit = AuditLogger()


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------

# 5 credits per USD (50 credits for $10)
BASE_RATE = 5

# Stripe purchase scaling, highest threshold first
SCALING_TIERS = [
    (Decimal("80"), Decimal("1.3")),
    (Decimal("40"), Decimal("1.2")),
    (Decimal("20"), Decimal("1.1")),
    (Decimal("0"), Decimal("1.0")),
]

NFT_HOLDER_MULTIPLIER = Decimal("1.2")


def crypto_credits(amount_usd: Decimal) -> int:
    """Credits for a USDC top-up: flat BASE_RATE, floored."""
    return math.floor(Decimal(amount_usd) * BASE_RATE)


def calculate_credits(amount_usd: Decimal, is_nft_holder: bool = False) -> int:
    """Credits for a Stripe purchase with volume scaling and the NFT holder bonus."""
    amount_usd = Decimal(amount_usd)
    multiplier = next(m for threshold, m in SCALING_TIERS if amount_usd >= threshold)
    if is_nft_holder:
        multiplier *= NFT_HOLDER_MULTIPLIER
    return math.floor(amount_usd * BASE_RATE * multiplier)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class CreditBalanceResponse(BaseModel):
    user_id: uuid.UUID
    credit_balance: int
    total_credits_earned: int
    total_credits_spent: int


class CreditTransactionResponse(BaseModel):
    amount: int
    txn_type: str
    reference: str | None
    balance_after: int
    created_at: datetime


class PaymentHistoryResponse(BaseModel):
    source: str
    chain: str | None
    tx_id: str | None
    amount: Decimal | None
    credits: int | None
    completed_at: datetime | None


# ---------------------------------------------------------------------------
# Service functions
# ---------------------------------------------------------------------------

async def _record_transaction(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    txn_type: str,
    reference: str | None,
    balance_after: int,
) -> None:
    await db.execute(
        text(
            "INSERT INTO credit_transactions "
            "(user_id, amount, txn_type, reference, balance_after, created_at) "
            "VALUES (:user_id, :amount, :txn_type, :reference, :balance_after, :created_at)"
        ),
        {
            "user_id": user_id,
            "amount": amount,
            "txn_type": txn_type,
            "reference": reference,
            "balance_after": balance_after,
            "created_at": datetime.now(timezone.utc),
        },
    )
    audit.log_credit_event(user_id, amount, txn_type, reference, balance_after)


def _require_positive(amount: int) -> None:
    if amount <= 0:
        raise ValidationFailedError("Credit amount must be positive")


async def add_credits(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    txn_type: str,
    reference: str | None = None,
) -> int:
    """Grant credits and record the ledger entry. Returns the new balance."""
    _require_positive(amount)
    result = await db.execute(
        text(
            "UPDATE users "
            "SET credit_balance = credit_balance + :amount, "
            "total_credits_earned = total_credits_earned + :amount "
            "WHERE user_id = :user_id "
            "RETURNING credit_balance"
        ),
        {"user_id": user_id, "amount": amount},
    )
    row = result.fetchone()
    if row is None:
        raise UserNotFoundError()

    new_balance: int = row[0]
    await _record_transaction(db, user_id, amount, txn_type, reference, new_balance)
    return new_balance


async def atomic_deduct_credits(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    txn_type: str = "spend",
    reference: str | None = None,
) -> int:
    """Atomically deduct credits using UPDATE ... WHERE balance >= amount.

    No partial deduction ever happens: either the whole amount is taken or
    the row is untouched. Returns the new balance on success.
    Raises InsufficientCreditsError (402) if the balance does not cover it.
    """
    _require_positive(amount)
    result = await db.execute(
        text(
            "UPDATE users "
            "SET credit_balance = credit_balance - :amount, "
            "total_credits_spent = total_credits_spent + :amount "
            "WHERE user_id = :user_id AND credit_balance >= :amount "
            "RETURNING credit_balance"
        ),
        {"user_id": user_id, "amount": amount},
    )
    row = result.fetchone()
    if row is None:
        raise InsufficientCreditsError()

    new_balance: int = row[0]
    await _record_transaction(db, user_id, -amount, txn_type, reference, new_balance)
    return new_balance


async def refund_credits(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    reference: str | None = None,
) -> int:
    """Undo a spend: the credits return and ``total_credits_spent`` shrinks."""
    _require_positive(amount)
    result = await db.execute(
        text(
            "UPDATE users "
            "SET credit_balance = credit_balance + :amount, "
            "total_credits_spent = total_credits_spent - :amount "
            "WHERE user_id = :user_id AND total_credits_spent >= :amount "
            "RETURNING credit_balance"
        ),
        {"user_id": user_id, "amount": amount},
    )
    row = result.fetchone()
    if row is None:
        raise UserNotFoundError("User not found or nothing to refund")

    new_balance: int = row[0]
    await _record_transaction(db, user_id, amount, "refund", reference, new_balance)
    return new_balance


async def get_balance(db: AsyncSession, user_id: uuid.UUID) -> CreditBalanceResponse:
    """Return the current balance and lifetime totals for a user."""
    result = await db.execute(
        text(
            "SELECT credit_balance, total_credits_earned, total_credits_spent "
            "FROM users WHERE user_id = :user_id"
        ),
        {"user_id": user_id},
    )
    row = result.fetchone()
    if row is None:
        raise UserNotFoundError()
    return CreditBalanceResponse(
        user_id=user_id,
        credit_balance=row[0],
        total_credits_earned=row[1],
        total_credits_spent=row[2],
    )


async def get_credit_history(
    db: AsyncSession, user_id: uuid.UUID, limit: int = 50,
) -> list[CreditTransactionResponse]:
    result = await db.execute(
        text(
            "SELECT amount, txn_type, reference, balance_after, created_at "
            "FROM credit_transactions WHERE user_id = :user_id "
            "ORDER BY txn_id DESC LIMIT :limit"
        ),
        {"user_id": user_id, "limit": limit},
    )
    return [
        CreditTransactionResponse(
            amount=row[0],
            txn_type=row[1],
            reference=row[2],
            balance_after=row[3],
            created_at=row[4],
        )
        for row in result.fetchall()
    ]


async def get_payment_history(
    db: AsyncSession, user_id: uuid.UUID, limit: int = 50,
) -> list[PaymentHistoryResponse]:
    result = await db.execute(
        text(
            "SELECT source, chain, tx_id, amount, credits, completed_at "
            "FROM payment_records "
            "WHERE user_id = :user_id AND status = 'completed' "
            "ORDER BY completed_at DESC LIMIT :limit"
        ),
        {"user_id": user_id, "limit": limit},
    )
    return [
        PaymentHistoryResponse(
            source=row[0],
            chain=row[1],
            tx_id=row[2],
            amount=row[3],
            credits=row[4],
            completed_at=row[5],
        )
        for row in result.fetchall()
    ]
