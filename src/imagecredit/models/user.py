"""User and credit ledger models."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from imagecredit.models.base import Base

if TYPE_CHECKING:
    from imagecredit.models.payment import Generation, PaymentRecord


class User(Base):
    __tablename__ = "users"

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    # EVM addresses are stored lower-cased; Solana addresses verbatim (base58 is case-sensitive)
    wallet_address: Mapped[Optional[str]] = mapped_column(
        String(64), unique=True, nullable=True
    )
    email: Mapped[Optional[str]] = mapped_column(
        String(320), unique=True, nullable=True
    )
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, nullable=True
    )
    token_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    credit_balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_credits_earned: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    total_credits_spent: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    nft_collections: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_users_balance_non_negative"),
        CheckConstraint(
            "credit_balance = total_credits_earned - total_credits_spent",
            name="ck_users_balance_matches_totals",
        ),
        CheckConstraint(
            "wallet_address IS NOT NULL OR email IS NOT NULL",
            name="ck_users_has_identity",
        ),
    )

    # Relationships
    credit_transactions: Mapped[list[CreditTransaction]] = relationship(
        back_populates="user", lazy="selectin"
    )
    payment_records: Mapped[list[PaymentRecord]] = relationship(
        back_populates="user", lazy="selectin"
    )
    generations: Mapped[list[Generation]] = relationship(
        back_populates="user", lazy="selectin"
    )


class CreditTransaction(Base):
    """Append-only ledger entry. Rows are immutable (trigger in migration SQL)."""

    __tablename__ = "credit_transactions"

    txn_id: Mapped[int] = mapped_column(
        BigInteger, primary_key=True, autoincrement=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.user_id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    txn_type: Mapped[str] = mapped_column(String(30), nullable=False)
    reference: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "txn_type IN ('crypto_payment', 'stripe_payment', 'subscription', "
            "'nft_bonus', 'spend', 'refund', 'admin_adjustment')",
            name="ck_credit_txn_type",
        ),
    )

    user: Mapped[User] = relationship(back_populates="credit_transactions")
