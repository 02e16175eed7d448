"""Payment record and generation history models."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from imagecredit.models.base import Base

if TYPE_CHECKING:
    from imagecredit.models.user import User


class PaymentRecord(Base):
    """One row per credited payment.

    ``tx_key`` carries a unique index: it is the durable dedup guarantee.
    A row starts as ``pending`` (reservation) and becomes ``completed`` once
    credits were granted; completed rows are immutable.
    """

    __tablename__ = "payment_records"

    payment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tx_key: Mapped[str] = mapped_column(String(160), unique=True, nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    chain: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    tx_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    payer: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 6), nullable=True)
    credits: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.user_id"), nullable=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    reserved_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'completed')", name="ck_payment_status"
        ),
        CheckConstraint(
            "source IN ('crypto', 'stripe', 'nft_bonus')", name="ck_payment_source"
        ),
    )

    user: Mapped[Optional[User]] = relationship(back_populates="payment_records")


class Generation(Base):
    __tablename__ = "generations"

    generation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.user_id"), nullable=False
    )
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    model: Mapped[str] = mapped_column(String(40), nullable=False)
    credit_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('completed', 'failed')", name="ck_generation_status"
        ),
    )

    user: Mapped[User] = relationship(back_populates="generations")
