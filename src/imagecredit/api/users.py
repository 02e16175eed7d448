"""User profile endpoints -- /api/v1/users/*."""

from __future__ import annotations

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from imagecredit.api.dependencies import get_current_user
from imagecredit.database import get_db
from imagecredit.models import User
from imagecredit.services.credit_service import (
    CreditTransactionResponse,
    PaymentHistoryResponse,
    get_credit_history,
    get_payment_history,
)

router = APIRouter(prefix="/api/v1/users", tags=["users"])


class UserProfileResponse(BaseModel):
    user_id: uuid.UUID
    email: str | None
    wallet_address: str | None
    credit_balance: int
    total_credits_earned: int
    total_credits_spent: int
    nft_collections: list[str]
    created_at: datetime
    recent_transactions: list[CreditTransactionResponse]
    recent_payments: list[PaymentHistoryResponse]


async def _profile(db: AsyncSession, user: User) -> UserProfileResponse:
    return UserProfileResponse(
        user_id=user.user_id,
        email=user.email,
        wallet_address=user.wallet_address,
        credit_balance=user.credit_balance,
        total_credits_earned=user.total_credits_earned,
        total_credits_spent=user.total_credits_spent,
        nft_collections=list(user.nft_collections or []),
        created_at=user.created_at,
        recent_transactions=await get_credit_history(db, user.user_id, limit=20),
        recent_payments=await get_payment_history(db, user.user_id, limit=20),
    )


@router.get("/me", response_model=UserProfileResponse)
async def read_me(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await _profile(db, current_user)


@router.get("/{user_id}", response_model=UserProfileResponse)
async def read_user(
    user_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Only the owner may read a profile; anyone else gets 403."""
    if user_id != current_user.user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You can only view your own account",
        )
    return await _profile(db, current_user)
