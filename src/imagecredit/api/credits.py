"""Credit balance, Stripe purchase and NFT bonus endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from imagecredit.api.dependencies import (
    get_current_user,
    get_optional_user,
    get_redis,
    get_verifier,
)
from imagecredit.database import get_db
from imagecredit.models import User
from imagecredit.services.credit_service import CreditBalanceResponse, get_balance
from imagecredit.services.nft_service import NftBonusResponse, claim_nft_bonus
from imagecredit.services.payment_service import (
    CheckoutRequest,
    CheckoutResponse,
    SubscribeRequest,
    VerifyCheckoutRequest,
    create_checkout_session,
    create_subscription_checkout,
    verify_checkout_session,
)

router = APIRouter(prefix="/api/v1/credits", tags=["credits"])


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/balance", response_model=CreditBalanceResponse)
async def read_balance(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Return the authenticated user's balance and lifetime totals."""
    return await get_balance(db, current_user.user_id)


@router.post("/checkout", response_model=CheckoutResponse)
async def checkout(
    body: CheckoutRequest,
    current_user: User = Depends(get_current_user),
):
    """Create a Stripe Checkout Session for a one-off credit purchase."""
    return await create_checkout_session(current_user, body.amount_usd)


@router.post("/subscribe", response_model=CheckoutResponse)
async def subscribe(
    body: SubscribeRequest,
    current_user: User = Depends(get_current_user),
):
    """Create a Stripe Checkout Session for a monthly credit plan."""
    return await create_subscription_checkout(current_user, body.plan)


@router.post("/checkout/verify")
async def verify_checkout(
    body: VerifyCheckoutRequest,
    current_user: User | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Confirm a completed checkout after the Stripe redirect.

    Safe to call alongside the webhook: only one of them credits.
    """
    return await verify_checkout_session(
        db, redis, body.session_id, current_user, requested_user_id=body.user_id,
    )


@router.post("/nft-bonus", response_model=NftBonusResponse)
async def nft_bonus(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    verifier=Depends(get_verifier),
):
    """Grant the one-time holder bonus for each configured collection the wallet holds."""
    return await claim_nft_bonus(db, redis, verifier.networks, current_user)
