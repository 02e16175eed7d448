"""Crypto payment endpoints -- /api/v1/payments/*."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from imagecredit.api.dependencies import get_redis, get_verifier
from imagecredit.database import get_db
from imagecredit.errors import ValidationFailedError
from imagecredit.services.crypto_payment_service import (
    ClaimResponse,
    VerifyPaymentRequest,
    claim_crypto_payment,
)
from imagecredit.services.payment_verifier import PaymentVerifier, VerificationStatus

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])

RPC_RETRY_AFTER_SECONDS = 30


class PaymentAddressRequest(BaseModel):
    chain: str = Field(..., min_length=1, max_length=20)


class PaymentAddressResponse(BaseModel):
    chain: str
    address: str
    token: str
    decimals: int
    chain_id: int | None = None


@router.post("/address", response_model=PaymentAddressResponse)
async def payment_address(
    body: PaymentAddressRequest,
    verifier: PaymentVerifier = Depends(get_verifier),
):
    """Where to send USDC on *chain*."""
    network = verifier.networks.get(body.chain.lower())
    if network is None or not network.receiving_address:
        raise ValidationFailedError(f"Unsupported chain: {body.chain}")
    return PaymentAddressResponse(
        chain=network.name,
        address=network.receiving_address,
        token=network.token_address,
        decimals=network.token_decimals,
        chain_id=network.chain_id,
    )


def _status_code_for(response: ClaimResponse) -> int:
    if response.success:
        return status.HTTP_200_OK
    if response.status == VerificationStatus.RPC_UNAVAILABLE.value:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if response.retryable:
        return status.HTTP_202_ACCEPTED
    return status.HTTP_422_UNPROCESSABLE_ENTITY


@router.post("/verify", response_model=ClaimResponse)
async def verify_payment(
    body: VerifyPaymentRequest,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    verifier: PaymentVerifier = Depends(get_verifier),
):
    """Verify an on-chain USDC payment and credit the paying wallet.

    200: credited, or already claimed earlier (``alreadyClaimed``).
    202: not confirmed yet -- retry later.
    503: chain RPC unavailable (``Retry-After``).
    422: rejected, with the reason.
    """
    result = await claim_crypto_payment(db, redis, verifier, body)
    response = result.to_response()
    code = _status_code_for(response)

    headers = {}
    if code == status.HTTP_503_SERVICE_UNAVAILABLE:
        headers["Retry-After"] = str(RPC_RETRY_AFTER_SECONDS)
    return JSONResponse(status_code=code, content=response.model_dump(), headers=headers)
