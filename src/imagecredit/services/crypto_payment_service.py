"""Crypto top-up flow: reserve -> verify on-chain -> credit -> record.

The reservation is committed before the (slow) RPC round-trips so that a
concurrent submission of the same transaction observes it and backs off.
Anything short of a verified payment releases the reservation, so a claim
that was merely early (unconfirmed) or hit a flaky node can be retried.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from imagecredit.services.audit_logger import AuditLogger
from imagecredit.services.credit_service import add_credits, crypto_credits, get_balance
from imagecredit.services.dedup_cache import ReservationLostError, TransactionDedupCache
from imagecredit.services.payment_verifier import (
    SUSPICIOUS_STATUSES,
    PaymentVerifier,
    VerificationResult,
    VerificationStatus,
)
from imagecredit.services.user_service import get_or_create_wallet_user

log = structlog.get_logger()
audit = AuditLogger()


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class VerifyPaymentRequest(BaseModel):
    chain: str = Field(..., min_length=1, max_length=20)
    txId: str = Field(..., min_length=1, max_length=128)
    wallet: str = Field(..., min_length=1, max_length=64)
    amount: str | float | int


class ClaimResponse(BaseModel):
    success: bool
    status: str
    reason: str
    retryable: bool = False
    alreadyClaimed: bool = False
    credits: int = 0
    totalCredits: int | None = None
    txId: str


@dataclass(frozen=True)
class ClaimResult:
    status: str
    reason: str
    tx_id: str
    retryable: bool = False
    already_claimed: bool = False
    credits: int = 0
    new_balance: int | None = None
    user_id: uuid.UUID | None = None

    @property
    def success(self) -> bool:
        return self.status in (VerificationStatus.VERIFIED.value, "already_claimed")

    def to_response(self) -> ClaimResponse:
        return ClaimResponse(
            success=self.success,
            status=self.status,
            reason=self.reason,
            retryable=self.retryable,
            alreadyClaimed=self.already_claimed,
            credits=self.credits,
            totalCredits=self.new_balance,
            txId=self.tx_id,
        )


# ---------------------------------------------------------------------------
# Flow
# ---------------------------------------------------------------------------

async def claim_crypto_payment(
    db: AsyncSession,
    redis: Any,
    verifier: PaymentVerifier,
    request: VerifyPaymentRequest,
) -> ClaimResult:
    """Verify a claimed USDC payment and credit the paying wallet exactly once."""
    claim = verifier.build_claim(request.chain, request.txId, request.wallet, request.amount)
    dedup = TransactionDedupCache(db, redis)

    reservation = await dedup.reserve(
        claim.tx_key, source="crypto", chain=claim.chain, tx_id=claim.tx_id,
    )
    if reservation.already_claimed:
        return await _already_claimed_result(db, claim.tx_id, reservation.prior)
    await db.commit()

    try:
        verification = await verifier.verify_claim(claim)
    except Exception:
        await dedup.release(reservation)
        await db.commit()
        raise

    if not verification.valid:
        await dedup.release(reservation)
        await db.commit()
        if verification.status in SUSPICIOUS_STATUSES:
            audit.log_suspicious_claim(
                claim.tx_key, claim.wallet, verification.status.value, verification.payer,
            )
        return _rejected_result(claim.tx_id, verification)

    credits = crypto_credits(claim.amount)
    try:
        user_id = await get_or_create_wallet_user(db, claim.wallet)
        new_balance = await add_credits(
            db, user_id, credits, txn_type="crypto_payment", reference=claim.tx_key,
        )
        await dedup.complete(
            reservation,
            user_id=user_id,
            credits=credits,
            payer=verification.payer,
            amount=verification.actual_amount,
        )
        await db.commit()
    except ReservationLostError:
        # A stale takeover owns the key now; our credit must not land.
        await db.rollback()
        log.warning("crypto_claim_reservation_lost", tx_key=claim.tx_key)
        return await _already_claimed_result(db, claim.tx_id, await dedup.get_prior(claim.tx_key))
    except Exception:
        await db.rollback()
        await dedup.release(reservation)
        await db.commit()
        raise
    await dedup.remember(claim.tx_key, user_id, credits)

    audit.log_payment(
        "crypto", claim.tx_key, user_id, credits,
        amount=verification.actual_amount, payer=verification.payer,
    )
    return ClaimResult(
        status=VerificationStatus.VERIFIED.value,
        reason=verification.reason,
        tx_id=claim.tx_id,
        credits=credits,
        new_balance=new_balance,
        user_id=user_id,
    )


def _rejected_result(tx_id: str, verification: VerificationResult) -> ClaimResult:
    return ClaimResult(
        status=verification.status.value,
        reason=verification.reason,
        tx_id=tx_id,
        retryable=verification.retryable,
    )


async def _already_claimed_result(db: AsyncSession, tx_id: str, prior) -> ClaimResult:
    """Idempotent replay: report what the first claim granted, credit nothing."""
    if prior is None or prior.status != "completed":
        return ClaimResult(
            status="in_progress",
            reason="This transaction is already being processed",
            tx_id=tx_id,
            retryable=True,
            already_claimed=True,
        )

    balance = None
    if prior.user_id is not None:
        balance = (await get_balance(db, prior.user_id)).credit_balance
    return ClaimResult(
        status="already_claimed",
        reason="Transaction already processed",
        tx_id=tx_id,
        already_claimed=True,
        credits=prior.credits or 0,
        new_balance=balance,
        user_id=prior.user_id,
    )
