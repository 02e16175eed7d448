"""Image generation billing: debit the model cost, call the generator, refund on failure."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import structlog
from fastapi import HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from imagecredit.errors import ValidationFailedError
from imagecredit.integrations.image_api import MODEL_COSTS, ImageApiClient, ImageApiError
from imagecredit.services.credit_service import atomic_deduct_credits, refund_credits

log = structlog.get_logger()


class CreateGenerationRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=2000)
    model: str = "flux"


class GenerationResponse(BaseModel):
    generation_id: str
    image_url: str
    model: str
    credits_charged: int
    remaining_credits: int


async def _record_generation(
    db: AsyncSession,
    generation_id: uuid.UUID,
    user_id: uuid.UUID,
    prompt: str,
    model: str,
    cost: int,
    image_url: str | None,
    outcome: str,
) -> None:
    await db.execute(
        text(
            "INSERT INTO generations "
            "(generation_id, user_id, prompt, model, credit_cost, image_url, status, created_at) "
            "VALUES (:generation_id, :user_id, :prompt, :model, :cost, :image_url, :status, :now)"
        ),
        {
            "generation_id": generation_id,
            "user_id": user_id,
            "prompt": prompt,
            "model": model,
            "cost": cost,
            "image_url": image_url,
            "status": outcome,
            "now": datetime.now(timezone.utc),
        },
    )


async def create_generation(
    db: AsyncSession,
    user_id: uuid.UUID,
    request: CreateGenerationRequest,
    client: ImageApiClient | None = None,
) -> GenerationResponse:
    """Charge for and run one generation.

    The debit is committed before the (slow) external call so concurrent
    requests cannot spend the same credits twice; any generator failure
    refunds the full cost.
    """
    cost = MODEL_COSTS.get(request.model)
    if cost is None:
        raise ValidationFailedError(f"Unknown model: {request.model}")

    generation_id = uuid.uuid4()
    reference = f"generation:{generation_id}"
    await atomic_deduct_credits(db, user_id, cost, txn_type="spend", reference=reference)
    await db.commit()

    client = client or ImageApiClient()
    try:
        image_url = await client.generate(request.prompt, request.model)
    except ImageApiError as exc:
        log.warning(
            "generation_failed",
            generation_id=str(generation_id),
            model=request.model,
            error=str(exc),
        )
        await refund_credits(db, user_id, cost, reference=reference)
        await _record_generation(
            db, generation_id, user_id, request.prompt, request.model, cost, None, "failed",
        )
        await db.commit()
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Image generation failed; credits were refunded",
        )

    await _record_generation(
        db, generation_id, user_id, request.prompt, request.model, cost, image_url, "completed",
    )
    result = await db.execute(
        text("SELECT credit_balance FROM users WHERE user_id = :user_id"),
        {"user_id": user_id},
    )
    remaining = result.scalar_one()
    await db.commit()

    log.info("generation_completed", generation_id=str(generation_id), model=request.model)
    return GenerationResponse(
        generation_id=str(generation_id),
        image_url=image_url,
        model=request.model,
        credits_charged=cost,
        remaining_credits=remaining,
    )
