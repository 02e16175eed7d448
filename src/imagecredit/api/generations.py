"""Image generation endpoint -- spends credits."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from imagecredit.api.dependencies import get_current_user
from imagecredit.database import get_db
from imagecredit.models import User
from imagecredit.services.generation_service import (
    CreateGenerationRequest,
    GenerationResponse,
    create_generation,
)

router = APIRouter(prefix="/api/v1/generations", tags=["generations"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=GenerationResponse)
async def generate(
    body: CreateGenerationRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Debit the model's cost and generate one image (refunded if generation fails)."""
    return await create_generation(db, current_user.user_id, body)
