"""Cover generation router: entitlement check around the image provider call."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.entitlement import Entitlement, can_generate, consume
from services.image_provider import (
    MAX_PROMPT_LENGTH,
    ImageGenerationError,
    ImageGenerator,
    get_image_generator,
)
from services.ledger import get_effective_balance

router = APIRouter()
logger = logging.getLogger(__name__)


class GenerateRequest(BaseModel):
    prompt: str = ""


def _no_credits() -> HTTPException:
    return HTTPException(
        status_code=403,
        detail={"error": "NO_CREDITS", "message": "No generations left. Purchase more to continue."},
    )


@router.post("")
async def generate_cover(
    body: GenerateRequest,
    _rate_limit: None = Depends(
        rate_limit("generate", limit=settings.RATE_LIMIT_GENERATE_PER_MINUTE, window_seconds=60)
    ),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    generator: ImageGenerator = Depends(get_image_generator),
):
    prompt = (body.prompt or "").strip()
    if not prompt or len(prompt) > MAX_PROMPT_LENGTH:
        raise HTTPException(
            status_code=400,
            detail={"error": "INVALID_REQUEST", "message": f"Prompt must be 1-{MAX_PROMPT_LENGTH} characters."},
        )

    if not await can_generate(auth.user_id, db):
        raise _no_credits()

    try:
        image_url = await generator(prompt)
    except ImageGenerationError as exc:
        logger.warning("Generation failed for user %s; no credit consumed: %s", auth.user_id, exc)
        raise HTTPException(
            status_code=502,
            detail={"error": "GENERATION_FAILED", "message": "Image generation failed. Try again later."},
        ) from exc

    if await consume(auth.user_id, db) == Entitlement.DENIED:
        logger.info("Credit for user %s spent concurrently; discarding generated image", auth.user_id)
        raise _no_credits()

    balance = await get_effective_balance(auth.user_id, db)
    return {"image_url": image_url, **balance.as_dict()}
