"""Redemption code router."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.redemption import RedeemError, redeem

router = APIRouter()

_ERRORS = {
    RedeemError.INVALID_CODE: (400, "Enter a valid redemption code."),
    RedeemError.CODE_NOT_FOUND: (404, "Redemption code does not exist."),
    RedeemError.CODE_ALREADY_USED: (400, "This redemption code has already been used."),
    RedeemError.CODE_EXPIRED: (400, "This redemption code has expired."),
    RedeemError.REDEEM_FAILED: (500, "Redemption failed. Try again later."),
}


class RedeemRequest(BaseModel):
    code: Optional[str] = None


@router.post("")
async def redeem_code(
    body: RedeemRequest,
    _rate_limit: None = Depends(
        rate_limit("redeem", limit=settings.RATE_LIMIT_REDEEM_PER_HOUR, window_seconds=3600)
    ),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    result = await redeem(auth.user_id, body.code, db)
    if isinstance(result, RedeemError):
        status_code, message = _ERRORS[result]
        raise HTTPException(status_code=status_code, detail={"error": result.value, "message": message})

    return {
        "success": True,
        "credits_added": result.amount_granted,
        "new_balance": result.new_balance,
        "expires_at": result.new_expires_at.isoformat() if result.new_expires_at else None,
        "message": f"Redeemed! You received {result.amount_granted} generations.",
    }
