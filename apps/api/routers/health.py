"""
Health check endpoints.
"""

from datetime import datetime, timedelta, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
import redis.asyncio as redis

from config import settings
from database import engine
from models.payment_attempt import STATUS_PENDING, PaymentAttempt
from models.user_ledger import UserLedger

router = APIRouter()

STALE_PENDING_AFTER = timedelta(hours=1)


def _configured(value: str) -> str:
    return "configured" if value else "missing"


@router.get("/health")
async def health_check():
    """
    Ledger database and Redis reachability, plus the number of checkout
    sessions still pending after an hour (webhook or verify never arrived).
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "stripe": _configured(settings.STRIPE_SECRET_KEY),
        "image_provider": _configured(settings.IMAGE_PROVIDER_URL),
        "stale_pending_payments": None,
    }

    cutoff = datetime.now(timezone.utc) - STALE_PENDING_AFTER
    try:
        async with engine.connect() as conn:
            await conn.execute(select(UserLedger.user_id).limit(1))
            stale = await conn.execute(
                select(func.count())
                .select_from(PaymentAttempt)
                .where(PaymentAttempt.status == STATUS_PENDING, PaymentAttempt.created_at < cutoff)
            )
            health_status["stale_pending_payments"] = int(stale.scalar_one())
        health_status["database"] = "up"
    except (SQLAlchemyError, OSError) as e:
        health_status["database"] = f"down: {e}"
        health_status["status"] = "degraded"

    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except (redis.RedisError, OSError) as e:
        # Rate limits fall back to in-process counters.
        health_status["redis"] = f"down: {e}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Ready once payments and generation have their credentials."""
    missing = [
        name
        for name in ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", "IMAGE_PROVIDER_URL")
        if not getattr(settings, name)
    ]
    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
