"""Redis-backed fixed-window admission check with an in-process fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis

from config import settings


logger = logging.getLogger(__name__)

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> bool:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count = 0
            reset_at = now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count <= limit


async def _consume_redis_quota(key: str, limit: int, window_seconds: int) -> bool:
    redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        current = await redis_client.incr(key)
        if current == 1:
            await redis_client.expire(key, window_seconds)
    finally:
        await redis_client.aclose()
    return current <= limit


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[Request], Awaitable[None]]:
    """Return a FastAPI dependency that enforces per-client request quotas."""

    async def _dependency(request: Request) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"hongbao:rate:{prefix}:{_client_identifier(request)}"
        try:
            allowed = await _consume_redis_quota(key, limit, window_seconds)
        except (redis.RedisError, OSError) as exc:
            logger.warning("Redis rate limit unavailable for %s, using local counters: %s", prefix, exc)
            allowed = await _consume_local_quota(key, limit, window_seconds)

        if not allowed:
            raise HTTPException(
                status_code=429,
                detail={"error": "RATE_LIMITED", "message": f"Too many {prefix} requests. Try again later."},
                headers={"Retry-After": str(window_seconds)},
            )

    return _dependency
