"""Per-caller request quotas for write endpoints, counted in Redis."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _caller_key(request: Request) -> str:
    authorization = request.headers.get("authorization") or ""
    if authorization:
        # Token tail identifies the caller without storing the whole credential.
        return f"token:{authorization[-16:]}"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def _count_locally(key: str, window_seconds: int) -> int:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count, reset_at = 0, now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count


async def _count_in_redis(key: str, window_seconds: int) -> int:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        current = await client.incr(key)
        if current == 1:
            await client.expire(key, window_seconds)
        return int(current)
    finally:
        await client.aclose()


def rate_limit(
    action: str,
    limit: Optional[int] = None,
    window_seconds: Optional[int] = None,
) -> Callable[[Request], None]:
    """FastAPI dependency rejecting callers that exceed ``limit`` hits per window with 429."""
    max_hits = int(limit or settings.RATE_LIMIT_REQUESTS)
    window = int(window_seconds or settings.RATE_LIMIT_WINDOW_SECONDS)

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"coach:rate:{action}:{_caller_key(request)}"
        try:
            hits = await _count_in_redis(key, window)
        except Exception as exc:
            logger.debug("Redis rate limit unavailable, counting locally: %s", exc)
            hits = await _count_locally(key, window)

        if hits > max_hits:
            raise HTTPException(
                status_code=429,
                detail=f"Too many {action} requests. Try again later.",
            )

    return _dependency
