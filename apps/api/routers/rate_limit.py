"""Per-user request quotas backed by Redis.

Counters are keyed by the authenticated user, so a user cannot spread
requests across addresses and users behind one NAT do not share a bucket.
When Redis is unreachable each process falls back to in-memory counters.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Tuple

import redis.asyncio as redis
from fastapi import Depends, HTTPException, Request
from redis.exceptions import RedisError

from config import settings
from routers.auth_scope import AuthContext, get_auth_context


logger = logging.getLogger(__name__)

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def quota_key(bucket: str, user_id: str) -> str:
    return f"credit_engine:quota:{bucket}:{user_id}"


def generation_quota(kind: str) -> int:
    if kind == "video":
        return int(settings.RATE_LIMIT_VIDEO_GENERATIONS_PER_HOUR)
    return int(settings.RATE_LIMIT_IMAGE_GENERATIONS_PER_HOUR)


async def _consume_shared_quota(key: str, window_seconds: int) -> Tuple[int, int]:
    """Count one request in Redis; returns ``(count, seconds until the window resets)``."""
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        async with client.pipeline(transaction=True) as pipe:
            count, ttl = await pipe.incr(key).ttl(key).execute()
        if ttl < 0:
            await client.expire(key, window_seconds)
            ttl = window_seconds
    finally:
        await client.aclose()
    return int(count), int(ttl)


async def _consume_local_quota(key: str, window_seconds: int) -> Tuple[int, int]:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count = 0
            reset_at = now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
    return count, max(int(reset_at - now), 1)


async def enforce_quota(
    request: Request,
    bucket: str,
    user_id: str,
    *,
    limit: int,
    window_seconds: int,
) -> None:
    """Count a request against ``bucket`` for ``user_id``; raise 429 past ``limit``."""
    if getattr(request.app.state, "disable_rate_limits", False):
        return

    key = quota_key(bucket, user_id)
    try:
        count, retry_after = await _consume_shared_quota(key, window_seconds)
    except (RedisError, OSError) as exc:
        logger.warning("Rate limit store unavailable (%s); counting %s in-process", exc, bucket)
        count, retry_after = await _consume_local_quota(key, window_seconds)

    if count > limit:
        logger.info("User %s exceeded %s quota (%s/%s)", user_id, bucket, count, limit)
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded for {bucket}. Try again in {retry_after}s.",
            headers={"Retry-After": str(retry_after)},
        )


def rate_limit(bucket: str, limit: int, window_seconds: int) -> Callable[..., Awaitable[None]]:
    """Return a FastAPI dependency enforcing a fixed per-user quota."""

    async def _dependency(request: Request, auth: AuthContext = Depends(get_auth_context)) -> None:
        await enforce_quota(request, bucket, auth.user_id, limit=limit, window_seconds=window_seconds)

    return _dependency
