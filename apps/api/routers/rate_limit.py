"""Per-caller request quotas backed by Redis, with an in-process fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings
from services.session_token import decode_session_token


logger = logging.getLogger(__name__)

KEY_PREFIX = "captions:rate"

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()
_redis_client: Optional[redis.Redis] = None


def _get_redis() -> redis.Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


def _caller_key(request: Request) -> str:
    """Signed-in callers are metered per identity, everyone else per address."""
    authorization = request.headers.get("authorization") or ""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token:
        try:
            return f"id:{decode_session_token(token.strip()).identity_id}"
        except ValueError:
            pass
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    if request.client and request.client.host:
        return f"ip:{request.client.host}"
    return "ip:unknown"


async def _consume_local(key: str, limit: int, window_seconds: int) -> bool:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count, reset_at = 0, now + window_seconds
        _local_counters[key] = (count + 1, reset_at)
        return count + 1 <= limit


async def _consume_redis(key: str, limit: int, window_seconds: int) -> bool:
    client = _get_redis()
    current = await client.incr(key)
    if current == 1:
        await client.expire(key, window_seconds)
    return int(current) <= limit


def rate_limit(scope: str, limit: int, window_seconds: int) -> Callable:
    """Build a dependency allowing ``limit`` calls per caller per window for ``scope``."""

    async def _dependency(request: Request) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"{KEY_PREFIX}:{scope}:{_caller_key(request)}"
        try:
            allowed = await _consume_redis(key, limit, window_seconds)
        except (RedisError, OSError) as exc:
            logger.debug("Redis quota unavailable, counting locally: %s", exc)
            allowed = await _consume_local(key, limit, window_seconds)

        if not allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Too many {scope} requests. Try again later.",
                headers={"Retry-After": str(window_seconds)},
            )

    return _dependency
