"""Redis-backed fixed-window rate limiting, with an in-process fallback."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Dict, Tuple

from fastapi import Request
import redis.asyncio as redis

from config import settings
from services.errors import RateLimited


_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def client_ip(request: Request) -> str:
    """Best-effort client address: first X-Forwarded-For hop, then the socket peer."""
    forwarded = (request.headers.get("x-forwarded-for") or "").strip()
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> bool:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count, reset_at = 0, now + window_seconds
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
    """FastAPI dependency limiting ``prefix`` requests per client address per window."""

    async def _dependency(request: Request) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"ats:rate:{prefix}:{client_ip(request)}"
        try:
            allowed = await _consume_redis_quota(key, limit, window_seconds)
        except Exception:
            allowed = await _consume_local_quota(key, limit, window_seconds)

        if not allowed:
            raise RateLimited(f"Rate limit exceeded for {prefix}. Try again later.")

    return _dependency
