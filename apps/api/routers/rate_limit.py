"""Per-caller request quotas for money-moving endpoints.

Counters live in Redis under fixed windows. When Redis is unreachable the
process falls back to in-memory windows, which only bound a single worker.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple

from fastapi import Request
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings
from services.errors import ServiceError

logger = logging.getLogger(__name__)

# window key -> (count, expires_at)
_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()
_redis_client: Optional[redis.Redis] = None


class RateLimited(ServiceError):
    status_code_default = 429

    def __init__(self, retry_after: int):
        super().__init__("Too many requests. Try again later.", retry_after_seconds=retry_after)
        self.headers = {"Retry-After": str(retry_after)}


def _redis() -> redis.Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


async def close_rate_limit_backend() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


def _caller_identity(request: Request) -> str:
    """Digest of the bearer credential when one is sent, else the client address."""
    scheme, _, credential = (request.headers.get("authorization") or "").partition(" ")
    credential = credential.strip()
    if scheme.lower() == "bearer" and credential:
        return "token:" + hashlib.sha256(credential.encode("utf-8")).hexdigest()[:32]

    if settings.TRUST_FORWARDED_FOR:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return "ip:" + forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return "ip:" + request.client.host
    return "ip:unknown"


async def _consume_redis(key: str, window_seconds: int) -> int:
    async with _redis().pipeline(transaction=True) as pipe:
        pipe.incr(key)
        pipe.expire(key, window_seconds)
        count, _ = await pipe.execute()
    return int(count)


async def _consume_local(key: str, window_seconds: int, now: float) -> int:
    async with _local_lock:
        count, expires_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= expires_at:
            count, expires_at = 0, now + window_seconds
        _local_counters[key] = (count + 1, expires_at)
        for stale in [name for name, (_, until) in _local_counters.items() if until <= now]:
            del _local_counters[stale]
        return count + 1


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[Request], Awaitable[None]]:
    """FastAPI dependency allowing `limit` calls per caller per fixed window."""

    async def _dependency(request: Request) -> None:
        if not settings.RATE_LIMITS_ENABLED or getattr(request.app.state, "disable_rate_limits", False):
            return

        now = time.time()
        window = int(now // window_seconds)
        key = f"coinhost:rate:{prefix}:{_caller_identity(request)}:{window}"
        try:
            count = await _consume_redis(key, window_seconds)
        except (RedisError, OSError) as exc:
            logger.debug("Redis rate limit unavailable, using local counters: %s", exc)
            count = await _consume_local(key, window_seconds, now)

        if count > limit:
            retry_after = max(1, int((window + 1) * window_seconds - now))
            logger.info("Rate limit reached for %s", prefix, extra={"reason": "rate_limited"})
            raise RateLimited(retry_after)

    return _dependency
