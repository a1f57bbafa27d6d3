"""Rate limiting middleware."""

import logging
import time
from typing import Optional

import redis
from fastapi import Request, status
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from ballotgate_api.settings import get_settings

logger = logging.getLogger(__name__)

EXEMPT_PATHS = ("/health", "/ready", "/metrics", "/docs", "/openapi.json")

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> redis.Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(get_settings().redis_url, decode_responses=True)
    return _redis_client


def take_token(key: str, capacity: int, ttl_seconds: int, now: float) -> Optional[float]:
    """Token bucket refilled per minute. Returns remaining tokens or None if empty."""
    client = get_redis_client()
    pipe = client.pipeline()
    pipe.get(key)
    pipe.get(f"{key}:last_refill")
    results = pipe.execute()

    tokens = float(results[0]) if results[0] else capacity
    last_refill = float(results[1]) if results[1] else now

    refill_amount = ((now - last_refill) / 60.0) * capacity
    tokens = min(capacity, tokens + refill_amount)
    if tokens < 1:
        return None

    tokens -= 1
    pipe = client.pipeline()
    pipe.set(key, tokens, ex=ttl_seconds)
    pipe.set(f"{key}:last_refill", now, ex=ttl_seconds)
    pipe.execute()
    return tokens


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Token bucket rate limiting per API client, or per IP for voters."""

    async def dispatch(self, request: Request, call_next):
        """Apply rate limiting."""
        settings = get_settings()
        if not settings.rate_limit_enabled or request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        client = getattr(request.state, "api_client", None)
        if client:
            subject = f"client:{client['id']}"
        else:
            subject = f"ip:{request.client.host if request.client else 'unknown'}"

        key = f"rate_limit:{subject}"
        now = time.time()
        capacity = settings.rate_limit_requests_per_minute
        try:
            remaining = await run_in_threadpool(
                take_token, key, capacity, settings.rate_limit_ttl_seconds, now
            )
        except redis.RedisError as e:
            # Rate limiting is advisory; admission safety does not depend on it.
            logger.warning(f"Rate limiter unavailable, allowing request: {e}")
            return await call_next(request)

        if remaining is None:
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "status": "failed",
                    "error_code": "RATE_LIMITED",
                    "detail": "Rate limit exceeded. Please try again later.",
                },
                headers={"Retry-After": "60"},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(capacity)
        response.headers["X-RateLimit-Remaining"] = str(int(remaining))
        response.headers["X-RateLimit-Reset"] = str(int(now + 60))
        return response
