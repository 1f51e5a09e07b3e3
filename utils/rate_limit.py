import json
import logging
from time import time
from typing import Dict, Optional, Tuple

import redis
import redis.asyncio as aioredis
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from config.settings import settings

logger = logging.getLogger(__name__)


def _connect_redis() -> Optional[aioredis.Redis]:
    if not settings.redis_url:
        logger.info("REDIS_URL not set. Using in-memory rate limiting.")
        return None
    # Parse Redis URL (supports redis:// and redis://:password@host:port); connects lazily
    client = aioredis.from_url(settings.redis_url, decode_responses=True)
    logger.info("Redis configured for rate limiting")
    return client


class RateLimiterMiddleware(BaseHTTPMiddleware):
    """
    Distributed rate limiter using Redis (with fallback to in-memory).
    Uses Token Bucket Algorithm.
    Default: 100 requests per 15 minutes per IP.
    """

    def __init__(self, app, requests_per_window: int = 100, window_seconds: int = 900, enabled: bool = True):
        super().__init__(app)
        self.capacity = requests_per_window
        self.refill_time_window = float(window_seconds)
        self.enabled = enabled
        # Fallback: in-memory storage (ip -> (tokens, last_refill_ts))
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._redis = _connect_redis() if enabled else None

    def _get_client_ip(self, request: Request) -> str:
        xff = request.headers.get("x-forwarded-for")
        if xff:
            # Take first IP in the list
            return xff.split(",")[0].strip()
        client = request.client
        return client.host if client else "unknown"

    def _refill(self, tokens: float, last_refill: float, now: float) -> float:
        elapsed = max(0.0, now - last_refill)
        refill = (elapsed / self.refill_time_window) * self.capacity
        return min(self.capacity, tokens + refill)

    async def _check_rate_limit_redis(self, ip: str) -> Optional[bool]:
        """
        Token bucket stored in Redis.
        Returns True/False, or None when Redis failed and the caller should fall back.
        """
        try:
            key = f"rate_limit:{ip}"
            now = time()

            bucket_data = await self._redis.get(key)
            if bucket_data:
                data = json.loads(bucket_data)
                tokens = float(data.get("tokens", 0))
                last_refill = float(data.get("last_refill", now))
            else:
                # New bucket, start with full capacity
                tokens = float(self.capacity)
                last_refill = now

            tokens = self._refill(tokens, last_refill, now)
            if tokens < 1.0:
                return False

            bucket_data = json.dumps({"tokens": tokens - 1.0, "last_refill": now})
            await self._redis.setex(key, int(self.refill_time_window) + 10, bucket_data)
            return True
        except redis.RedisError as e:
            logger.warning(f"Redis rate limit check failed: {e}. Falling back to in-memory.")
            return None

    def _check_rate_limit_memory(self, ip: str) -> bool:
        now = time()
        tokens, last_refill = self._buckets.get(ip, (float(self.capacity), now))
        tokens = self._refill(tokens, last_refill, now)
        if tokens < 1.0:
            return False

        self._buckets[ip] = (tokens - 1.0, now)
        return True

    async def dispatch(self, request: Request, call_next) -> Response:
        if not self.enabled:
            return await call_next(request)

        ip = self._get_client_ip(request)
        allowed = await self._check_rate_limit_redis(ip) if self._redis else None
        if allowed is None:
            allowed = self._check_rate_limit_memory(ip)

        if not allowed:
            return JSONResponse(
                status_code=429,
                content={
                    "success": False,
                    "data": None,
                    "error": "Too many requests from this IP, please try again later.",
                    "message": "Rate limit exceeded. Try again shortly.",
                },
            )

        return await call_next(request)
