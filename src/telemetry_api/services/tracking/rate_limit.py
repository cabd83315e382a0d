"""Per-session fixed-window request limiting backed by Redis counters."""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger
from redis.asyncio import Redis
from redis.exceptions import RedisError

from telemetry_api.core.settings import settings


@dataclass
class RateLimitDecision:
    allowed: bool
    count: int
    retry_after_seconds: int | None = None


class SessionRateLimiter:
    """Counts requests per session id within a fixed window."""

    def __init__(
        self,
        redis_client: Redis | None = None,
        *,
        max_requests: int | None = None,
        window_seconds: int | None = None,
    ) -> None:
        self._redis = redis_client or Redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        self._max_requests = max_requests or settings.rate_limit_requests
        self._window_seconds = window_seconds or settings.rate_limit_window_seconds
        self._logger = logger.bind(component="rate_limiter")

    @staticmethod
    def _key(session_id: str) -> str:
        return f"ratelimit:session:{session_id}"

    async def hit(self, session_id: str) -> RateLimitDecision:
        """Record one request and report whether it fits the budget.

        Redis outages fail open: the request is allowed and the error logged.
        """

        key = self._key(session_id)
        try:
            count = await self._redis.incr(key)
            if count == 1:
                await self._redis.expire(key, self._window_seconds)
            if count <= self._max_requests:
                return RateLimitDecision(allowed=True, count=count)
            ttl = await self._redis.ttl(key)
        except RedisError as exc:
            self._logger.warning("Rate limiter unavailable; allowing request", session_id=session_id, error=str(exc))
            return RateLimitDecision(allowed=True, count=0)

        retry_after = ttl if ttl and ttl > 0 else self._window_seconds
        return RateLimitDecision(allowed=False, count=count, retry_after_seconds=retry_after)

    async def reset(self, session_id: str) -> None:
        await self._redis.delete(self._key(session_id))


__all__ = ["RateLimitDecision", "SessionRateLimiter"]
