"""
Bastion — Redis-backed Rate Limiter.

Sliding-window limiter using Redis sorted sets, one window per
(policy tier, client) pair. Without Redis every request is allowed.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Optional

from bastion.rules.engine import RateTier
from bastion.storage.redis_client import RedisStore

logger = logging.getLogger("bastion.mitigation.rate_limiter")


@dataclass(frozen=True)
class RateLimitStatus:
    allowed: bool
    limit: int
    remaining: int
    reset: int              # epoch seconds when the oldest counted request leaves the window
    tier: Optional[str] = None

    @property
    def retry_after(self) -> int:
        return max(1, self.reset - int(time.time()))

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset),
        }


class RateLimiter:
    """
    Sliding-window rate limiter.

    Uses Redis sorted sets keyed on tier and client, with timestamps as
    scores. A tier admits ``limit + burst`` requests per window.
    """

    def __init__(self, redis: RedisStore) -> None:
        self.redis = redis

    def _key(self, client_ip: str, tier: RateTier) -> str:
        return self.redis.key("rl", tier.name, client_ip)

    async def check(self, client_ip: str, tier: RateTier, now: Optional[float] = None) -> RateLimitStatus:
        """Count this request against the tier and report the window state."""
        now = time.time() if now is None else now
        client = self.redis.client
        if client is None:
            # No Redis → fail-open
            return RateLimitStatus(
                allowed=True, limit=tier.limit, remaining=tier.ceiling,
                reset=int(now + tier.window_sec), tier=tier.name,
            )

        window_start = now - tier.window_sec
        # Unique member per request so zadd doesn't deduplicate
        member = f"{now}:{uuid.uuid4().hex[:8]}"
        key = self._key(client_ip, tier)

        pipe = client.pipeline()
        pipe.zremrangebyscore(key, "-inf", window_start)
        pipe.zadd(key, {member: now})
        pipe.zcard(key)
        pipe.zrange(key, 0, 0, withscores=True)
        pipe.expire(key, tier.window_sec + 10)
        results = await pipe.execute()

        count = int(results[2])
        oldest = results[3][0][1] if results[3] else now
        status = RateLimitStatus(
            allowed=count <= tier.ceiling,
            limit=tier.limit,
            remaining=max(0, tier.ceiling - count),
            reset=int(oldest + tier.window_sec),
            tier=tier.name,
        )
        if not status.allowed:
            logger.info("Rate tier %s exceeded by %s (%d/%d)", tier.name, client_ip, count, tier.ceiling)
        return status

    async def reset(self, client_ip: str, tier: RateTier) -> None:
        client = self.redis.client
        if client is None:
            return
        await client.delete(self._key(client_ip, tier))
