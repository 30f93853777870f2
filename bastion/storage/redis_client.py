"""
Bastion — Shared Redis Store.

One async connection pool shared by the blocklist and the rate tiers.
Every key lives under the ``bastion:`` namespace so the proxy can share a
Redis database with the platform it protects.

Redis is optional. ``client`` stays None while Redis is unreachable and
callers fail open; the last connection error is kept for /stats.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from bastion.config import Settings, settings as default_settings

logger = logging.getLogger("bastion.storage.redis")

KEY_NAMESPACE = "bastion"


def redact_url(url: str) -> str:
    """Hide the password in a redis:// URL."""
    parts = urlsplit(url)
    if not parts.password:
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    user = parts.username or ""
    return urlunsplit(parts._replace(netloc=f"{user}:***@{host}"))


class RedisStore:
    """Connection pool plus key naming for everything Bastion keeps in Redis."""

    def __init__(self, config: Optional[Settings] = None) -> None:
        self.config = config or default_settings
        self.client: Optional[aioredis.Redis] = None
        self.last_error: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.client is not None

    @staticmethod
    def key(*parts: str) -> str:
        return ":".join((KEY_NAMESPACE, *parts))

    async def connect(self) -> bool:
        """Open the pool. Returns False and records the error if Redis does not answer."""
        url = self.config.redis_url
        client = aioredis.from_url(
            url,
            decode_responses=True,
            max_connections=self.config.redis_max_connections,
            socket_connect_timeout=self.config.redis_timeout_sec,
            socket_timeout=self.config.redis_timeout_sec,
        )
        try:
            await client.ping()
        except (RedisError, OSError) as exc:
            await client.aclose()
            self.last_error = str(exc) or type(exc).__name__
            return False
        self.client = client
        self.last_error = None
        logger.info("Redis connected: %s", redact_url(url))
        return True

    async def disconnect(self) -> None:
        if self.client is None:
            return
        await self.client.aclose()
        self.client = None
        logger.info("Redis disconnected")

    async def health_check(self) -> bool:
        if self.client is None:
            return False
        try:
            await self.client.ping()
        except (RedisError, OSError) as exc:
            self.last_error = str(exc) or type(exc).__name__
            logger.debug("Redis ping failed: %s", exc)
            return False
        return True

    def status(self) -> dict:
        return {
            "connected": self.available,
            "url": redact_url(self.config.redis_url),
            "last_error": self.last_error,
        }
