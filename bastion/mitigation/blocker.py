"""
Bastion — IP Blocklist.

Neutralized clients are kept on a Redis blocklist: temporary entries as
``bastion:block:<ip>`` keys with a TTL and the block reason as value,
permanent ones in the ``bastion:blocklist`` set. Without Redis nothing
is blocked here; the reputation store still remembers the client's threat.
"""

from __future__ import annotations

import logging
from typing import Optional

from bastion.storage.redis_client import RedisStore

logger = logging.getLogger("bastion.mitigation.blocker")


class IPBlocker:
    """Manages IP blocking via Redis."""

    def __init__(self, redis: RedisStore) -> None:
        self.redis = redis
        self.blocklist_key = redis.key("blocklist")

    def _entry_key(self, ip: str) -> str:
        return self.redis.key("block", ip)

    async def is_blocked(self, ip: str) -> bool:
        """Check if IP is currently blocked."""
        client = self.redis.client
        if client is None:
            return False
        if await client.exists(self._entry_key(ip)):
            return True
        return bool(await client.sismember(self.blocklist_key, ip))

    async def block_reason(self, ip: str) -> Optional[str]:
        client = self.redis.client
        if client is None:
            return None
        return await client.get(self._entry_key(ip))

    async def block(
        self,
        ip: str,
        reason: str = "",
        duration_sec: Optional[int] = None,
    ) -> None:
        """Block an IP address, optionally with TTL."""
        client = self.redis.client
        if client is None:
            return

        if duration_sec:
            await client.set(self._entry_key(ip), reason, ex=duration_sec)
            logger.info("Blocked %s for %ds, reason: %s", ip, duration_sec, reason)
        else:
            await client.sadd(self.blocklist_key, ip)
            logger.info("Permanently blocked %s, reason: %s", ip, reason)

    async def unblock(self, ip: str) -> None:
        """Remove IP from all blocklists."""
        client = self.redis.client
        if client is None:
            return
        await client.delete(self._entry_key(ip))
        await client.srem(self.blocklist_key, ip)
        logger.info("Unblocked %s", ip)

    async def get_blocked_ips(self) -> list[str]:
        """Return all permanently blocked IPs."""
        client = self.redis.client
        if client is None:
            return []
        members = await client.smembers(self.blocklist_key)
        return sorted(m.decode() if isinstance(m, bytes) else m for m in members)
