"""
Bastion — Trusted Source Registry.

Static seed entries (environment dependent) plus runtime additions.
ABSOLUTE matches bypass the whole defense pipeline; lower levels only
adjust reputation and add a TRUST vector.

Match order: among all active, unexpired entries that match, the highest
trust level wins; ties go to the entry registered first.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from ipaddress import ip_address, ip_network
from typing import Optional
from urllib.parse import urlparse

from bastion.config import Environment
from bastion.detection.types import TrustLevel
from bastion.proxy.context import RequestContext

logger = logging.getLogger("bastion.detection.trust")


def _host_matches(url: str, domain: str) -> bool:
    """Hostname of ``url`` is ``domain`` or one of its subdomains."""
    if not url:
        return False
    try:
        host = urlparse(url).hostname
    except ValueError:
        return False
    if not host:
        return False
    domain = domain.lower().strip(".")
    return host == domain or host.endswith("." + domain)


class SourceType(str, Enum):
    IP = "ip"
    IP_RANGE = "ip_range"
    USER_AGENT = "user_agent"
    API_KEY = "api_key"
    DOMAIN = "domain"
    USER_ID = "user_id"


@dataclass
class TrustedSource:
    id: str
    type: SourceType
    value: str
    trust_level: TrustLevel
    name: str = ""
    is_active: bool = True
    expires_at: Optional[float] = None
    created_at: float = field(default_factory=time.time)

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def matches(self, ctx: RequestContext) -> bool:
        if self.type is SourceType.IP:
            return ctx.client_ip == self.value
        if self.type is SourceType.IP_RANGE:
            try:
                return ip_address(ctx.client_ip) in ip_network(self.value, strict=False)
            except ValueError:
                return False
        if self.type is SourceType.USER_AGENT:
            return bool(ctx.user_agent) and self.value.lower() in ctx.user_agent.lower()
        if self.type is SourceType.API_KEY:
            return ctx.api_key is not None and secrets.compare_digest(ctx.api_key, self.value)
        if self.type is SourceType.DOMAIN:
            return any(_host_matches(ctx.headers.get(name, ""), self.value) for name in ("origin", "referer"))
        if self.type is SourceType.USER_ID:
            return ctx.user_id == self.value
        return False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "value": self.value,
            "trust_level": self.trust_level.value,
            "name": self.name,
            "is_active": self.is_active,
            "expires_at": self.expires_at,
        }


@dataclass(frozen=True)
class TrustCheck:
    is_trusted: bool
    trust_level: Optional[TrustLevel] = None
    source: Optional[TrustedSource] = None

    @property
    def reason(self) -> str:
        if not self.source:
            return ""
        return f"{self.source.name or self.source.type.value} ({self.trust_level.value})"  # type: ignore[union-attr]


NOT_TRUSTED = TrustCheck(is_trusted=False)


# ── Seed entries ─────────────────────────────────────────

_COMMON_SEEDS = [
    (SourceType.USER_AGENT, "PostmanRuntime", TrustLevel.LOW, "Postman API client"),
    (SourceType.USER_AGENT, "insomnia", TrustLevel.LOW, "Insomnia API client"),
]

_ENVIRONMENT_SEEDS = {
    Environment.DEVELOPMENT: [
        (SourceType.IP, "127.0.0.1", TrustLevel.HIGH, "Localhost"),
        (SourceType.IP, "::1", TrustLevel.HIGH, "Localhost IPv6"),
        (SourceType.DOMAIN, "localhost", TrustLevel.ABSOLUTE, "Local development origin"),
        (SourceType.IP_RANGE, "192.168.0.0/16", TrustLevel.MEDIUM, "Local network"),
        (SourceType.IP_RANGE, "10.0.0.0/8", TrustLevel.MEDIUM, "Private network"),
    ],
    Environment.PRODUCTION: [
        (SourceType.IP, "52.89.214.238", TrustLevel.HIGH, "Uptime monitoring"),
        (SourceType.IP_RANGE, "173.245.48.0/20", TrustLevel.MEDIUM, "CDN edge range"),
    ],
}


class TrustRegistry:
    """Registry of always-trusted sources."""

    def __init__(self) -> None:
        self._sources: list[TrustedSource] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._sources)

    def seed(self, environment: Environment) -> int:
        """Register the built-in entries for an environment. Returns count added."""
        entries = _COMMON_SEEDS + _ENVIRONMENT_SEEDS.get(environment, [])
        for source_type, value, level, name in entries:
            self.add(source_type, value, level, name=name)
        logger.info("Seeded %d trusted source(s) for %s", len(entries), environment.value)
        return len(entries)

    def add(
        self,
        source_type: SourceType,
        value: str,
        trust_level: TrustLevel,
        name: str = "",
        ttl_sec: Optional[float] = None,
    ) -> TrustedSource:
        if source_type is SourceType.IP_RANGE:
            ip_network(value, strict=False)  # raises ValueError on malformed CIDR
        source = TrustedSource(
            id=f"trust_{int(time.time())}_{secrets.token_hex(4)}",
            type=source_type,
            value=value,
            trust_level=trust_level,
            name=name,
            expires_at=time.time() + ttl_sec if ttl_sec else None,
        )
        with self._lock:
            self._sources.append(source)
        logger.info("Trusted source added: %s %s (%s)", source_type.value, value, trust_level.value)
        return source

    def remove(self, source_id: str) -> bool:
        with self._lock:
            before = len(self._sources)
            self._sources = [s for s in self._sources if s.id != source_id]
            return len(self._sources) < before

    def deactivate(self, source_id: str) -> bool:
        with self._lock:
            for source in self._sources:
                if source.id == source_id:
                    source.is_active = False
                    return True
        return False

    def sources(self) -> list[TrustedSource]:
        with self._lock:
            return list(self._sources)

    def is_trusted(self, ctx: RequestContext, now: Optional[float] = None) -> TrustCheck:
        now = time.time() if now is None else now
        best: Optional[TrustedSource] = None
        for source in self.sources():
            if not source.is_active or source.expired(now):
                continue
            if not source.matches(ctx):
                continue
            if best is None or source.trust_level.priority > best.trust_level.priority:
                best = source
                if best.trust_level is TrustLevel.ABSOLUTE:
                    break
        if best is None:
            return NOT_TRUSTED
        return TrustCheck(is_trusted=True, trust_level=best.trust_level, source=best)

    def cleanup(self, now: Optional[float] = None) -> int:
        """Drop expired entries. Returns the number removed."""
        now = time.time() if now is None else now
        with self._lock:
            before = len(self._sources)
            self._sources = [s for s in self._sources if not s.expired(now)]
            removed = before - len(self._sources)
        if removed:
            logger.info("Removed %d expired trusted source(s)", removed)
        return removed
