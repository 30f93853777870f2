"""
Bastion — YAML Policy Engine.

Loads per-path policy from YAML files:
  • rate-limit tiers ("5/minute" plus an optional burst allowance)
  • cache policy (TTL per path, never-cache patterns)
  • geo allow / block lists and VPN allowance per path class

Path patterns are exact ("/about") or prefix ("/api/*"); for tiers and
cache rules the longest matching pattern wins. A built-in default policy
applies when no file provides a section.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from bastion.config import settings
from bastion.geoip.lookup import GeoResult

logger = logging.getLogger("bastion.rules")

UNIT_SECONDS = {"second": 1, "minute": 60, "hour": 3600, "day": 86400}


def parse_rate_string(rate_str: str) -> tuple[int, int]:
    """Parse a rate string like '5/minute' or '100/15minute' into (count, window_seconds)."""
    parts = rate_str.split("/")
    count = int(parts[0])
    unit = parts[1].strip().lower() if len(parts) > 1 else "minute"
    m = re.fullmatch(r"(\d*)\s*([a-z]+?)s?", unit)
    if not m or m.group(2) not in UNIT_SECONDS:
        raise ValueError(f"unknown rate unit in {rate_str!r}")
    multiple = int(m.group(1)) if m.group(1) else 1
    return count, multiple * UNIT_SECONDS[m.group(2)]


def path_matches(request_path: str, pattern: str) -> bool:
    """Simple prefix / exact path matching."""
    if pattern.endswith("*"):
        return request_path.startswith(pattern[:-1])
    return request_path == pattern


def _specificity(pattern: str) -> int:
    return len(pattern.rstrip("*"))


@dataclass
class RateTier:
    """Sliding-window limit for a path pattern."""
    name: str
    match_path: str = "/*"
    match_method: Optional[str] = None
    limit: int = 100
    window_sec: int = 900
    burst: int = 0
    enabled: bool = True

    @property
    def ceiling(self) -> int:
        return self.limit + self.burst

    def matches(self, path: str, method: str) -> bool:
        if not self.enabled or not path_matches(path, self.match_path):
            return False
        return self.match_method is None or self.match_method.upper() == method.upper()


@dataclass
class CacheRule:
    match_path: str
    ttl_sec: int
    visibility: str = "public"


@dataclass
class CachePolicy:
    rules: list[CacheRule] = field(default_factory=list)
    never_cache: list[str] = field(default_factory=list)

    def header_for(self, path: str, method: str) -> str:
        """Cache-Control value for a response to this request."""
        if method.upper() not in ("GET", "HEAD"):
            return "no-store"
        if any(re.search(p, path) for p in self.never_cache):
            return "no-store, private"
        matching = [r for r in self.rules if path_matches(path, r.match_path)]
        if not matching:
            return "no-cache"
        rule = max(matching, key=lambda r: _specificity(r.match_path))
        return f"{rule.visibility}, max-age={rule.ttl_sec}"


@dataclass
class GeoClass:
    """Geo restrictions for a class of paths."""
    name: str
    paths: list[str] = field(default_factory=list)
    allow: list[str] = field(default_factory=list)    # empty = allow all
    block: list[str] = field(default_factory=list)
    allow_vpn: bool = True

    def matches(self, path: str) -> bool:
        return any(path_matches(path, p) for p in self.paths)


@dataclass(frozen=True)
class GeoVerdict:
    path_class: str
    blocked: bool = False
    proxy_denied: bool = False
    reason: str = ""


DEFAULT_TIERS = [
    RateTier(name="signin", match_path="/auth/signin*", limit=5, window_sec=900, burst=2),
    RateTier(name="signup", match_path="/auth/signup*", limit=3, window_sec=3600, burst=1),
    RateTier(name="api", match_path="/api/v1*", limit=1000, window_sec=3600, burst=100),
    RateTier(name="global", match_path="/*", limit=100, window_sec=900, burst=20),
]

DEFAULT_CACHE = CachePolicy(
    rules=[
        CacheRule(match_path="/", ttl_sec=900),
        CacheRule(match_path="/about", ttl_sec=1800),
        CacheRule(match_path="/api/v1/public*", ttl_sec=600),
        CacheRule(match_path="/api/v1/news/public*", ttl_sec=300),
        CacheRule(match_path="/static/*", ttl_sec=86400),
    ],
    never_cache=[r"^/api/auth", r"^/auth", r"^/dashboard", r"^/admin", r"^/api.*private"],
)

DEFAULT_GEO = [
    GeoClass(
        name="api",
        paths=["/api/v1*"],
        allow=["US", "CA", "GB", "AU", "DE", "FR", "NL", "NG"],
        block=["CN", "RU", "KP", "IR", "SY"],
        allow_vpn=False,
    ),
    GeoClass(name="admin", paths=["/admin*", "/api/admin*"], block=["CN", "RU", "KP"], allow_vpn=False),
    GeoClass(name="default", paths=["/*"], block=["CN", "RU", "KP"], allow_vpn=True),
]


class PolicyEngine:
    """Loads and evaluates YAML-defined per-path policy."""

    def __init__(self) -> None:
        self._tiers: list[RateTier] = []
        self._cache_rules: list[CacheRule] = []
        self._never_cache: list[str] = []
        self._geo: list[GeoClass] = []

    @property
    def tiers(self) -> list[RateTier]:
        return list(self._tiers or DEFAULT_TIERS)

    @property
    def cache(self) -> CachePolicy:
        if not self._cache_rules and not self._never_cache:
            return DEFAULT_CACHE
        return CachePolicy(rules=list(self._cache_rules), never_cache=list(self._never_cache))

    @property
    def geo_classes(self) -> list[GeoClass]:
        return list(self._geo or DEFAULT_GEO)

    def load_from_directory(self, rules_dir: Optional[str] = None) -> int:
        """Load all YAML files from the rules directory. Returns count loaded."""
        directory = Path(rules_dir or settings.rules_dir)
        if not directory.exists():
            logger.warning("Policy directory not found: %s, using built-in defaults", directory)
            return 0

        loaded = 0
        for path in sorted([*directory.glob("*.yml"), *directory.glob("*.yaml")]):
            try:
                self._load_file(path)
                loaded += 1
            except Exception:
                logger.exception("Failed to load policy file: %s", path)

        logger.info(
            "Loaded %d policy file(s) from %s: %d tier(s), %d cache rule(s), %d geo class(es)",
            loaded, directory, len(self._tiers), len(self._cache_rules), len(self._geo),
        )
        return loaded

    # ── Evaluation ───────────────────────────────────────

    def tier_for(self, path: str, method: str = "GET") -> Optional[RateTier]:
        """Most specific tier matching the request."""
        matching = [t for t in self.tiers if t.matches(path, method)]
        if not matching:
            return None
        return max(matching, key=lambda t: (_specificity(t.match_path), t.match_method is not None))

    def cache_header(self, path: str, method: str = "GET") -> str:
        return self.cache.header_for(path, method)

    def geo_class_for(self, path: str) -> Optional[GeoClass]:
        """First geo class (file order) whose paths match."""
        for geo_class in self.geo_classes:
            if geo_class.matches(path):
                return geo_class
        return None

    def check_geo(self, path: str, geo: Optional[GeoResult]) -> GeoVerdict:
        geo_class = self.geo_class_for(path)
        if geo_class is None:
            return GeoVerdict(path_class="none")
        if geo is None or not geo.known:
            # Unknown location is allowed; lookups fail open
            return GeoVerdict(path_class=geo_class.name)

        code = geo.country_code
        if geo_class.allow and code not in geo_class.allow:
            return GeoVerdict(geo_class.name, blocked=True, reason=f"country {code} not allowed for {geo_class.name}")
        if code in geo_class.block:
            return GeoVerdict(geo_class.name, blocked=True, reason=f"country {code} blocked for {geo_class.name}")
        if (geo.is_proxy or geo.is_hosting) and not geo_class.allow_vpn:
            return GeoVerdict(geo_class.name, proxy_denied=True, reason=f"VPN/proxy not allowed for {geo_class.name}")
        return GeoVerdict(path_class=geo_class.name)

    # ── Internal ─────────────────────────────────────────

    def _load_file(self, path: Path) -> None:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if not data:
            return

        for raw in data.get("tiers", []):
            tier = self._parse_tier(raw)
            self._tiers.append(tier)
            logger.debug("Loaded rate tier: %s", tier.name)

        cache = data.get("cache") or {}
        self._never_cache.extend(cache.get("never", []))
        for raw in cache.get("rules", []):
            self._cache_rules.append(CacheRule(
                match_path=raw["match"],
                ttl_sec=int(raw.get("ttl", 300)),
                visibility=raw.get("visibility", "public"),
            ))

        for raw in (data.get("geo") or {}).get("classes", []):
            self._geo.append(GeoClass(
                name=raw.get("name", "unnamed"),
                paths=list(raw.get("paths", [])),
                allow=[c.upper() for c in raw.get("allow", [])],
                block=[c.upper() for c in raw.get("block", [])],
                allow_vpn=bool(raw.get("allow_vpn", True)),
            ))

    @staticmethod
    def _parse_tier(raw: dict[str, Any]) -> RateTier:
        match = raw.get("match", {})
        limit, window = parse_rate_string(raw.get("limit", "100/15minute"))
        return RateTier(
            name=raw.get("name", "unnamed"),
            match_path=match.get("path", "/*"),
            match_method=match.get("method"),
            limit=limit,
            window_sec=window,
            burst=int(raw.get("burst", 0)),
            enabled=raw.get("enabled", True),
        )
