"""
Bastion — GeoIP Lookup.

Provides geographic information for IPs using either:
  - MaxMind GeoLite2 database (if configured via BASTION_GEOIP_DB_PATH)
  - An HTTP geolocation API (ip-api.com compatible), bounded by a short timeout

Any failure yields an "unknown" result; lookups never block a request
for longer than ``geo_timeout_sec``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from ipaddress import ip_address
from typing import Optional

import httpx

from bastion.config import Settings, settings as default_settings

logger = logging.getLogger("bastion.geoip")

UNKNOWN_COUNTRY = "XX"
CACHE_SIZE = 10_000
CACHE_TTL = 3600.0


@dataclass(frozen=True)
class GeoResult:
    """Geographic location result."""
    country_code: str  # ISO 3166-1 alpha-2, "XX" when unknown
    country_name: str
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    asn: Optional[str] = None
    org: Optional[str] = None
    is_proxy: bool = False
    is_hosting: bool = False
    is_private: bool = False

    @property
    def known(self) -> bool:
        return self.country_code != UNKNOWN_COUNTRY

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @classmethod
    def unknown(cls, is_private: bool = False) -> "GeoResult":
        return cls(country_code=UNKNOWN_COUNTRY, country_name="Unknown", is_private=is_private)

    def to_dict(self) -> dict:
        return {
            "country_code": self.country_code,
            "country_name": self.country_name,
            "city": self.city,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "asn": self.asn,
            "org": self.org,
            "is_proxy": self.is_proxy,
            "is_hosting": self.is_hosting,
        }


class GeoLocator:
    """IP to location with a MaxMind reader, an HTTP fallback and a small cache."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config or default_settings
        self._reader = None  # MaxMind database reader (lazy-loaded)
        self._client = client
        self._owns_client = client is None
        self._cache: OrderedDict[str, tuple[float, GeoResult]] = OrderedDict()

    @property
    def has_database(self) -> bool:
        return self._reader is not None

    def init_database(self, db_path: Optional[str] = None) -> bool:
        """
        Open the MaxMind database.
        Returns True if it is available.
        """
        db_path = db_path or self.config.geoip_db_path
        if not db_path:
            logger.info("No GeoIP DB path configured, using HTTP lookups")
            return False
        try:
            import geoip2.database  # type: ignore[import-untyped]
            self._reader = geoip2.database.Reader(db_path)
            logger.info("GeoIP database loaded: %s", db_path)
            return True
        except Exception:
            logger.warning("Failed to load GeoIP database from %s", db_path, exc_info=True)
            return False

    async def lookup(self, ip: str) -> GeoResult:
        """Look up geographic info for an IP address. Never raises."""
        try:
            addr = ip_address(ip)
        except ValueError:
            return GeoResult.unknown()
        if addr.is_private or addr.is_loopback or addr.is_reserved or addr.is_link_local:
            return GeoResult.unknown(is_private=True)

        cached = self._cache.get(ip)
        if cached and time.time() - cached[0] < CACHE_TTL:
            self._cache.move_to_end(ip)
            return cached[1]

        result = GeoResult.unknown()
        if self._reader is not None:
            try:
                result = self._maxmind_lookup(ip)
            except Exception:
                logger.debug("MaxMind lookup failed for %s", ip, exc_info=True)
        elif self.config.geo_api_url:
            try:
                result = await asyncio.wait_for(
                    self._http_lookup(ip), timeout=self.config.geo_timeout_sec,
                )
            except asyncio.TimeoutError:
                logger.debug("Geo lookup timed out for %s", ip)
            except Exception:
                logger.debug("Geo lookup failed for %s", ip, exc_info=True)

        self._remember(ip, result)
        return result

    async def close(self) -> None:
        """Close the database reader and the owned HTTP client."""
        if self._reader is not None:
            try:
                self._reader.close()
            except Exception:
                logger.debug("Error closing GeoIP reader", exc_info=True)
            self._reader = None
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ── Internal ─────────────────────────────────────────

    def _maxmind_lookup(self, ip: str) -> GeoResult:
        """Query MaxMind GeoLite2 database."""
        resp = self._reader.city(ip)  # type: ignore[union-attr]
        traits = resp.traits
        return GeoResult(
            country_code=resp.country.iso_code or UNKNOWN_COUNTRY,
            country_name=resp.country.name or "Unknown",
            city=resp.city.name,
            latitude=resp.location.latitude,
            longitude=resp.location.longitude,
            is_proxy=bool(getattr(traits, "is_anonymous_proxy", False)),
            is_hosting=bool(getattr(traits, "is_hosting_provider", False)),
        )

    async def _http_lookup(self, ip: str) -> GeoResult:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.config.geo_timeout_sec))
        url = self.config.geo_api_url.format(ip=ip)  # type: ignore[union-attr]
        resp = await self._client.get(url)
        resp.raise_for_status()
        data = resp.json()
        if data.get("status") != "success":
            return GeoResult.unknown()
        return GeoResult(
            country_code=data.get("countryCode") or UNKNOWN_COUNTRY,
            country_name=data.get("country") or "Unknown",
            city=data.get("city"),
            latitude=data.get("lat"),
            longitude=data.get("lon"),
            asn=data.get("as"),
            org=data.get("org"),
            is_proxy=bool(data.get("proxy")),
            is_hosting=bool(data.get("hosting")),
        )

    def _remember(self, ip: str, result: GeoResult) -> None:
        self._cache[ip] = (time.time(), result)
        self._cache.move_to_end(ip)
        while len(self._cache) > CACHE_SIZE:
            self._cache.popitem(last=False)
