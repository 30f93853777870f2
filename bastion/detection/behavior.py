"""
Bastion — Behavioral Profiler.

Builds a per-identity profile of how a client normally behaves and flags
deviations from it:
  • Unusual hour of activity / first visit to a path
  • New country, impossible travel between geo-tagged requests
  • Velocity spikes, new device fingerprints
  • Brute-force streaks on auth paths, long-term path drift

Each identity starts in a learning phase during which the profile only
accumulates; anomaly checks run once it is active.
"""

from __future__ import annotations

import logging
import math
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Iterable, Optional

from bastion.config import Settings, settings as default_settings
from bastion.detection.features import IdentityHistory
from bastion.detection.types import Severity
from bastion.proxy.context import RequestContext
from bastion.storage.reputation import ClientReputation
from bastion.storage.sharded import ShardedMap

logger = logging.getLogger("bastion.detection.behavior")

HOUR = 3600.0
DAY = 86400.0

# Profile size bounds
MAX_PATHS = 1000
MAX_COUNTRIES = 50
MAX_DEVICES = 20
MAX_RECENT = 1000
DRIFT_DAYS_KEPT = 30

VELOCITY_WINDOW = 60.0
UNUSUAL_TIME_MIN_SAMPLES = 50
UNUSUAL_TIME_SHARE = 0.02
UNUSUAL_PATH_MIN_REQUESTS = 20
GEO_MIN_SAMPLES = 5
TRAVEL_WINDOW = 24 * HOUR
DRIFT_OBSERVATION = 14 * DAY
DRIFT_MIN_NEW_PATHS = 20
DRIFT_FACTOR = 5.0
EARTH_RADIUS_KM = 6371.0


class AnomalyType(str, Enum):
    UNUSUAL_TIME = "UNUSUAL_TIME"
    UNUSUAL_PATH = "UNUSUAL_PATH"
    GEOGRAPHIC = "GEOGRAPHIC"
    VELOCITY = "VELOCITY"
    DEVICE_CHANGE = "DEVICE_CHANGE"
    IMPOSSIBLE_TRAVEL = "IMPOSSIBLE_TRAVEL"
    BRUTE_FORCE = "BRUTE_FORCE"
    BEHAVIORAL_DRIFT = "BEHAVIORAL_DRIFT"


class ProfilePhase(str, Enum):
    LEARNING = "LEARNING"
    ACTIVE = "ACTIVE"


@dataclass(frozen=True)
class BehaviorAnomaly:
    type: AnomalyType
    severity: Severity
    confidence: float
    detail: str = ""

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "confidence": self.confidence,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float
    timestamp: float
    country_code: str = ""


@dataclass
class BehaviorProfile:
    """Accumulated, bounded behavior signals for one identity."""
    identity: str
    first_seen: float
    last_seen: float = 0.0
    request_count: int = 0
    path_counts: dict[str, int] = field(default_factory=dict)
    hour_counts: list[int] = field(default_factory=lambda: [0] * 24)
    country_counts: dict[str, int] = field(default_factory=dict)
    recent_requests: Deque[float] = field(default_factory=lambda: deque(maxlen=MAX_RECENT))
    devices: "OrderedDict[str, float]" = field(default_factory=OrderedDict)
    last_geo: Optional[GeoPoint] = None
    failed_auth_streak: int = 0
    day_index: int = -1
    new_paths_today: int = 0
    daily_new_paths: Deque[int] = field(default_factory=lambda: deque(maxlen=DRIFT_DAYS_KEPT))
    risk_score: float = 0.0

    def phase(self, now: float, learning_period: float) -> ProfilePhase:
        if now - self.first_seen < learning_period:
            return ProfilePhase.LEARNING
        return ProfilePhase.ACTIVE

    def requests_since(self, cutoff: float) -> int:
        return sum(1 for ts in self.recent_requests if ts > cutoff)

    def mean_interval(self) -> float:
        if len(self.recent_requests) < 2:
            return 0.0
        span = self.recent_requests[-1] - self.recent_requests[0]
        return span / (len(self.recent_requests) - 1)

    def new_paths_on(self, day: int) -> int:
        return self.new_paths_today if day == self.day_index else 0

    def to_dict(self, now: float, learning_period: float) -> dict:
        return {
            "identity": self.identity,
            "phase": self.phase(now, learning_period).value,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "request_count": self.request_count,
            "unique_paths": len(self.path_counts),
            "countries": dict(self.country_counts),
            "devices": len(self.devices),
            "failed_auth_streak": self.failed_auth_streak,
            "risk_score": round(self.risk_score, 2),
        }


@dataclass(frozen=True)
class ProfileAnalysis:
    """Result of analyzing one request against the identity's profile."""
    phase: ProfilePhase
    anomalies: tuple[BehaviorAnomaly, ...] = ()
    risk_score: float = 0.0
    requests_last_minute: int = 1
    failed_auth_streak: int = 0

    def has(self, anomaly_type: AnomalyType) -> bool:
        return any(a.type is anomaly_type for a in self.anomalies)

    @property
    def max_confidence(self) -> float:
        return max((a.confidence for a in self.anomalies), default=0.0)


def risk_score(anomalies: Iterable[BehaviorAnomaly]) -> float:
    """Σ(confidence × severity weight), normalized to [0, 100]."""
    total = sum(a.confidence / 100.0 * a.severity.weight for a in anomalies)
    return min(100.0, total / Severity.CRITICAL.weight * 100.0)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two coordinates."""
    p1, p2 = math.radians(lat1), math.radians(lat2)
    dp = p2 - p1
    dl = math.radians(lon2 - lon1)
    a = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


class BehavioralProfiler:
    """
    Per-identity profiles in a sharded map.

    ``analyze`` is read-only; ``record`` commits the request once a decision
    has been made, so aborted requests never reach the profile.
    """

    def __init__(self, config: Optional[Settings] = None, shards: int = 64) -> None:
        self.config = config or default_settings
        self._profiles: ShardedMap[BehaviorProfile] = ShardedMap(shards)

    def __len__(self) -> int:
        return len(self._profiles)

    @property
    def learning_period(self) -> float:
        return self.config.learning_period_hours * HOUR

    def _is_sensitive(self, path: str) -> bool:
        return any(path.startswith(p) for p in self.config.sensitive_paths)

    def _is_auth(self, path: str) -> bool:
        return any(path.startswith(p) for p in self.config.auth_paths)

    # ── Reads ────────────────────────────────────────────

    def history(
        self,
        key: str,
        now: Optional[float] = None,
        reputation: Optional[ClientReputation] = None,
    ) -> IdentityHistory:
        """Read-only snapshot handed to the feature extractor."""
        now = time.time() if now is None else now

        def snap(p: BehaviorProfile) -> dict:
            return {
                "requests_last_minute": p.requests_since(now - VELOCITY_WINDOW),
                "requests_last_hour": p.requests_since(now - HOUR),
                "unique_paths": len(p.path_counts),
                "distinct_devices": len(p.devices),
                "failed_auth_streak": p.failed_auth_streak,
                "mean_interval": p.mean_interval(),
                "known_countries": frozenset(p.country_counts),
            }

        values = self._profiles.read(key, snap, {})
        if reputation is not None:
            values.update(
                trust=reputation.trust,
                threat=reputation.threat,
                session_count=reputation.session_count,
                block_count=reputation.block_count,
                history_score=reputation.history_score,
            )
        return IdentityHistory(**values)

    def describe(self, key: str, now: Optional[float] = None) -> Optional[dict]:
        now = time.time() if now is None else now
        return self._profiles.read(key, lambda p: p.to_dict(now, self.learning_period), None)

    def analyze(self, ctx: RequestContext, now: Optional[float] = None) -> ProfileAnalysis:
        """Check the request against its identity's profile. Does not mutate."""
        now = ctx.timestamp if now is None else now
        learning = ProfileAnalysis(phase=ProfilePhase.LEARNING)
        return self._profiles.read(ctx.profile_key, lambda p: self._analyze(p, ctx, now), learning)

    def _analyze(self, p: BehaviorProfile, ctx: RequestContext, now: float) -> ProfileAnalysis:
        # Live counters are reported in both phases; anomalies only when active
        rpm = p.requests_since(now - VELOCITY_WINDOW) + 1
        phase = p.phase(now, self.learning_period)
        if phase is ProfilePhase.LEARNING:
            return ProfileAnalysis(
                phase=phase, requests_last_minute=rpm, failed_auth_streak=p.failed_auth_streak,
            )

        checks = (
            self._check_time(p, now),
            self._check_path(p, ctx),
            self._check_geography(p, ctx),
            self._check_velocity(rpm),
            self._check_device(p, ctx),
            self._check_travel(p, ctx, now),
            self._check_brute_force(p, ctx),
            self._check_drift(p, now),
        )
        anomalies = tuple(a for a in checks if a is not None)
        if anomalies:
            logger.debug(
                "Anomalies for %s: %s", p.identity, ", ".join(a.type.value for a in anomalies),
            )
        return ProfileAnalysis(
            phase=phase,
            anomalies=anomalies,
            risk_score=risk_score(anomalies),
            requests_last_minute=rpm,
            failed_auth_streak=p.failed_auth_streak,
        )

    # ── Anomaly checks ───────────────────────────────────

    def _check_time(self, p: BehaviorProfile, now: float) -> Optional[BehaviorAnomaly]:
        total = sum(p.hour_counts)
        if total < UNUSUAL_TIME_MIN_SAMPLES:
            return None
        hour = time.gmtime(now).tm_hour
        share = p.hour_counts[hour] / total
        if share >= UNUSUAL_TIME_SHARE:
            return None
        return BehaviorAnomaly(
            AnomalyType.UNUSUAL_TIME, Severity.LOW, 50.0,
            f"hour {hour:02d} is {share:.1%} of activity",
        )

    def _check_path(self, p: BehaviorProfile, ctx: RequestContext) -> Optional[BehaviorAnomaly]:
        if p.request_count < UNUSUAL_PATH_MIN_REQUESTS or ctx.path in p.path_counts:
            return None
        if self._is_sensitive(ctx.path):
            return BehaviorAnomaly(
                AnomalyType.UNUSUAL_PATH, Severity.HIGH, 70.0, f"first access to sensitive {ctx.path}",
            )
        return BehaviorAnomaly(AnomalyType.UNUSUAL_PATH, Severity.LOW, 40.0, f"first access to {ctx.path}")

    def _check_geography(self, p: BehaviorProfile, ctx: RequestContext) -> Optional[BehaviorAnomaly]:
        geo = ctx.geo
        if geo is None or not geo.known:
            return None
        if sum(p.country_counts.values()) < GEO_MIN_SAMPLES or geo.country_code in p.country_counts:
            return None
        return BehaviorAnomaly(
            AnomalyType.GEOGRAPHIC, Severity.MEDIUM, 75.0, f"new country {geo.country_code}",
        )

    def _check_velocity(self, rpm: int) -> Optional[BehaviorAnomaly]:
        cap = self.config.velocity_cap
        if rpm <= cap:
            return None
        if rpm > 2 * cap:
            return BehaviorAnomaly(AnomalyType.VELOCITY, Severity.CRITICAL, 95.0, f"{rpm} requests/min")
        return BehaviorAnomaly(AnomalyType.VELOCITY, Severity.HIGH, 85.0, f"{rpm} requests/min")

    def _check_device(self, p: BehaviorProfile, ctx: RequestContext) -> Optional[BehaviorAnomaly]:
        fingerprint = ctx.fingerprint
        if not p.devices or fingerprint in p.devices:
            return None
        distinct = len(p.devices) + 1
        if distinct >= 4:
            severity = Severity.HIGH
        elif distinct >= 3:
            severity = Severity.MEDIUM
        else:
            severity = Severity.LOW
        return BehaviorAnomaly(
            AnomalyType.DEVICE_CHANGE, severity, 60.0, f"new device, {distinct} seen",
        )

    def _check_travel(self, p: BehaviorProfile, ctx: RequestContext, now: float) -> Optional[BehaviorAnomaly]:
        geo = ctx.geo
        last = p.last_geo
        if geo is None or not geo.has_coordinates or last is None:
            return None
        elapsed = now - last.timestamp
        if elapsed < 0 or elapsed > TRAVEL_WINDOW:
            return None
        distance = haversine_km(last.latitude, last.longitude, geo.latitude, geo.longitude)  # type: ignore[arg-type]
        speed = distance / max(elapsed, 1.0) * HOUR
        if speed <= self.config.impossible_travel_kmh:
            return None
        return BehaviorAnomaly(
            AnomalyType.IMPOSSIBLE_TRAVEL, Severity.CRITICAL, 90.0,
            f"{distance:.0f} km in {elapsed / 60:.1f} min ({speed:.0f} km/h)",
        )

    def _check_brute_force(self, p: BehaviorProfile, ctx: RequestContext) -> Optional[BehaviorAnomaly]:
        threshold = self.config.brute_force_threshold
        streak = p.failed_auth_streak
        if streak < threshold or not self._is_auth(ctx.path):
            return None
        if streak >= 2 * threshold:
            severity = Severity.CRITICAL
        elif streak * 2 >= 3 * threshold:
            severity = Severity.HIGH
        else:
            severity = Severity.MEDIUM
        return BehaviorAnomaly(
            AnomalyType.BRUTE_FORCE, severity, min(95.0, 60.0 + 5.0 * streak),
            f"{streak} consecutive failed logins",
        )

    def _check_drift(self, p: BehaviorProfile, now: float) -> Optional[BehaviorAnomaly]:
        if now - p.first_seen < DRIFT_OBSERVATION or not p.daily_new_paths:
            return None
        baseline = sum(p.daily_new_paths) / len(p.daily_new_paths)
        today = p.new_paths_on(int(now // DAY))
        if today <= max(DRIFT_MIN_NEW_PATHS, DRIFT_FACTOR * baseline):
            return None
        return BehaviorAnomaly(
            AnomalyType.BEHAVIORAL_DRIFT, Severity.MEDIUM, 60.0,
            f"{today} new paths today vs baseline {baseline:.1f}",
        )

    # ── Writes ───────────────────────────────────────────

    def record(self, ctx: RequestContext, now: Optional[float] = None, risk: float = 0.0) -> None:
        """Fold a committed request into its identity's profile."""
        now = ctx.timestamp if now is None else now
        key = ctx.profile_key

        with self._profiles.locked(key, lambda: BehaviorProfile(identity=key, first_seen=now)) as p:
            p.last_seen = now
            p.request_count += 1
            p.recent_requests.append(now)
            p.hour_counts[time.gmtime(now).tm_hour] += 1
            p.risk_score = risk

            day = int(now // DAY)
            if day != p.day_index:
                if p.day_index >= 0:
                    p.daily_new_paths.append(p.new_paths_today)
                p.day_index = day
                p.new_paths_today = 0

            if ctx.path in p.path_counts:
                p.path_counts[ctx.path] += 1
            else:
                if len(p.path_counts) >= MAX_PATHS:
                    rarest = min(p.path_counts, key=p.path_counts.__getitem__)
                    del p.path_counts[rarest]
                p.path_counts[ctx.path] = 1
                p.new_paths_today += 1

            fingerprint = ctx.fingerprint
            p.devices[fingerprint] = now
            p.devices.move_to_end(fingerprint)
            while len(p.devices) > MAX_DEVICES:
                p.devices.popitem(last=False)

            geo = ctx.geo
            if geo is not None and geo.known:
                if geo.country_code in p.country_counts or len(p.country_counts) < MAX_COUNTRIES:
                    p.country_counts[geo.country_code] = p.country_counts.get(geo.country_code, 0) + 1
                if geo.has_coordinates:
                    p.last_geo = GeoPoint(geo.latitude, geo.longitude, now, geo.country_code)  # type: ignore[arg-type]

    def record_auth_result(self, key: str, path: str, status_code: int, now: Optional[float] = None) -> None:
        """Track failed logins from the upstream status: 401/403 count, 2xx resets."""
        if not self._is_auth(path):
            return
        now = time.time() if now is None else now
        with self._profiles.locked(key, lambda: BehaviorProfile(identity=key, first_seen=now)) as p:
            if status_code in (401, 403):
                p.failed_auth_streak += 1
                if p.failed_auth_streak == self.config.brute_force_threshold:
                    logger.warning("Failed-login streak reached %d for %s", p.failed_auth_streak, key)
            elif 200 <= status_code < 300:
                p.failed_auth_streak = 0

    # ── Maintenance ──────────────────────────────────────

    def evict(self, now: Optional[float] = None) -> int:
        """Drop profiles inactive for longer than the profile TTL."""
        now = time.time() if now is None else now
        cutoff = now - self.config.profile_ttl_hours * HOUR
        evicted = self._profiles.sweep(lambda _, p: p.last_seen < cutoff)
        if evicted:
            logger.debug("Evicted %d inactive profile(s)", evicted)
        return evicted

    def clear(self) -> None:
        self._profiles.clear()
