"""
Tests for the behavioral profiler.
"""

import pytest

from bastion.detection.behavior import (
    AnomalyType,
    BehaviorAnomaly,
    BehavioralProfiler,
    ProfilePhase,
    haversine_km,
    risk_score,
)
from bastion.detection.types import Action, Severity
from bastion.geoip.lookup import GeoResult
from bastion.storage.reputation import ReputationStore

HOUR = 3600.0
DAY = 86400.0
# 2023-11-15 00:00 UTC, a day boundary
BASE = 1_700_006_400.0
T0 = BASE + 12 * HOUR

NEW_YORK = GeoResult(country_code="US", country_name="United States", latitude=40.7128, longitude=-74.0060)
LONDON = GeoResult(country_code="GB", country_name="United Kingdom", latitude=51.5074, longitude=-0.1278)


@pytest.fixture
def active_config(config):
    """Profiles are active from their first request."""
    config.learning_period_hours = 0
    return config


@pytest.fixture
def profiler(active_config):
    return BehavioralProfiler(active_config)


def test_learning_phase_reports_counters_only(config, make_ctx):
    profiler = BehavioralProfiler(config)
    for i in range(3):
        profiler.record(make_ctx(path=f"/p{i}", timestamp=T0 + i))
    analysis = profiler.analyze(make_ctx(path="/admin", headers={"user-agent": "curl/8"}, timestamp=T0 + 3))
    assert analysis.phase is ProfilePhase.LEARNING
    assert analysis.anomalies == ()
    assert analysis.requests_last_minute == 4


def test_unknown_identity_is_not_created(profiler, make_ctx):
    analysis = profiler.analyze(make_ctx(timestamp=T0))
    assert analysis.phase is ProfilePhase.LEARNING
    assert analysis.requests_last_minute == 1
    assert len(profiler) == 0
    assert profiler.describe("ip:203.0.113.10") is None


def test_velocity(active_config, make_ctx):
    active_config.velocity_cap = 5
    profiler = BehavioralProfiler(active_config)
    for i in range(5):
        profiler.record(make_ctx(timestamp=T0 + i))
    analysis = profiler.analyze(make_ctx(timestamp=T0 + 5))
    assert analysis.requests_last_minute == 6
    velocity = [a for a in analysis.anomalies if a.type is AnomalyType.VELOCITY]
    assert velocity[0].severity is Severity.HIGH
    assert velocity[0].confidence == 85.0

    for i in range(5, 10):
        profiler.record(make_ctx(timestamp=T0 + i))
    analysis = profiler.analyze(make_ctx(timestamp=T0 + 10))
    velocity = [a for a in analysis.anomalies if a.type is AnomalyType.VELOCITY]
    assert velocity[0].severity is Severity.CRITICAL


def test_old_requests_leave_the_velocity_window(active_config, make_ctx):
    active_config.velocity_cap = 5
    profiler = BehavioralProfiler(active_config)
    for i in range(10):
        profiler.record(make_ctx(timestamp=T0 + i))
    analysis = profiler.analyze(make_ctx(timestamp=T0 + 120))
    assert analysis.requests_last_minute == 1
    assert not analysis.has(AnomalyType.VELOCITY)


def test_device_change(profiler, make_ctx):
    profiler.record(make_ctx(timestamp=T0))
    assert not profiler.analyze(make_ctx(timestamp=T0 + 1)).anomalies

    analysis = profiler.analyze(make_ctx(headers={"user-agent": "Firefox/121"}, timestamp=T0 + 1))
    device = [a for a in analysis.anomalies if a.type is AnomalyType.DEVICE_CHANGE]
    assert device[0].severity is Severity.LOW

    for i, ua in enumerate(("Firefox/121", "Safari/17")):
        profiler.record(make_ctx(headers={"user-agent": ua}, timestamp=T0 + 2 + i))
    analysis = profiler.analyze(make_ctx(headers={"user-agent": "Edge/120"}, timestamp=T0 + 5))
    device = [a for a in analysis.anomalies if a.type is AnomalyType.DEVICE_CHANGE]
    assert device[0].severity is Severity.HIGH
    assert device[0].confidence == 60.0


def test_impossible_travel(profiler, make_ctx):
    profiler.record(make_ctx(geo=NEW_YORK, timestamp=T0))
    analysis = profiler.analyze(make_ctx(geo=LONDON, timestamp=T0 + 600))
    travel = [a for a in analysis.anomalies if a.type is AnomalyType.IMPOSSIBLE_TRAVEL]
    assert travel[0].severity is Severity.CRITICAL
    assert travel[0].confidence == 90.0

    # a flight's worth of time later the trip is plausible
    assert not profiler.analyze(make_ctx(geo=LONDON, timestamp=T0 + 8 * HOUR)).has(
        AnomalyType.IMPOSSIBLE_TRAVEL
    )


def test_geographic_needs_history(profiler, make_ctx):
    us = GeoResult(country_code="US", country_name="United States")
    fr = GeoResult(country_code="FR", country_name="France")
    for i in range(4):
        profiler.record(make_ctx(geo=us, timestamp=T0 + i))
    assert not profiler.analyze(make_ctx(geo=fr, timestamp=T0 + 10)).has(AnomalyType.GEOGRAPHIC)

    profiler.record(make_ctx(geo=us, timestamp=T0 + 4))
    analysis = profiler.analyze(make_ctx(geo=fr, timestamp=T0 + 10))
    assert analysis.has(AnomalyType.GEOGRAPHIC)
    assert not profiler.analyze(make_ctx(geo=us, timestamp=T0 + 10)).has(AnomalyType.GEOGRAPHIC)


def test_brute_force_escalates(profiler, make_ctx):
    key = "ip:203.0.113.10"
    for _ in range(5):
        profiler.record_auth_result(key, "/login", 401)
    analysis = profiler.analyze(make_ctx(path="/login"))
    assert analysis.failed_auth_streak == 5
    brute = [a for a in analysis.anomalies if a.type is AnomalyType.BRUTE_FORCE]
    assert brute[0].severity is Severity.MEDIUM
    assert brute[0].confidence == 85.0

    for _ in range(5):
        profiler.record_auth_result(key, "/login", 403)
    brute = [a for a in profiler.analyze(make_ctx(path="/login")).anomalies if a.type is AnomalyType.BRUTE_FORCE]
    assert brute[0].severity is Severity.CRITICAL
    assert brute[0].confidence == 95.0

    # only auth paths are checked
    assert not profiler.analyze(make_ctx(path="/courses")).has(AnomalyType.BRUTE_FORCE)


def test_successful_login_resets_streak(profiler, make_ctx):
    key = "ip:203.0.113.10"
    for _ in range(6):
        profiler.record_auth_result(key, "/api/auth/login", 401)
    profiler.record_auth_result(key, "/api/auth/login", 200)
    analysis = profiler.analyze(make_ctx(path="/api/auth/login"))
    assert analysis.failed_auth_streak == 0
    assert not analysis.has(AnomalyType.BRUTE_FORCE)


def test_non_auth_results_ignored(profiler):
    profiler.record_auth_result("ip:203.0.113.10", "/courses", 401)
    assert len(profiler) == 0


def test_unusual_path(profiler, make_ctx):
    for i in range(20):
        profiler.record(make_ctx(path=f"/courses/{i % 3}", timestamp=T0 + i))

    analysis = profiler.analyze(make_ctx(path="/admin", timestamp=T0 + 30))
    unusual = [a for a in analysis.anomalies if a.type is AnomalyType.UNUSUAL_PATH]
    assert unusual[0].severity is Severity.HIGH
    assert unusual[0].confidence == 70.0

    unusual = [
        a for a in profiler.analyze(make_ctx(path="/library", timestamp=T0 + 30)).anomalies
        if a.type is AnomalyType.UNUSUAL_PATH
    ]
    assert unusual[0].severity is Severity.LOW
    assert not profiler.analyze(make_ctx(path="/courses/1", timestamp=T0 + 30)).has(AnomalyType.UNUSUAL_PATH)


def test_unusual_time(profiler, make_ctx):
    evening = BASE + 22 * HOUR
    for i in range(50):
        profiler.record(make_ctx(timestamp=evening + 60 * i))
    assert not profiler.analyze(make_ctx(timestamp=evening + 55 * 60)).has(AnomalyType.UNUSUAL_TIME)

    analysis = profiler.analyze(make_ctx(timestamp=evening + 6 * HOUR))
    unusual = [a for a in analysis.anomalies if a.type is AnomalyType.UNUSUAL_TIME]
    assert unusual[0].severity is Severity.LOW


def test_behavioral_drift(profiler, make_ctx):
    for day in range(15):
        profiler.record(make_ctx(path=f"/day/{day}", timestamp=T0 + day * DAY))
    today = T0 + 15 * DAY
    for i in range(25):
        profiler.record(make_ctx(path=f"/burst/{i}", timestamp=today + 10 * i))

    analysis = profiler.analyze(make_ctx(path="/burst/0", timestamp=today + 300))
    assert analysis.has(AnomalyType.BEHAVIORAL_DRIFT)


def test_no_drift_during_observation_window(profiler, make_ctx):
    for i in range(25):
        profiler.record(make_ctx(path=f"/burst/{i}", timestamp=T0 + 10 * i))
    analysis = profiler.analyze(make_ctx(path="/burst/0", timestamp=T0 + 300))
    assert not analysis.has(AnomalyType.BEHAVIORAL_DRIFT)


def test_history_snapshot(profiler, make_ctx, config):
    for i in range(3):
        profiler.record(make_ctx(path=f"/p{i}", geo=NEW_YORK, timestamp=T0 + i))
    key = "ip:203.0.113.10"
    rep = ReputationStore(config).apply_decision(key, Action.ALLOW, 0.0, T0)

    history = profiler.history(key, now=T0 + 5, reputation=rep)
    assert history.requests_last_minute == 3
    assert history.unique_paths == 3
    assert history.distinct_devices == 1
    assert history.known_countries == frozenset({"US"})
    assert history.trust == pytest.approx(rep.trust)
    assert history.session_count == 1

    empty = profiler.history("ip:198.51.100.1", now=T0)
    assert empty.requests_last_minute == 0


def test_profile_key_prefers_user_id(profiler, make_ctx):
    profiler.record(make_ctx(headers={"x-user-id": "student-9"}, timestamp=T0))
    assert profiler.describe("user:student-9", now=T0) is not None
    assert profiler.describe("ip:203.0.113.10", now=T0) is None


def test_describe(profiler, make_ctx):
    profiler.record(make_ctx(path="/a", geo=NEW_YORK, timestamp=T0))
    profiler.record(make_ctx(path="/a", geo=NEW_YORK, timestamp=T0 + 1))
    data = profiler.describe("ip:203.0.113.10", now=T0 + 2)
    assert data["phase"] == "ACTIVE"
    assert data["request_count"] == 2
    assert data["unique_paths"] == 1
    assert data["countries"] == {"US": 2}
    assert data["devices"] == 1


def test_evict_inactive_profiles(profiler, make_ctx):
    profiler.record(make_ctx(client_ip="198.51.100.1", timestamp=T0))
    profiler.record(make_ctx(client_ip="198.51.100.2", timestamp=T0 + 71 * HOUR))
    assert profiler.evict(now=T0 + 73 * HOUR) == 1
    assert len(profiler) == 1
    assert profiler.describe("ip:198.51.100.2") is not None


def test_risk_score():
    assert risk_score([]) == 0.0
    assert risk_score([BehaviorAnomaly(AnomalyType.VELOCITY, Severity.CRITICAL, 100.0)]) == 100.0
    low = BehaviorAnomaly(AnomalyType.UNUSUAL_TIME, Severity.LOW, 50.0)
    assert risk_score([low]) == pytest.approx(12.5)
    many = [BehaviorAnomaly(AnomalyType.VELOCITY, Severity.CRITICAL, 95.0)] * 3
    assert risk_score(many) == 100.0


def test_haversine():
    assert haversine_km(40.7128, -74.0060, 51.5074, -0.1278) == pytest.approx(5570, abs=10)
    assert haversine_km(10.0, 10.0, 10.0, 10.0) == 0.0
