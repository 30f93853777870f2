"""
Bastion — Configuration via Pydantic Settings.

All settings are loaded from environment variables or .env file.
Per-path policy (rate tiers, cache, geo) lives in YAML under ``rules_dir``.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    """Deployment environment (selects trust seed entries)."""
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Application-wide settings loaded from env / .env."""

    # ── General ──────────────────────────────────────────────
    app_name: str = "Bastion"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"
    environment: Environment = Environment.PRODUCTION

    # ── Reverse Proxy ────────────────────────────────────────
    target_url: str = Field(
        default="http://localhost:3000",
        description="Upstream school platform URL to proxy traffic to",
    )
    proxy_timeout: float = Field(
        default=30.0,
        description="Timeout in seconds for upstream requests",
    )

    # ── Redis ────────────────────────────────────────────────
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for rate limits and the blocklist",
    )
    redis_max_connections: int = 50
    redis_timeout_sec: float = Field(
        default=2.0, description="Connect and command timeout for Redis calls",
    )

    # ── Database ─────────────────────────────────────────────
    database_url: str = Field(
        default="sqlite+aiosqlite:///./bastion.db",
        description="SQLAlchemy database URL for the incident audit log",
    )

    # ── Pipeline policy ──────────────────────────────────────
    fail_open: bool = Field(
        default=True,
        description="Let requests through when the pipeline itself crashes",
    )
    enforce_https: bool = Field(
        default=True,
        description="Redirect plain-HTTP requests to sensitive paths (production only)",
    )
    max_url_length: int = 4096
    max_header_count: int = 100

    # ── Decision thresholds ──────────────────────────────────
    threshold_auto_block: float = Field(default=96.0, description="NEUTRALIZE at or above")
    threshold_block: float = Field(default=88.0, description="BLOCK at or above")
    threshold_challenge: float = Field(default=72.0, description="CHALLENGE at or above")
    threshold_monitor: float = Field(default=52.0, description="RATE_LIMIT at or above")
    threshold_block_floor: float = Field(
        default=70.0,
        description="Lowest value the adaptive block threshold may reach",
    )

    # ── Threat heat (system-wide adaptation) ─────────────────
    heat_population_min: int = Field(
        default=500,
        description="Identities required before the high-threat rate is trusted",
    )
    heat_rate_threshold: float = Field(
        default=0.12,
        description="Fraction of high-threat identities that raises the heat",
    )
    heat_step: float = 20.0
    heat_decay: float = 10.0
    heat_weight: float = 0.35
    adapt_interval_sec: int = 3600

    # ── Reputation ───────────────────────────────────────────
    clean_allow_trust_delta: float = 0.8
    clean_allow_threat_delta: float = 2.0
    block_threat_delta: float = 30.0
    block_trust_delta: float = 25.0
    challenge_threat_delta: float = 4.0
    rate_limit_threat_delta: float = 2.0
    reputation_neutral_trust: float = Field(
        default=30.0,
        description="Floor that inactive trust decays toward",
    )
    reputation_decay_days: float = 7.0
    reputation_ttl_days: float = 30.0
    auto_trust_sessions: int = 250
    auto_trust_max_threat: float = 12.0
    auto_trust_fast_path_threat: float = 15.0

    # ── Circuit breaker ──────────────────────────────────────
    breaker_failure_threshold: int = Field(
        default=3, description="Consecutive failures that open a breaker",
    )
    breaker_failure_window_sec: float = 60.0
    breaker_cooldown_sec: float = 60.0
    breaker_half_open_attempts: int = 1
    health_throttle_below: float = Field(
        default=40.0,
        description="System health score (0-100) under which new work is throttled",
    )

    # ── Online classifier ────────────────────────────────────
    ml_learning_rate: float = 0.05
    ml_l2: float = 0.001
    ml_batch_size: int = 32
    ml_epochs: int = 5
    ml_buffer_size: int = 5000
    ml_ensemble_size: int = 3
    ml_min_train_samples: int = 64
    ml_retrain_interval_sec: int = 300
    ml_feedback_retrain: int = Field(
        default=25,
        description="Feedback corrections that trigger an early retrain",
    )
    model_dir: str = Field(
        default="models", description="Directory for persisted classifier weights",
    )

    # ── Behavioral profiler ──────────────────────────────────
    learning_period_hours: float = 72.0
    profile_ttl_hours: float = 72.0
    velocity_cap: int = Field(
        default=100, description="Requests per minute before a velocity anomaly",
    )
    impossible_travel_kmh: float = 1000.0
    brute_force_threshold: int = 5
    sensitive_paths: list[str] = Field(
        default_factory=lambda: [
            "/admin", "/api/admin", "/dashboard/admin",
            "/api/grades", "/api/users", "/settings/security",
        ],
    )
    auth_paths: list[str] = Field(
        default_factory=lambda: ["/auth", "/api/auth", "/login", "/api/s/login"],
    )

    # ── GeoIP ────────────────────────────────────────────────
    geoip_db_path: Optional[str] = Field(
        default=None, description="Path to MaxMind GeoLite2 City database",
    )
    geo_api_url: Optional[str] = Field(
        default="http://ip-api.com/json/{ip}?fields=status,countryCode,country,city,lat,lon,as,org,proxy,hosting",
        description="HTTP geolocation API used when no MaxMind DB is loaded",
    )
    geo_timeout_sec: float = 3.0

    # ── Challenge ────────────────────────────────────────────
    challenge_secret: str = "change-me-in-production"
    challenge_ttl_sec: int = 300
    pow_difficulty: int = Field(default=4, ge=1, le=8)
    clearance_ttl_sec: int = 3600
    neutralize_block_sec: int = 3600

    # ── Admin API ────────────────────────────────────────────
    admin_api_key: Optional[str] = Field(
        default=None,
        description="Key required in X-Admin-Key for mutating admin endpoints; unset rejects them all",
    )

    # ── Alerts ───────────────────────────────────────────────
    webhook_url: Optional[str] = None

    # ── Rules ────────────────────────────────────────────────
    rules_dir: str = Field(
        default="rules/", description="Directory with YAML policy files",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"debug", "info", "warning", "error", "critical"}
        if v.lower() not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v.lower()

    @model_validator(mode="after")
    def validate_threshold_order(self) -> "Settings":
        ordered = (
            self.threshold_auto_block
            >= self.threshold_block
            >= self.threshold_challenge
            >= self.threshold_monitor
        )
        if not ordered:
            raise ValueError("thresholds must satisfy auto_block >= block >= challenge >= monitor")
        return self

    model_config = {
        "env_prefix": "BASTION_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
    }


# Singleton
settings = Settings()
