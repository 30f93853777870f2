"""
Shared fixtures: isolated settings, request contexts, and a wired orchestrator.
"""

import time
from typing import Optional

import pytest

from bastion.config import Settings
from bastion.detection.engine import DefenseEngine
from bastion.pipeline.health import HealthMonitor
from bastion.pipeline.orchestrator import Orchestrator
from bastion.proxy.context import RequestContext
from bastion.rules.engine import PolicyEngine

BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@pytest.fixture
def config(tmp_path) -> Settings:
    """Settings that touch nothing outside the test's temp dir."""
    return Settings(
        _env_file=None,
        environment="production",
        model_dir="",
        rules_dir=str(tmp_path / "rules"),
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'bastion.db'}",
        webhook_url=None,
        geo_api_url=None,
    )


@pytest.fixture
def make_ctx():
    """Factory for request contexts from an ordinary browser."""

    def _make(
        path: str = "/",
        query: str = "",
        method: str = "GET",
        client_ip: str = "203.0.113.10",
        headers: Optional[dict] = None,
        cookies: Optional[dict] = None,
        scheme: str = "https",
        timestamp: Optional[float] = None,
        geo=None,
    ) -> RequestContext:
        base = {
            "host": "school.example",
            "user-agent": BROWSER_UA,
            "accept": "application/json",
            "accept-language": "en-US,en;q=0.9",
            "accept-encoding": "gzip, deflate, br",
        }
        if headers:
            base.update({k.lower(): v for k, v in headers.items()})
        return RequestContext(
            client_ip=client_ip,
            method=method,
            path=path,
            query=query,
            headers=base,
            cookies=dict(cookies or {}),
            scheme=scheme,
            timestamp=time.time() if timestamp is None else timestamp,
            geo=geo,
        )

    return _make


@pytest.fixture
def engine(config) -> DefenseEngine:
    return DefenseEngine(config)


@pytest.fixture
def orchestrator(config, engine) -> Orchestrator:
    """Orchestrator with no Redis, database, geo or webhook attached."""
    return Orchestrator(
        engine,
        config=config,
        health=HealthMonitor(config),
        policy=PolicyEngine(),
    )
