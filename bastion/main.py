"""
Bastion — Application Entry Point.

Builds the FastAPI application: the defense components are constructed once
here and shared through ``app.state``; the lifespan performs the I/O
startup (Redis, database, GeoIP, background loops) and teardown.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from bastion.alerts.dispatcher import WebhookAlert
from bastion.api.routes import VERSION, router as api_router
from bastion.config import Settings, settings
from bastion.detection.engine import DefenseEngine
from bastion.geoip.lookup import GeoLocator
from bastion.mitigation.blocker import IPBlocker
from bastion.mitigation.rate_limiter import RateLimiter
from bastion.pipeline.health import HealthMonitor
from bastion.pipeline.orchestrator import Orchestrator
from bastion.proxy.handler import ADMIN_PREFIX, TrafficCounters, router as proxy_router
from bastion.rules.engine import PolicyEngine
from bastion.storage.database import IncidentLog
from bastion.storage.redis_client import RedisStore

logger = logging.getLogger("bastion")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup / shutdown lifecycle."""
    state = app.state
    config: Settings = state.config

    # ── Startup ──────────────────────────────────────────
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        force=True,
    )
    logger.info("Bastion v%s starting (%s)", VERSION, config.environment.value)

    # Redis is optional: rate tiers and the blocklist fail open without it
    if not await state.redis.connect():
        logger.warning(
            "Redis unavailable (%s), running without rate tiers or blocklist. "
            "Set BASTION_REDIS_URL for full protection.",
            state.redis.last_error,
        )

    try:
        await state.incidents.init_db()
    except Exception:
        logger.warning("Incident database unavailable, audit log disabled", exc_info=True)
        state.orchestrator.incidents = None
        state.incidents = None

    geo_db = state.geo.init_database(config.geoip_db_path)
    logger.info("GeoIP: %s", "MaxMind DB loaded" if geo_db else "HTTP fallback")

    await state.engine.start()

    logger.info("Proxying traffic to %s", config.target_url)
    logger.info("Admin API: http://%s:%d%s", config.host, config.port, ADMIN_PREFIX)

    yield

    # ── Shutdown ─────────────────────────────────────────
    await state.engine.stop()
    await state.orchestrator.drain()
    await state.geo.close()
    client = getattr(state, "http_client", None)
    if client is not None:
        await client.aclose()
    if state.incidents is not None:
        await state.incidents.close()
    await state.redis.disconnect()
    logger.info("Bastion stopped.")


def create_app(config: Optional[Settings] = None) -> FastAPI:
    """Factory for the FastAPI application."""
    config = config or settings
    app = FastAPI(
        title=config.app_name,
        version=VERSION,
        description="Adaptive threat-scoring reverse proxy",
        docs_url=f"{ADMIN_PREFIX}/docs",
        redoc_url=None,
        openapi_url=f"{ADMIN_PREFIX}/openapi.json",
        lifespan=lifespan,
    )

    redis = RedisStore(config)
    engine = DefenseEngine(config)
    health = HealthMonitor(config)
    policy = PolicyEngine()
    policy.load_from_directory(config.rules_dir)
    blocker = IPBlocker(redis)
    geo = GeoLocator(config)
    incidents = IncidentLog(config)

    state = app.state
    state.config = config
    state.started_at = time.time()
    state.redis = redis
    state.engine = engine
    state.health = health
    state.policy = policy
    state.blocker = blocker
    state.geo = geo
    state.incidents = incidents
    state.traffic = TrafficCounters()
    state.orchestrator = Orchestrator(
        engine,
        config=config,
        health=health,
        policy=policy,
        rate_limiter=RateLimiter(redis),
        blocker=blocker,
        geo=geo,
        incidents=incidents,
        alerts=WebhookAlert(config=config),
    )

    # ── Routers ──────────────────────────────────────────
    app.include_router(api_router, prefix=ADMIN_PREFIX)

    # Catch-all reverse proxy: must be last
    app.include_router(proxy_router)

    return app


app = create_app()


def main() -> None:
    uvicorn.run(
        "bastion.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
