"""
Bastion — Incident Audit Log (SQLAlchemy async via aiosqlite).

Append-only record of every non-ALLOW decision. Writes are fire-and-forget
from the request path: a failing database never fails a request.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, Float, Integer, String, Text, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from bastion.config import Settings, settings as default_settings
from bastion.detection.types import Decision

logger = logging.getLogger("bastion.storage.database")


# ── ORM Base ─────────────────────────────────────────────


class Base(DeclarativeBase):
    pass


# ── Models ───────────────────────────────────────────────


class SecurityIncident(Base):
    """One non-ALLOW defense decision."""
    __tablename__ = "security_incidents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    incident_id = Column(String(40), nullable=False, unique=True, index=True)
    timestamp = Column(DateTime, default=func.now(), nullable=False)
    source_ip = Column(String(45), nullable=False, index=True)
    identity = Column(String(128), nullable=True)
    action = Column(String(20), nullable=False)
    threat_score = Column(Float, nullable=False)
    confidence = Column(Float, nullable=False)
    reason = Column(Text, nullable=True)
    path = Column(String(2048), nullable=True)
    method = Column(String(10), nullable=True)
    user_agent = Column(Text, nullable=True)
    vectors_json = Column(Text, nullable=True)
    feedback = Column(String(20), nullable=True)

    def to_dict(self) -> dict:
        return {
            "incident_id": self.incident_id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "source_ip": self.source_ip,
            "identity": self.identity,
            "action": self.action,
            "threat_score": self.threat_score,
            "confidence": self.confidence,
            "reason": self.reason,
            "path": self.path,
            "method": self.method,
            "feedback": self.feedback,
            "vectors": json.loads(self.vectors_json) if self.vectors_json else [],
        }


# ── Engine & Session ─────────────────────────────────────


class IncidentLog:
    """Owns the async engine and session factory for the audit table."""

    def __init__(self, config: Optional[Settings] = None, url: Optional[str] = None) -> None:
        self.config = config or default_settings
        self.engine = create_async_engine(url or self.config.database_url, echo=False)
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def init_db(self) -> None:
        """Create all tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created / verified")

    async def close(self) -> None:
        await self.engine.dispose()

    async def record(
        self,
        decision: Decision,
        source_ip: str,
        identity: Optional[str] = None,
        path: Optional[str] = None,
        method: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        async with self.session_factory() as session:
            session.add(SecurityIncident(
                incident_id=decision.incident_id,
                timestamp=datetime.now(timezone.utc),
                source_ip=source_ip,
                identity=identity,
                action=decision.action.value,
                threat_score=decision.score,
                confidence=decision.confidence,
                reason=decision.reason,
                path=(path or "")[:2048],
                method=method,
                user_agent=user_agent,
                vectors_json=json.dumps([v.to_dict() for v in decision.vectors]),
            ))
            await session.commit()

    async def get(self, incident_id: str) -> Optional[SecurityIncident]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SecurityIncident).where(SecurityIncident.incident_id == incident_id)
            )
            return result.scalar_one_or_none()

    async def mark_feedback(self, incident_id: str, verdict: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SecurityIncident).where(SecurityIncident.incident_id == incident_id)
            )
            incident = result.scalar_one_or_none()
            if incident is None:
                return False
            incident.feedback = verdict
            await session.commit()
            return True

    async def recent(self, limit: int = 50) -> list[SecurityIncident]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SecurityIncident).order_by(SecurityIncident.id.desc()).limit(limit)
            )
            return list(result.scalars())
