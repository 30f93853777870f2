"""
Bastion — Admin API Routes.

Operational endpoints: health, stats, circuit breakers, reputation lookup,
trust registry management, classifier feedback and training, blocklist,
and the challenge issue / verify flow.

Endpoints that change state require the X-Admin-Key header.
"""

from __future__ import annotations

import hmac
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Security
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from bastion.detection.engine import DefenseEngine
from bastion.detection.ml_model import FeedbackVerdict
from bastion.detection.trust import SourceType
from bastion.detection.types import TrustLevel
from bastion.errors import ChallengeError
from bastion.mitigation.challenge import CLEARANCE_COOKIE, ChallengeType
from bastion.proxy.context import get_client_ip

router = APIRouter(tags=["Admin API"])

VERSION = "0.1.0"
CLEARANCE_TRUST_BONUS = 25.0


# ── Schemas ──────────────────────────────────────────────


class TrustSourceRequest(BaseModel):
    type: SourceType
    value: str = Field(min_length=1)
    trust_level: TrustLevel
    name: str = ""
    ttl_sec: Optional[float] = Field(default=None, gt=0)


class FeedbackRequest(BaseModel):
    incident_id: str
    verdict: FeedbackVerdict


class ChallengeRequest(BaseModel):
    type: ChallengeType = ChallengeType.POW


class ChallengeVerifyRequest(BaseModel):
    challenge_id: str
    nonce: Optional[str] = None
    answer: Optional[int] = None


class BlockIPRequest(BaseModel):
    ip: str
    reason: str = ""
    duration_sec: Optional[int] = None


class UnblockIPRequest(BaseModel):
    ip: str


def _engine(request: Request) -> DefenseEngine:
    return request.app.state.engine


# ── Admin auth ───────────────────────────────────────────

admin_key_header = APIKeyHeader(name="X-Admin-Key", auto_error=False)


async def require_admin(request: Request, api_key: Optional[str] = Security(admin_key_header)) -> None:
    """401 without a key, 403 for a wrong key or when none is configured."""
    if not api_key:
        raise HTTPException(
            status_code=401, detail="Missing admin API key", headers={"WWW-Authenticate": "ApiKey"},
        )
    expected = request.app.state.config.admin_api_key
    if not expected or not hmac.compare_digest(api_key.encode(), expected.encode()):
        raise HTTPException(status_code=403, detail="Invalid admin API key")


ADMIN_ONLY = [Depends(require_admin)]


# ── Health & stats ───────────────────────────────────────


@router.get("/health")
async def health_check(request: Request):
    """Liveness plus component health."""
    state = request.app.state
    snapshot = state.health.snapshot()
    redis_ok = await state.redis.health_check()
    return {
        "status": "degraded" if snapshot["throttle"] else "healthy",
        "version": VERSION,
        "system_health": snapshot["system_health"],
        "open_circuits": state.health.open_circuits(),
        "redis": redis_ok,
    }


@router.get("/stats")
async def get_stats(request: Request):
    """Traffic counters, decision counts, thresholds and heat."""
    state = request.app.state
    return {
        "uptime": time.time() - state.started_at,
        "target_url": state.config.target_url,
        "environment": state.config.environment.value,
        "redis": state.redis.status(),
        "traffic": state.traffic.to_dict(),
        "pipeline": state.orchestrator.info(),
        "engine": state.engine.info(),
    }


@router.get("/breakers")
async def get_breakers(request: Request):
    return request.app.state.health.snapshot()


@router.get("/events")
async def get_recent_events(request: Request):
    """Return recent non-ALLOW decisions, newest first."""
    events = list(request.app.state.traffic.recent_events)
    events.reverse()
    return {"events": events, "count": len(events)}


@router.get("/incidents")
async def get_incidents(request: Request, limit: int = 50):
    incidents = request.app.state.incidents
    if incidents is None:
        return {"incidents": [], "count": 0}
    rows = await incidents.recent(min(max(limit, 1), 500))
    return {"incidents": [r.to_dict() for r in rows], "count": len(rows)}


# ── Reputation ───────────────────────────────────────────


@router.get("/reputation/{identity}")
async def get_reputation(identity: str, request: Request):
    engine = _engine(request)
    rep = engine.reputation.get(identity)
    profile_key = identity if identity.startswith(("ip:", "user:")) else f"ip:{identity}"
    profile = engine.profiler.describe(profile_key)
    if rep is None and profile is None:
        raise HTTPException(status_code=404, detail=f"No record for {identity}")
    return {
        "identity": identity,
        "reputation": rep.to_dict() if rep is not None else None,
        "profile": profile,
    }


# ── Trust registry ───────────────────────────────────────


@router.get("/trust")
async def list_trusted_sources(request: Request):
    sources = _engine(request).trust.sources()
    return {"sources": [s.to_dict() for s in sources], "count": len(sources)}


@router.post("/trust", status_code=201, dependencies=ADMIN_ONLY)
async def add_trusted_source(req: TrustSourceRequest, request: Request):
    try:
        source = _engine(request).trust.add(
            req.type, req.value, req.trust_level, name=req.name, ttl_sec=req.ttl_sec,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return source.to_dict()


@router.delete("/trust/{source_id}", dependencies=ADMIN_ONLY)
async def remove_trusted_source(source_id: str, request: Request):
    if not _engine(request).trust.remove(source_id):
        raise HTTPException(status_code=404, detail=f"Unknown trusted source {source_id}")
    return {"status": "removed", "id": source_id}


# ── Classifier ───────────────────────────────────────────


@router.post("/feedback", dependencies=ADMIN_ONLY)
async def submit_feedback(req: FeedbackRequest, request: Request):
    """Correct the label of a decided request by its incident id."""
    engine = _engine(request)
    incidents = request.app.state.incidents
    sample_found = engine.classifier.feedback(req.incident_id, req.verdict)
    incident_found = False
    if incidents is not None:
        incident_found = await incidents.mark_feedback(req.incident_id, req.verdict.value)
    if not sample_found and not incident_found:
        raise HTTPException(status_code=404, detail=f"Unknown incident {req.incident_id}")
    return {
        "status": "recorded",
        "incident_id": req.incident_id,
        "verdict": req.verdict.value,
        "sample_updated": sample_found,
        "incident_updated": incident_found,
    }


@router.get("/ml/status")
async def ml_status(request: Request):
    """Return classifier status and training info."""
    return _engine(request).classifier.info()


@router.post("/ml/train", dependencies=ADMIN_ONLY)
async def ml_trigger_train(request: Request):
    """Manually trigger classifier training."""
    classifier = _engine(request).classifier
    info = classifier.info()
    if info["labeled_samples"] < info["min_train_samples"]:
        raise HTTPException(
            status_code=400,
            detail=(
                f"Not enough labeled samples: {info['labeled_samples']}"
                f" / {info['min_train_samples']} required"
            ),
        )
    trained = await classifier.train_async()
    return {
        "status": "trained" if trained else "skipped",
        "info": classifier.info(),
    }


# ── Blocklist ────────────────────────────────────────────


@router.get("/blocked")
async def get_blocked_ips(request: Request):
    """List permanently blocked IPs."""
    ips = await request.app.state.blocker.get_blocked_ips()
    return {"blocked_ips": ips, "count": len(ips)}


@router.post("/block", dependencies=ADMIN_ONLY)
async def block_ip(req: BlockIPRequest, request: Request):
    """Manually block an IP."""
    await request.app.state.blocker.block(req.ip, reason=req.reason, duration_sec=req.duration_sec)
    return {"status": "blocked", "ip": req.ip}


@router.post("/unblock", dependencies=ADMIN_ONLY)
async def unblock_ip(req: UnblockIPRequest, request: Request):
    """Unblock an IP."""
    await request.app.state.blocker.unblock(req.ip)
    return {"status": "unblocked", "ip": req.ip}


# ── Challenge flow ───────────────────────────────────────


@router.post("/challenge")
async def issue_challenge(request: Request, req: Optional[ChallengeRequest] = None):
    challenge_type = req.type if req is not None else ChallengeType.POW
    challenge = _engine(request).challenges.issue(get_client_ip(request), challenge_type)
    return challenge.to_dict()


@router.post("/challenge/verify")
async def verify_challenge(req: ChallengeVerifyRequest, request: Request):
    """
    Check a solution and set the clearance cookie. A proof-of-work solve
    also raises trust, once per clearance window.
    """
    engine = _engine(request)
    client_ip = get_client_ip(request)
    try:
        token = engine.challenges.verify(req.challenge_id, client_ip, nonce=req.nonce, answer=req.answer)
    except ChallengeError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.reason)

    bonus = 0.0
    solved_pow = engine.challenges.clearance_type(token, client_ip) is ChallengeType.POW
    if solved_pow and engine.challenges.claim_reward(client_ip):
        bonus = CLEARANCE_TRUST_BONUS
    rep = engine.reputation.adjust(client_ip, trust=bonus)
    config = request.app.state.config
    response = JSONResponse({"status": "verified", "trust": round(rep.trust, 2)})
    response.set_cookie(
        CLEARANCE_COOKIE,
        token,
        max_age=config.clearance_ttl_sec,
        httponly=True,
        samesite="lax",
        secure=request.url.scheme == "https",
    )
    return response
