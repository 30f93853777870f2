"""
Bastion — Async Reverse Proxy Handler.

Catches ALL incoming requests, runs them through the defense pipeline,
and forwards allowed traffic to the upstream school platform.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

import httpx
from fastapi import APIRouter, FastAPI, Request, Response

from bastion.config import Settings
from bastion.pipeline.orchestrator import Orchestrator, PipelineResult
from bastion.proxy.context import RequestContext, build_context

logger = logging.getLogger("bastion.proxy")

router = APIRouter()

ADMIN_PREFIX = "/api/bastion"

# Everything Starlette can route; the security guard decides what is allowed
PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE", "CONNECT"]

# httpx hands back decoded bodies, so length and encoding are recomputed downstream
SKIP_RESPONSE_HEADERS = frozenset([
    "transfer-encoding", "connection", "keep-alive", "content-encoding", "content-length",
])
SKIP_REQUEST_HEADERS = frozenset(["host", "content-length", "connection", "keep-alive"])


# ── Real-time traffic counters ──────────────────────────────


@dataclass
class TrafficCounters:
    """In-memory counters for the stats endpoint."""
    total_requests: int = 0
    forwarded_requests: int = 0
    upstream_errors: int = 0
    recent_events: deque = field(default_factory=lambda: deque(maxlen=200))
    _request_times: deque = field(default_factory=lambda: deque(maxlen=10000))

    @property
    def requests_per_second(self) -> float:
        """Calculate RPS from last 10 seconds."""
        cutoff = time.time() - 10
        count = sum(1 for t in self._request_times if t > cutoff)
        return count / 10.0

    def record(self, ctx: RequestContext, result: PipelineResult) -> None:
        self.total_requests += 1
        self._request_times.append(ctx.timestamp)
        decision = result.decision
        if decision is not None and decision.action.value != "ALLOW":
            self.recent_events.append({
                "time": ctx.timestamp,
                "ip": ctx.client_ip,
                "action": decision.action.value,
                "score": round(decision.score, 2),
                "path": ctx.path,
                "method": ctx.method,
                "incident_id": decision.incident_id,
            })

    def to_dict(self) -> dict:
        return {
            "total_requests": self.total_requests,
            "forwarded_requests": self.forwarded_requests,
            "upstream_errors": self.upstream_errors,
            "requests_per_second": round(self.requests_per_second, 2),
        }


def create_http_client(config: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=config.target_url,
        timeout=httpx.Timeout(config.proxy_timeout),
        follow_redirects=False,
        limits=httpx.Limits(
            max_connections=200,
            max_keepalive_connections=50,
        ),
    )


def get_http_client(app: FastAPI) -> httpx.AsyncClient:
    """Return the shared upstream client, creating it on first use."""
    client: Optional[httpx.AsyncClient] = getattr(app.state, "http_client", None)
    if client is None or client.is_closed:
        client = create_http_client(app.state.config)
        app.state.http_client = client
    return client


def _upstream_headers(request: Request, ctx: RequestContext, result: PipelineResult) -> dict[str, str]:
    headers = {k: v for k, v in request.headers.items() if k.lower() not in SKIP_REQUEST_HEADERS}
    headers["x-forwarded-for"] = ctx.client_ip
    headers["x-forwarded-proto"] = "https" if ctx.is_secure else "http"
    if result.decision is not None:
        headers["x-bastion-score"] = f"{result.decision.score:.1f}"
        headers["x-bastion-incident"] = result.decision.incident_id
    return headers


@router.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def reverse_proxy(request: Request, path: str = "") -> Response:
    """
    Main reverse-proxy endpoint.

    Pipeline:
      1. Build the request context (client IP, identity, headers, cookies)
      2. Run the defense orchestrator
      3. Terminal decision → return its response as-is
      4. Otherwise forward upstream and merge the diagnostic headers
      5. Feed the upstream status back into the profiler
    """
    if request.url.path.startswith(ADMIN_PREFIX + "/"):
        return Response(status_code=404)

    start = time.monotonic()
    orchestrator: Orchestrator = request.app.state.orchestrator
    traffic: TrafficCounters = request.app.state.traffic

    ctx = build_context(request)
    result = await orchestrator.process(ctx)
    traffic.record(ctx, result)

    if not result.forward:
        return result.response  # type: ignore[return-value]

    body = await request.body()
    client = get_http_client(request.app)
    try:
        upstream_resp = await client.request(
            method=request.method,
            url=ctx.path,
            headers=_upstream_headers(request, ctx, result),
            content=body,
            params=request.query_params.multi_items(),
        )
    except httpx.RequestError as exc:
        traffic.upstream_errors += 1
        logger.error("Upstream error for %s %s: %s", ctx.method, ctx.path, exc)
        return Response(status_code=502, content="Bad Gateway", headers=result.headers)

    traffic.forwarded_requests += 1
    orchestrator.record_upstream(ctx, upstream_resp.status_code)
    elapsed = time.monotonic() - start
    logger.debug(
        "%s %s → %d (%.1fms, action=%s)",
        ctx.method, ctx.path, upstream_resp.status_code,
        elapsed * 1000, result.headers.get("X-Defense-Action", "-"),
    )

    response = Response(content=upstream_resp.content, status_code=upstream_resp.status_code)
    for k, v in upstream_resp.headers.multi_items():
        if k.lower() not in SKIP_RESPONSE_HEADERS:
            response.headers.append(k, v)
    for k, v in result.headers.items():
        response.headers[k] = v
    return response
