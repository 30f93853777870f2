"""
Bastion — Defense responses.

Terminal responses produced by the pipeline. Browsers get a small HTML
page; API clients and everything else get JSON.
"""

from __future__ import annotations

import html
from typing import Optional

from fastapi import Response
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from bastion.detection.types import Action, Decision
from bastion.mitigation.challenge import Challenge, ChallengeManager
from bastion.proxy.context import RequestContext

_BLOCK_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>Access denied | Bastion</title>
    <style>
        body {{
            background: #0d1117; color: #c9d1d9;
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            display: flex; align-items: center; justify-content: center;
            height: 100vh; margin: 0;
        }}
        .container {{ text-align: center; max-width: 560px; }}
        p {{ color: #8b949e; }}
        code {{ color: #58a6ff; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Access denied</h1>
        <p>{message}</p>
        <p>If you believe this is a mistake, contact support and quote incident <code>{incident_id}</code>.</p>
    </div>
</body>
</html>"""


def wants_html(ctx: RequestContext) -> bool:
    if ctx.path.startswith("/api/"):
        return False
    return "text/html" in ctx.headers.get("accept", "")


def block_response(
    ctx: RequestContext,
    decision: Decision,
    message: str,
    challenge: Optional[Challenge] = None,
) -> Response:
    if wants_html(ctx):
        page = _BLOCK_PAGE.format(message=html.escape(message), incident_id=decision.incident_id)
        return HTMLResponse(page, status_code=403)
    body = {
        "error": "access_denied",
        "action": decision.action.value,
        "message": message,
        "incident_id": decision.incident_id,
    }
    if challenge is not None:
        body["challenge"] = challenge.to_dict()
    return JSONResponse(body, status_code=403)


def challenge_response(ctx: RequestContext, decision: Decision, challenge: Challenge) -> Response:
    if wants_html(ctx):
        return HTMLResponse(ChallengeManager.render_page(challenge, decision.incident_id), status_code=403)
    return JSONResponse(
        {
            "error": "challenge_required",
            "action": Action.CHALLENGE.value,
            "incident_id": decision.incident_id,
            "challenge": challenge.to_dict(),
        },
        status_code=403,
    )


def rate_limited_response(retry_after: int, tier: Optional[str] = None) -> Response:
    return JSONResponse(
        {"error": "rate_limited", "tier": tier, "retry_after": retry_after},
        status_code=429,
        headers={"Retry-After": str(retry_after)},
    )


def guard_response(status_code: int, error: str) -> Response:
    return JSONResponse({"error": error}, status_code=status_code)


def preflight_response(allowed_methods: frozenset[str]) -> Response:
    return Response(
        status_code=204,
        headers={
            "Allow": ", ".join(sorted(allowed_methods)),
            "Vary": "Origin",
        },
    )


def https_redirect(ctx: RequestContext) -> Response:
    host = ctx.headers.get("host", "localhost")
    return RedirectResponse(f"https://{host}{ctx.raw_url}", status_code=308)


def unavailable_response(incident_id: str, reason: str = "service_unavailable") -> Response:
    return JSONResponse({"error": reason, "incident_id": incident_id}, status_code=503)
