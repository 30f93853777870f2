"""
Bastion — Request Context.

Snapshot of everything the pipeline needs from an inbound request,
decoupled from the web framework so detectors stay pure and testable.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import unquote_plus

from fastapi import Request

from bastion.geoip.lookup import GeoResult
from bastion.proxy.fingerprint import device_fingerprint

SESSION_COOKIES = ("session-token", "__Secure-session-token", "bastion_session")
USER_ID_COOKIE = "userId-token"


@dataclass
class RequestContext:
    """Framework-independent view of one request."""
    client_ip: str
    method: str
    path: str
    query: str = ""
    headers: dict[str, str] = field(default_factory=dict)  # lower-case keys, received order
    cookies: dict[str, str] = field(default_factory=dict)
    scheme: str = "http"
    body_length: int = 0
    timestamp: float = field(default_factory=time.time)
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    geo: Optional[GeoResult] = None

    @property
    def user_agent(self) -> str:
        return self.headers.get("user-agent", "")

    @property
    def raw_url(self) -> str:
        return f"{self.path}?{self.query}" if self.query else self.path

    @property
    def decoded_url(self) -> str:
        return unquote_plus(self.raw_url)

    @property
    def user_id(self) -> Optional[str]:
        return self.headers.get("x-user-id") or self.cookies.get(USER_ID_COOKIE) or None

    @property
    def session_token(self) -> Optional[str]:
        for name in SESSION_COOKIES:
            if self.cookies.get(name):
                return self.cookies[name]
        return None

    @property
    def has_session(self) -> bool:
        return self.session_token is not None

    @property
    def api_key(self) -> Optional[str]:
        return self.headers.get("x-api-key") or None

    @property
    def has_credentials(self) -> bool:
        return bool(self.headers.get("authorization") or self.api_key)

    @property
    def is_secure(self) -> bool:
        forwarded = self.headers.get("x-forwarded-proto", "").split(",")[0].strip()
        return self.scheme == "https" or forwarded == "https"

    @property
    def profile_key(self) -> str:
        """Identity the behavior profile is kept under."""
        user_id = self.user_id
        return f"user:{user_id}" if user_id else f"ip:{self.client_ip}"

    @property
    def fingerprint(self) -> str:
        return device_fingerprint(self.headers)

    def components(self) -> dict[str, str]:
        """Strings handed to the signature matcher, keyed by component name."""
        parts = {
            "url": self.decoded_url,
            "raw-url": self.raw_url,
        }
        for name in ("user-agent", "referer", "origin", "content-type"):
            value = self.headers.get(name)
            if value:
                parts[name] = value
        return parts


def get_client_ip(request: Request) -> str:
    """Extract the real client IP, respecting proxy headers."""
    for header in ("cf-connecting-ip", "x-real-ip"):
        value = request.headers.get(header)
        if value:
            return value.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "0.0.0.0"


def build_context(request: Request) -> RequestContext:
    """Build a RequestContext from a FastAPI Request."""
    try:
        body_length = int(request.headers.get("content-length", 0))
    except ValueError:
        body_length = 0
    return RequestContext(
        client_ip=get_client_ip(request),
        method=request.method.upper(),
        path=request.url.path or "/",
        query=request.url.query,
        headers={k.lower(): v for k, v in request.headers.items()},
        cookies=dict(request.cookies),
        scheme=request.url.scheme,
        body_length=body_length,
    )
