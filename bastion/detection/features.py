"""
Bastion — Feature Extraction.

Turns a request plus a read-only snapshot of its identity's history into a
fixed, named numeric vector. Ratios and flags are already in [0, 1];
counts stay raw and are normalized downstream by FeatureStatistics.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Mapping, Optional
from urllib.parse import parse_qsl

import numpy as np

from bastion.proxy.context import RequestContext


class FeatureKind(str, Enum):
    RATIO = "ratio"   # already in [0, 1]
    COUNT = "count"   # raw, normalized via running statistics


# name -> (kind, default scale used when no statistics exist yet)
FEATURE_SPECS: dict[str, tuple[FeatureKind, float]] = {
    # URL shape
    "url_length": (FeatureKind.COUNT, 200.0),
    "path_depth": (FeatureKind.COUNT, 10.0),
    "query_length": (FeatureKind.COUNT, 200.0),
    "query_param_count": (FeatureKind.COUNT, 10.0),
    "special_char_ratio": (FeatureKind.RATIO, 1.0),
    "encoded_char_ratio": (FeatureKind.RATIO, 1.0),
    "digit_ratio": (FeatureKind.RATIO, 1.0),
    "path_entropy": (FeatureKind.RATIO, 1.0),
    "has_file_extension": (FeatureKind.RATIO, 1.0),
    "sensitive_path": (FeatureKind.RATIO, 1.0),
    "traversal_count": (FeatureKind.COUNT, 3.0),
    "sql_keyword_count": (FeatureKind.COUNT, 3.0),
    "script_token_count": (FeatureKind.COUNT, 3.0),
    # Header shape
    "header_count": (FeatureKind.COUNT, 30.0),
    "user_agent_length": (FeatureKind.COUNT, 200.0),
    "ua_missing": (FeatureKind.RATIO, 1.0),
    "ua_automated": (FeatureKind.RATIO, 1.0),
    "accept_missing": (FeatureKind.RATIO, 1.0),
    "has_accept_language": (FeatureKind.RATIO, 1.0),
    "has_referer": (FeatureKind.RATIO, 1.0),
    "has_cookie": (FeatureKind.RATIO, 1.0),
    "has_auth": (FeatureKind.RATIO, 1.0),
    "content_length": (FeatureKind.COUNT, 100_000.0),
    "unusual_method": (FeatureKind.RATIO, 1.0),
    # Behavioral counters
    "requests_last_minute": (FeatureKind.COUNT, 60.0),
    "requests_last_hour": (FeatureKind.COUNT, 600.0),
    "unique_paths": (FeatureKind.COUNT, 100.0),
    "distinct_devices": (FeatureKind.COUNT, 5.0),
    "failed_auth_streak": (FeatureKind.COUNT, 5.0),
    "request_interval": (FeatureKind.COUNT, 60.0),
    # Temporal
    "is_night": (FeatureKind.RATIO, 1.0),
    "is_weekend": (FeatureKind.RATIO, 1.0),
    # Geographic
    "geo_unknown": (FeatureKind.RATIO, 1.0),
    "geo_proxy": (FeatureKind.RATIO, 1.0),
    "new_country": (FeatureKind.RATIO, 1.0),
    # Historical reputation
    "reputation_trust": (FeatureKind.RATIO, 1.0),
    "reputation_threat": (FeatureKind.RATIO, 1.0),
    "session_count": (FeatureKind.COUNT, 100.0),
    "prior_blocks": (FeatureKind.COUNT, 3.0),
    "history_score": (FeatureKind.RATIO, 1.0),
}

FEATURE_NAMES: list[str] = list(FEATURE_SPECS)

COMMON_METHODS = frozenset(["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"])

_SPECIAL_CHARS = frozenset("'\"<>;(){}|$`\\")
_AUTOMATION_TOKENS = (
    "python-requests", "python-urllib", "curl", "wget", "go-http-client",
    "httpclient", "java/", "libwww", "okhttp", "headless", "phantomjs",
    "selenium", "puppeteer", "scrapy", "bot", "crawler", "spider",
)
_SQL_KEYWORDS = re.compile(
    r"\b(select|union|insert|update|delete|drop|from|where|or\s+1=1|sleep|benchmark)\b",
    re.IGNORECASE,
)
_SCRIPT_TOKENS = re.compile(r"<\s*script|javascript:|on\w+\s*=|eval\s*\(|document\.", re.IGNORECASE)
_TRAVERSAL = re.compile(r"\.\./|\.\.\\|%2e%2e", re.IGNORECASE)
_FILE_EXTENSION = re.compile(r"\.[a-z0-9]{1,5}$", re.IGNORECASE)


@dataclass(frozen=True)
class IdentityHistory:
    """Read-only snapshot of an identity's past, taken before extraction."""
    requests_last_minute: int = 0
    requests_last_hour: int = 0
    unique_paths: int = 0
    distinct_devices: int = 0
    failed_auth_streak: int = 0
    mean_interval: float = 0.0
    known_countries: frozenset[str] = frozenset()
    trust: float = 50.0
    threat: float = 0.0
    session_count: int = 0
    block_count: int = 0
    history_score: float = 0.0


@dataclass(frozen=True)
class FeatureVector:
    """Named feature values in FEATURE_NAMES order."""
    values: Mapping[str, float] = field(default_factory=dict)

    def __getitem__(self, name: str) -> float:
        return self.values[name]

    def get(self, name: str, default: float = 0.0) -> float:
        return self.values.get(name, default)

    def as_array(self) -> np.ndarray:
        return np.array([float(self.values.get(n, 0.0)) for n in FEATURE_NAMES], dtype=np.float64)

    @classmethod
    def from_array(cls, arr: Iterable[float]) -> "FeatureVector":
        return cls(dict(zip(FEATURE_NAMES, (float(v) for v in arr))))

    def to_dict(self) -> dict[str, float]:
        return {n: round(float(self.values.get(n, 0.0)), 4) for n in FEATURE_NAMES}


class FeatureExtractor:
    """Pure request -> FeatureVector mapping."""

    def __init__(self, sensitive_paths: Optional[Iterable[str]] = None) -> None:
        self.sensitive_paths = tuple(sensitive_paths or ())

    def extract(self, ctx: RequestContext, history: Optional[IdentityHistory] = None) -> FeatureVector:
        history = history or IdentityHistory()
        headers = ctx.headers
        raw_url = ctx.raw_url
        decoded = ctx.decoded_url
        ua = ctx.user_agent
        ua_lower = ua.lower()
        geo = ctx.geo
        moment = datetime.fromtimestamp(ctx.timestamp, tz=timezone.utc)

        values = {
            "url_length": float(len(raw_url)),
            "path_depth": float(len([p for p in ctx.path.split("/") if p])),
            "query_length": float(len(ctx.query)),
            "query_param_count": float(len(parse_qsl(ctx.query, keep_blank_values=True))),
            "special_char_ratio": _ratio(sum(1 for c in decoded if c in _SPECIAL_CHARS), len(decoded)),
            "encoded_char_ratio": _ratio(raw_url.count("%") * 3, len(raw_url)),
            "digit_ratio": _ratio(sum(1 for c in ctx.path if c.isdigit()), len(ctx.path)),
            "path_entropy": min(1.0, _entropy(ctx.path) / 6.0),
            "has_file_extension": _flag(_FILE_EXTENSION.search(ctx.path)),
            "sensitive_path": _flag(any(ctx.path.startswith(p) for p in self.sensitive_paths)),
            "traversal_count": float(len(_TRAVERSAL.findall(raw_url))),
            "sql_keyword_count": float(len(_SQL_KEYWORDS.findall(decoded))),
            "script_token_count": float(len(_SCRIPT_TOKENS.findall(decoded))),
            "header_count": float(len(headers)),
            "user_agent_length": float(len(ua)),
            "ua_missing": _flag(not ua),
            "ua_automated": _flag(any(tok in ua_lower for tok in _AUTOMATION_TOKENS)),
            "accept_missing": _flag(not headers.get("accept")),
            "has_accept_language": _flag(headers.get("accept-language")),
            "has_referer": _flag(headers.get("referer")),
            "has_cookie": _flag(ctx.cookies or headers.get("cookie")),
            "has_auth": _flag(ctx.has_credentials),
            "content_length": float(ctx.body_length),
            "unusual_method": _flag(ctx.method not in COMMON_METHODS),
            "requests_last_minute": float(history.requests_last_minute),
            "requests_last_hour": float(history.requests_last_hour),
            "unique_paths": float(history.unique_paths),
            "distinct_devices": float(history.distinct_devices),
            "failed_auth_streak": float(history.failed_auth_streak),
            "request_interval": float(history.mean_interval),
            "is_night": _flag(moment.hour < 6),
            "is_weekend": _flag(moment.weekday() >= 5),
            "geo_unknown": _flag(geo is None or not geo.known),
            "geo_proxy": _flag(geo is not None and (geo.is_proxy or geo.is_hosting)),
            "new_country": _flag(
                geo is not None and geo.known
                and bool(history.known_countries)
                and geo.country_code not in history.known_countries
            ),
            "reputation_trust": history.trust / 100.0,
            "reputation_threat": history.threat / 100.0,
            "session_count": float(history.session_count),
            "prior_blocks": float(history.block_count),
            "history_score": history.history_score / 100.0,
        }
        return FeatureVector(values)


def _flag(value: object) -> float:
    return 1.0 if value else 0.0


def _ratio(part: int, whole: int) -> float:
    if whole <= 0:
        return 0.0
    return min(1.0, part / whole)


def _entropy(text: str) -> float:
    """Shannon entropy in bits per character."""
    if not text:
        return 0.0
    counts = Counter(text)
    total = len(text)
    return -sum((c / total) * math.log2(c / total) for c in counts.values())
