"""
Bastion — Device Fingerprinting.

Derives a stable device identifier from header-order and client-hint
signals so device changes can be noticed independently of IP address.
"""

from __future__ import annotations

import hashlib
import json
from typing import Mapping

# Headers whose values describe the client software / device
_DEVICE_HEADERS = (
    "user-agent",
    "accept-language",
    "accept-encoding",
    "sec-ch-ua",
    "sec-ch-ua-platform",
    "sec-ch-ua-mobile",
)

# Headers that vary per request and must not influence header-order hashing
_VOLATILE_HEADERS = frozenset([
    "cookie", "authorization", "content-length", "content-type",
    "referer", "origin", "x-forwarded-for", "x-real-ip", "cf-connecting-ip",
    "x-api-key", "x-user-id", "if-none-match", "if-modified-since",
])


def compute_header_order_hash(headers: Mapping[str, str]) -> str:
    """Hash of header keys in received order, unique per HTTP stack."""
    keys = [k.lower() for k in headers.keys() if k.lower() not in _VOLATILE_HEADERS]
    return hashlib.md5(json.dumps(keys).encode()).hexdigest()


def device_fingerprint(headers: Mapping[str, str]) -> str:
    """Deterministic 16-hex-char device identifier."""
    lowered = {k.lower(): v for k, v in headers.items()}
    parts = [lowered.get(name, "") for name in _DEVICE_HEADERS]
    parts.append(compute_header_order_hash(lowered))
    return hashlib.sha256("|".join(parts).encode()).hexdigest()[:16]
