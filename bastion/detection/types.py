"""
Bastion — Shared detection types.

ThreatVector is a single detector's opinion; Decision is the fused verdict
for one request. Both are immutable once built.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ThreatSource(str, Enum):
    ML = "ML"
    RULES = "RULES"
    BEHAVIOR = "BEHAVIOR"
    REPUTATION = "REPUTATION"
    HISTORY = "HISTORY"
    TRUST = "TRUST"


class Action(str, Enum):
    """Decision actions, ordered from least to most severe."""
    ALLOW = "ALLOW"
    RATE_LIMIT = "RATE_LIMIT"
    CHALLENGE = "CHALLENGE"
    BLOCK = "BLOCK"
    NEUTRALIZE = "NEUTRALIZE"

    @property
    def rank(self) -> int:
        return _ACTION_RANK[self]

    def at_least(self, other: "Action") -> "Action":
        """Return the more severe of the two actions."""
        return self if self.rank >= other.rank else other


_ACTION_RANK = {
    Action.ALLOW: 0,
    Action.RATE_LIMIT: 1,
    Action.CHALLENGE: 2,
    Action.BLOCK: 3,
    Action.NEUTRALIZE: 4,
}


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def weight(self) -> int:
        return {"LOW": 1, "MEDIUM": 2, "HIGH": 3, "CRITICAL": 4}[self.value]


class TrustLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    ABSOLUTE = "ABSOLUTE"

    @property
    def priority(self) -> int:
        return {"LOW": 1, "MEDIUM": 2, "HIGH": 3, "ABSOLUTE": 4}[self.value]


def _clamp(value: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return max(lo, min(hi, value))


@dataclass(frozen=True)
class ThreatVector:
    """One detector's opinion: score and confidence both in [0, 100]."""
    name: str
    score: float
    confidence: float
    source: ThreatSource
    details: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "score", _clamp(float(self.score)))
        object.__setattr__(self, "confidence", _clamp(float(self.confidence)))

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "score": round(self.score, 2),
            "confidence": round(self.confidence, 2),
            "source": self.source.value,
            "details": list(self.details),
        }


@dataclass(frozen=True)
class Decision:
    """Fused verdict for a single request."""
    action: Action
    score: float
    confidence: float
    incident_id: str
    vectors: tuple[ThreatVector, ...] = ()
    bypass_available: bool = False
    challenge_type: Optional[str] = None
    reason: str = ""
    floors: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "action": self.action.value,
            "score": round(self.score, 2),
            "confidence": round(self.confidence, 2),
            "incident_id": self.incident_id,
            "bypass_available": self.bypass_available,
            "challenge_type": self.challenge_type,
            "reason": self.reason,
            "floors": list(self.floors),
            "vectors": [v.to_dict() for v in self.vectors],
        }
