"""
Bastion — Score Fusion & Decision Engine.

Combines per-detector ThreatVectors into one score, compares it with
adaptive thresholds and picks an action:

    score ≥ autoBlock or identity threat > 94 → NEUTRALIZE
    score ≥ block                             → BLOCK      (proof-of-work bypass)
    score ≥ challenge                         → CHALLENGE  (session / credentials / puzzle)
    score ≥ monitor                           → RATE_LIMIT
    otherwise                                 → ALLOW

A system-wide "threat heat" term rises while a large share of identities
look hostile, pushing every score up and tightening the global block
threshold until the pressure subsides.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from collections import Counter
from dataclasses import dataclass, replace
from typing import Iterable, Optional, Sequence

from bastion.config import Settings, settings as default_settings
from bastion.detection.types import Action, Decision, ThreatSource, ThreatVector
from bastion.storage.reputation import ClientReputation

logger = logging.getLogger("bastion.detection.fusion")

SOURCE_MULTIPLIERS = {
    ThreatSource.ML: 1.5,
    ThreatSource.REPUTATION: 1.3,
}

NEUTRALIZE_THREAT = 94.0
HOSTILE_THREAT = 70.0
HOSTILE_BLOCK_SHIFT = 18.0
LOW_TRUST = 30.0
LOW_TRUST_CHALLENGE_SHIFT = 12.0
HIGH_TRUST = 80.0
HIGH_TRUST_RELAX = 5.0
HEAT_BLOCK_SHIFT = 6.0

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def _base36(n: int) -> str:
    if n <= 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_BASE36[r])
    return "".join(reversed(out))


def new_incident_id(now: Optional[float] = None) -> str:
    """Unique, roughly time-ordered id used to correlate a decision across logs."""
    now = time.time() if now is None else now
    return f"DEF-{_base36(int(now * 1000))}-{secrets.token_hex(3).upper()}"


# ── Fusion ───────────────────────────────────────────────

class ScoreFusion:
    """Confidence and source weighted average plus the global heat term."""

    def __init__(self, heat_weight: float = 0.35) -> None:
        self.heat_weight = heat_weight

    @staticmethod
    def weight(vector: ThreatVector) -> float:
        return vector.confidence / 100.0 * SOURCE_MULTIPLIERS.get(vector.source, 1.0)

    def fuse(self, vectors: Sequence[ThreatVector], heat: float = 0.0) -> tuple[float, float]:
        """Return (score, confidence), both in [0, 100]."""
        total = sum(self.weight(v) for v in vectors)
        if total <= 0:
            base, confidence = 0.0, 0.0
        else:
            base = sum(v.score * self.weight(v) for v in vectors) / total
            confidence = sum(v.confidence * self.weight(v) for v in vectors) / total
        score = min(100.0, base + heat * self.heat_weight)
        return score, confidence


# ── Thresholds ───────────────────────────────────────────

@dataclass(frozen=True)
class Thresholds:
    auto_block: float
    block: float
    challenge: float
    monitor: float

    def ordered(self, block_floor: float = 0.0) -> "Thresholds":
        """Clamp into [0, 100] and restore autoBlock ≥ block ≥ challenge ≥ monitor."""
        block = min(100.0, max(block_floor, self.block))
        challenge = min(block, max(0.0, self.challenge))
        monitor = min(challenge, max(0.0, self.monitor))
        auto_block = min(100.0, max(block, self.auto_block))
        return Thresholds(auto_block=auto_block, block=block, challenge=challenge, monitor=monitor)

    def to_dict(self) -> dict:
        return {
            "auto_block": round(self.auto_block, 2),
            "block": round(self.block, 2),
            "challenge": round(self.challenge, 2),
            "monitor": round(self.monitor, 2),
        }


class AdaptiveThresholds:
    """Global thresholds (tightened under heat) plus per-identity adjustment."""

    def __init__(self, config: Optional[Settings] = None) -> None:
        cfg = config or default_settings
        self.block_floor = cfg.threshold_block_floor
        self.base = Thresholds(
            auto_block=cfg.threshold_auto_block,
            block=cfg.threshold_block,
            challenge=cfg.threshold_challenge,
            monitor=cfg.threshold_monitor,
        ).ordered()
        self._current = self.base

    @property
    def current(self) -> Thresholds:
        return self._current

    def tighten(self, shift: float = HEAT_BLOCK_SHIFT) -> Thresholds:
        cur = self._current
        self._current = replace(cur, block=cur.block - shift).ordered(self.block_floor)
        return self._current

    def relax(self, shift: float = HEAT_BLOCK_SHIFT) -> Thresholds:
        cur = self._current
        block = min(self.base.block, cur.block + shift)
        self._current = replace(
            cur,
            block=block,
            challenge=self.base.challenge,
            monitor=self.base.monitor,
        ).ordered(self.block_floor)
        return self._current

    def reset(self) -> None:
        self._current = self.base

    def for_identity(self, reputation: Optional[ClientReputation]) -> Thresholds:
        t = self._current
        if reputation is None:
            return t
        if reputation.threat > HOSTILE_THREAT:
            t = replace(t, block=t.block - HOSTILE_BLOCK_SHIFT)
        if reputation.trust < LOW_TRUST:
            t = replace(t, challenge=t.challenge - LOW_TRUST_CHALLENGE_SHIFT)
        elif reputation.trust > HIGH_TRUST and reputation.threat <= HOSTILE_THREAT:
            t = Thresholds(
                auto_block=t.auto_block,
                block=t.block + HIGH_TRUST_RELAX,
                challenge=t.challenge + HIGH_TRUST_RELAX,
                monitor=t.monitor + HIGH_TRUST_RELAX,
            )
        return t.ordered(self.block_floor)


class ThreatHeat:
    """System-wide threat pressure in [0, 100]."""

    def __init__(self, config: Optional[Settings] = None) -> None:
        cfg = config or default_settings
        self.step = cfg.heat_step
        self.decay = cfg.heat_decay
        self.population_min = cfg.heat_population_min
        self.rate_threshold = cfg.heat_rate_threshold
        self.value = 0.0

    def under_attack(self, fraction: float, population: int) -> bool:
        return population >= self.population_min and fraction > self.rate_threshold

    def raise_(self) -> float:
        self.value = min(100.0, self.value + self.step)
        return self.value

    def cool(self) -> float:
        self.value = max(0.0, self.value - self.decay)
        return self.value


# ── Decision ─────────────────────────────────────────────

@dataclass(frozen=True)
class Floor:
    """Minimum action forced by a hard signal, regardless of the fused score."""
    action: Action
    reason: str


class DecisionEngine:
    """Fuses vectors and maps the result to an action."""

    def __init__(self, config: Optional[Settings] = None) -> None:
        self.config = config or default_settings
        self.fusion = ScoreFusion(self.config.heat_weight)
        self.thresholds = AdaptiveThresholds(self.config)
        self.heat = ThreatHeat(self.config)
        self._lock = threading.Lock()
        self._counts: Counter[str] = Counter()
        self._last_adapt: float = 0.0

    def decide(
        self,
        vectors: Sequence[ThreatVector],
        reputation: Optional[ClientReputation] = None,
        floors: Iterable[Floor] = (),
        now: Optional[float] = None,
    ) -> Decision:
        score, confidence = self.fusion.fuse(vectors, self.heat.value)
        t = self.thresholds.for_identity(reputation)
        threat = reputation.threat if reputation is not None else 0.0

        if score >= t.auto_block or threat > NEUTRALIZE_THREAT:
            action = Action.NEUTRALIZE
            reason = (
                f"identity threat {threat:.0f}" if threat > NEUTRALIZE_THREAT
                else f"score {score:.1f} ≥ auto-block {t.auto_block:.0f}"
            )
        elif score >= t.block:
            action, reason = Action.BLOCK, f"score {score:.1f} ≥ block {t.block:.0f}"
        elif score >= t.challenge:
            action, reason = Action.CHALLENGE, f"score {score:.1f} ≥ challenge {t.challenge:.0f}"
        elif score >= t.monitor:
            action, reason = Action.RATE_LIMIT, f"score {score:.1f} ≥ monitor {t.monitor:.0f}"
        else:
            action, reason = Action.ALLOW, ""

        applied = []
        for floor in floors:
            raised = action.at_least(floor.action)
            if raised is not action:
                action, reason = raised, floor.reason
            applied.append(floor.reason)

        decision = Decision(
            action=action,
            score=score,
            confidence=confidence,
            incident_id=new_incident_id(now),
            vectors=tuple(vectors),
            bypass_available=action in (Action.BLOCK, Action.CHALLENGE),
            challenge_type="pow" if action in (Action.BLOCK, Action.CHALLENGE) else None,
            reason=reason,
            floors=tuple(applied),
        )
        with self._lock:
            self._counts[action.value] += 1
        return decision

    # ── Adaptation ───────────────────────────────────────

    def adapt(self, fraction: float, population: int, now: Optional[float] = None) -> Thresholds:
        """Hourly: raise heat and tighten under sustained attack, else cool and relax."""
        self._last_adapt = time.time() if now is None else now
        if self.heat.under_attack(fraction, population):
            heat = self.heat.raise_()
            t = self.thresholds.tighten()
            logger.warning(
                "Threat heat raised to %.0f (%.1f%% of %d identities hostile), block threshold %.0f",
                heat, 100.0 * fraction, population, t.block,
            )
        else:
            self.heat.cool()
            t = self.thresholds.relax()
        return t

    def adapt_due(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now - self._last_adapt >= self.config.adapt_interval_sec

    # ── Info ─────────────────────────────────────────────

    def info(self) -> dict:
        with self._lock:
            counts = dict(self._counts)
        return {
            "thresholds": self.thresholds.current.to_dict(),
            "base_thresholds": self.thresholds.base.to_dict(),
            "heat": round(self.heat.value, 2),
            "decisions": counts,
            "last_adapted": self._last_adapt or None,
        }
