"""
Bastion — Client Reputation Store.

Per-identity trust and threat, two independent axes clamped to [0, 100].
Mutated after every decision, decayed during inactivity, evicted on TTL.
"""

from __future__ import annotations

import copy
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Optional

from bastion.config import Settings, settings as default_settings
from bastion.detection.types import Action
from bastion.storage.sharded import ShardedMap

logger = logging.getLogger("bastion.storage.reputation")

INITIAL_TRUST = 50.0
INITIAL_THREAT = 0.0
HISTORY_SIZE = 20
HIGH_THREAT = 70.0

DAY = 86400.0


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


@dataclass
class ClientReputation:
    """Mutable reputation record for one client identity."""
    identity: str
    trust: float = INITIAL_TRUST
    threat: float = INITIAL_THREAT
    session_count: int = 0
    first_seen: float = 0.0
    last_seen: float = 0.0
    auto_trust: bool = False
    block_count: int = 0
    decayed_at: float = 0.0
    recent_scores: Deque[float] = field(default_factory=lambda: deque(maxlen=HISTORY_SIZE))

    def clamp(self) -> None:
        self.trust = _clamp(self.trust)
        self.threat = _clamp(self.threat)

    @property
    def history_score(self) -> float:
        if not self.recent_scores:
            return 0.0
        return sum(self.recent_scores) / len(self.recent_scores)

    def to_dict(self) -> dict:
        return {
            "identity": self.identity,
            "trust": round(self.trust, 2),
            "threat": round(self.threat, 2),
            "session_count": self.session_count,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "auto_trust": self.auto_trust,
            "block_count": self.block_count,
            "history_score": round(self.history_score, 2),
        }


class ReputationStore:
    """Sharded reputation map with per-key synchronization."""

    def __init__(self, config: Optional[Settings] = None, shards: int = 64) -> None:
        self.config = config or default_settings
        self._items: ShardedMap[ClientReputation] = ShardedMap(shards)

    def __len__(self) -> int:
        return len(self._items)

    # ── Reads (return detached copies) ───────────────────

    def get(self, identity: str) -> Optional[ClientReputation]:
        rep = self._items.get(identity)
        return copy.deepcopy(rep) if rep is not None else None

    def snapshot(self, identity: str, now: Optional[float] = None) -> ClientReputation:
        """Current state, creating the record on first sight."""
        return self.update(identity, lambda rep: None, now=now, touch=False)

    # ── Writes ───────────────────────────────────────────

    def update(
        self,
        identity: str,
        mutate: Callable[[ClientReputation], None],
        now: Optional[float] = None,
        touch: bool = True,
    ) -> ClientReputation:
        """Apply ``mutate`` under the key's lock; clamps afterwards."""
        now = time.time() if now is None else now

        def factory() -> ClientReputation:
            return ClientReputation(
                identity=identity, first_seen=now, last_seen=now, decayed_at=now,
            )

        with self._items.locked(identity, factory) as rep:
            self._decay(rep, now)
            mutate(rep)
            if touch:
                rep.last_seen = now
            rep.clamp()
            return copy.deepcopy(rep)

    def adjust(
        self,
        identity: str,
        trust: float = 0.0,
        threat: float = 0.0,
        now: Optional[float] = None,
    ) -> ClientReputation:
        def mutate(rep: ClientReputation) -> None:
            rep.trust += trust
            rep.threat += threat
        return self.update(identity, mutate, now=now, touch=False)

    def set_values(
        self,
        identity: str,
        trust: Optional[float] = None,
        threat: Optional[float] = None,
        auto_trust: Optional[bool] = None,
        now: Optional[float] = None,
    ) -> ClientReputation:
        def mutate(rep: ClientReputation) -> None:
            if trust is not None:
                rep.trust = trust
            if threat is not None:
                rep.threat = threat
            if auto_trust is not None:
                rep.auto_trust = auto_trust
        return self.update(identity, mutate, now=now, touch=False)

    def apply_decision(
        self,
        identity: str,
        action: Action,
        score: float,
        now: Optional[float] = None,
    ) -> ClientReputation:
        """Commit a decision's side effects to the identity's reputation."""
        cfg = self.config

        def mutate(rep: ClientReputation) -> None:
            rep.session_count += 1
            rep.recent_scores.append(score)
            if action is Action.ALLOW:
                rep.trust += cfg.clean_allow_trust_delta
                rep.threat -= cfg.clean_allow_threat_delta
                if (
                    not rep.auto_trust
                    and rep.session_count >= cfg.auto_trust_sessions
                    and rep.threat < cfg.auto_trust_max_threat
                ):
                    rep.auto_trust = True
                    logger.info(
                        "Auto-trust granted to %s after %d sessions",
                        identity, rep.session_count,
                    )
            elif action is Action.RATE_LIMIT:
                rep.threat += cfg.rate_limit_threat_delta
            elif action is Action.CHALLENGE:
                rep.threat += cfg.challenge_threat_delta
            else:
                rep.threat += cfg.block_threat_delta
                rep.trust -= cfg.block_trust_delta
                rep.block_count += 1
                if rep.auto_trust:
                    rep.auto_trust = False
                    logger.warning("Auto-trust revoked for %s", identity)

        return self.update(identity, mutate, now=now)

    # ── Maintenance ──────────────────────────────────────

    def decay_and_evict(self, now: Optional[float] = None) -> int:
        """Apply inactivity decay everywhere and drop records past TTL."""
        now = time.time() if now is None else now
        ttl = self.config.reputation_ttl_days * DAY

        def visit(_: str, rep: ClientReputation) -> bool:
            if now - rep.last_seen > ttl:
                return True
            self._decay(rep, now)
            rep.clamp()
            return False

        evicted = self._items.sweep(visit)
        if evicted:
            logger.info("Evicted %d inactive reputation record(s)", evicted)
        return evicted

    def high_threat_fraction(self, threshold: float = HIGH_THREAT) -> tuple[float, int]:
        """(fraction of identities with threat above ``threshold``, population)."""
        records = self._items.values()
        if not records:
            return 0.0, 0
        high = sum(1 for rep in records if rep.threat > threshold)
        return high / len(records), len(records)

    def clear(self) -> None:
        self._items.clear()

    # ── Internal ─────────────────────────────────────────

    def _decay(self, rep: ClientReputation, now: float) -> None:
        period = self.config.reputation_decay_days * DAY
        if period <= 0 or now - rep.last_seen < period:
            return
        reference = max(rep.last_seen, rep.decayed_at)
        periods = int((now - reference) // period)
        if periods <= 0:
            return
        neutral = self.config.reputation_neutral_trust
        for _ in range(periods):
            rep.threat *= 0.5
            if rep.trust > neutral:
                rep.trust = max(neutral, rep.trust * 0.9)
        rep.decayed_at = reference + periods * period
