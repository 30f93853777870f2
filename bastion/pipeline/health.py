"""
Bastion — Health Monitor & Circuit Breakers.

Per-component breaker state machine:

    CLOSED ──(N consecutive failures within window)──▶ OPEN
    OPEN ──(cooldown elapsed)──▶ HALF_OPEN
    HALF_OPEN ──(success)──▶ CLOSED
    HALF_OPEN ──(failure)──▶ OPEN

Also keeps a rolling latency / outcome history per component, from which
percentiles, success ratio and an overall system health score are derived.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Deque, Optional, TypeVar

import numpy as np

from bastion.config import Settings, settings as default_settings

logger = logging.getLogger("bastion.pipeline.health")

T = TypeVar("T")

HISTORY_SIZE = 100


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerState:
    name: str
    state: BreakerState = BreakerState.CLOSED
    failure_count: int = 0
    first_failure_time: float = 0.0
    last_failure_time: float = 0.0
    opened_at: float = 0.0
    half_open_attempts: int = 0
    successes: int = 0
    failures: int = 0
    skips: int = 0
    latencies: Deque[float] = field(default_factory=lambda: deque(maxlen=HISTORY_SIZE))
    outcomes: Deque[bool] = field(default_factory=lambda: deque(maxlen=HISTORY_SIZE))

    @property
    def is_open(self) -> bool:
        return self.state is BreakerState.OPEN

    @property
    def success_ratio(self) -> float:
        if not self.outcomes:
            return 1.0
        return sum(self.outcomes) / len(self.outcomes)

    def percentiles(self) -> dict[str, float]:
        if not self.latencies:
            return {"p50": 0.0, "p95": 0.0, "p99": 0.0}
        p50, p95, p99 = np.percentile(np.fromiter(self.latencies, dtype=np.float64), [50, 95, 99])
        return {"p50": float(p50), "p95": float(p95), "p99": float(p99)}

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time or None,
            "opened_at": self.opened_at or None,
            "half_open_attempts": self.half_open_attempts,
            "successes": self.successes,
            "failures": self.failures,
            "skips": self.skips,
            "success_ratio": round(self.success_ratio, 4),
            "latency_ms": {k: round(v * 1000, 2) for k, v in self.percentiles().items()},
        }


class HealthMonitor:
    """Tracks component health and decides which components to skip."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        cfg = config or default_settings
        self.failure_threshold = cfg.breaker_failure_threshold
        self.failure_window = cfg.breaker_failure_window_sec
        self.cooldown = cfg.breaker_cooldown_sec
        self.half_open_budget = cfg.breaker_half_open_attempts
        self.throttle_below = cfg.health_throttle_below
        self._clock = clock
        self._breakers: dict[str, CircuitBreakerState] = {}
        self._lock = threading.Lock()

    def _breaker(self, name: str) -> CircuitBreakerState:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = self._breakers[name] = CircuitBreakerState(name=name)
        return breaker

    # ── State machine ────────────────────────────────────

    def should_skip(self, name: str) -> bool:
        """
        True while the breaker is open, or half-open with its trial budget
        spent. A call that is not skipped while half-open consumes one trial.
        """
        with self._lock:
            b = self._breaker(name)
            now = self._clock()
            if b.state is BreakerState.OPEN:
                if now - b.opened_at < self.cooldown:
                    b.skips += 1
                    return True
                b.state = BreakerState.HALF_OPEN
                b.half_open_attempts = 0
                logger.info("Circuit %s half-open after %.0fs cooldown", name, now - b.opened_at)
            if b.state is BreakerState.HALF_OPEN:
                if b.half_open_attempts >= self.half_open_budget:
                    b.skips += 1
                    return True
                b.half_open_attempts += 1
            return False

    def record_success(self, name: str, latency: float = 0.0) -> None:
        with self._lock:
            b = self._breaker(name)
            b.successes += 1
            b.latencies.append(latency)
            b.outcomes.append(True)
            b.failure_count = 0
            if b.state is BreakerState.HALF_OPEN:
                b.state = BreakerState.CLOSED
                b.half_open_attempts = 0
                logger.info("Circuit %s closed", name)

    def record_failure(self, name: str, latency: float = 0.0) -> None:
        with self._lock:
            b = self._breaker(name)
            now = self._clock()
            b.failures += 1
            b.latencies.append(latency)
            b.outcomes.append(False)
            b.last_failure_time = now

            if b.state is BreakerState.HALF_OPEN:
                self._open(b, now)
                return

            if b.failure_count == 0 or now - b.first_failure_time > self.failure_window:
                b.failure_count = 0
                b.first_failure_time = now
            b.failure_count += 1
            if b.state is BreakerState.CLOSED and b.failure_count >= self.failure_threshold:
                self._open(b, now)

    def _open(self, b: CircuitBreakerState, now: float) -> None:
        b.state = BreakerState.OPEN
        b.opened_at = now
        b.half_open_attempts = 0
        logger.warning("Circuit %s opened after %d failure(s)", b.name, b.failure_count or 1)

    def state(self, name: str) -> BreakerState:
        with self._lock:
            return self._breaker(name).state

    def open_circuits(self) -> list[str]:
        with self._lock:
            return sorted(n for n, b in self._breakers.items() if b.state is not BreakerState.CLOSED)

    def reset(self, name: Optional[str] = None) -> None:
        with self._lock:
            if name is None:
                self._breakers.clear()
            else:
                self._breakers.pop(name, None)

    # ── Execution wrapper ────────────────────────────────

    async def execute(
        self,
        name: str,
        fn: Callable[[], Awaitable[T]],
        fallback: Optional[T] = None,
    ) -> Optional[T]:
        """
        Run ``fn`` under the component's breaker. Skipped or failed calls
        return ``fallback``; exceptions never propagate.
        """
        if self.should_skip(name):
            return fallback
        start = self._clock()
        try:
            result = await fn()
        except Exception:
            self.record_failure(name, self._clock() - start)
            logger.warning("Component %s failed, using fallback", name, exc_info=True)
            return fallback
        self.record_success(name, self._clock() - start)
        return result

    # ── Aggregates ───────────────────────────────────────

    def system_health(self) -> float:
        """0-100: mean success ratio, with open breakers counting as zero."""
        with self._lock:
            breakers = list(self._breakers.values())
            if not breakers:
                return 100.0
            scores = [0.0 if b.is_open else b.success_ratio for b in breakers]
        return round(100.0 * sum(scores) / len(scores), 2)

    def should_throttle(self) -> bool:
        return self.system_health() < self.throttle_below

    def snapshot(self) -> dict:
        with self._lock:
            breakers = {n: b.to_dict() for n, b in self._breakers.items()}
        return {
            "system_health": self.system_health(),
            "throttle": self.should_throttle(),
            "breakers": breakers,
        }
