"""
Bastion — Defense Engine.

Owns the detection state shared by every request (reputation, profiles,
trust registry, classifier, statistics, thresholds) and the background
loops that keep it healthy:

  • training loop     retrain the classifier out-of-band and persist it
  • maintenance loop  reputation decay / eviction, profile eviction,
                      challenge purge, trust cleanup, threshold adaptation
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from bastion.config import Settings, settings as default_settings
from bastion.detection.anomaly import AnomalyDetector
from bastion.detection.behavior import BehavioralProfiler
from bastion.detection.features import FeatureExtractor
from bastion.detection.fusion import DecisionEngine
from bastion.detection.ml_model import MLConfig, OnlineClassifier
from bastion.detection.patterns import PatternMatcher
from bastion.detection.statistics import FeatureStatistics
from bastion.detection.trust import TrustRegistry
from bastion.mitigation.challenge import ChallengeManager
from bastion.storage.reputation import ReputationStore

logger = logging.getLogger("bastion.detection")

TRAINING_INTERVAL = 60
MAINTENANCE_INTERVAL = 60


class DefenseEngine:
    """Constructed once per process and handed to the orchestrator and API."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        *,
        seed_trust: bool = True,
        classifier: Optional[OnlineClassifier] = None,
    ) -> None:
        self.config = config or default_settings
        self.reputation = ReputationStore(self.config)
        self.trust = TrustRegistry()
        self.profiler = BehavioralProfiler(self.config)
        self.extractor = FeatureExtractor(self.config.sensitive_paths)
        self.patterns = PatternMatcher()
        self.anomaly = AnomalyDetector()
        self.decisions = DecisionEngine(self.config)
        self.challenges = ChallengeManager(self.config)
        self.classifier = classifier or OnlineClassifier(
            MLConfig.from_settings(self.config), FeatureStatistics(),
        )
        if seed_trust:
            self.trust.seed(self.config.environment)

        self._running = False
        self._tasks: list[asyncio.Task] = []

    @property
    def statistics(self) -> FeatureStatistics:
        return self.classifier.statistics

    async def start(self) -> None:
        """Start background training and maintenance loops."""
        self._running = True
        self._tasks = [
            asyncio.create_task(self._training_loop(), name="bastion-training"),
            asyncio.create_task(self._maintenance_loop(), name="bastion-maintenance"),
        ]
        logger.info(
            "Defense engine started (classifier v%d, %d trusted source(s))",
            self.classifier.version, len(self.trust),
        )

    async def stop(self) -> None:
        """Stop background tasks."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Defense engine stopped")

    # ── Background loops ─────────────────────────────────

    async def _training_loop(self) -> None:
        """Retrain the classifier when the interval elapsed or feedback piled up."""
        while self._running:
            try:
                await asyncio.sleep(TRAINING_INTERVAL)
                trained = await self.classifier.maybe_train()
                if trained:
                    logger.info(
                        "Classifier retrained (v%d), buffer=%d",
                        self.classifier.version, self.classifier.sample_count,
                    )
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in training loop")

    async def _maintenance_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(MAINTENANCE_INTERVAL)
                await asyncio.to_thread(self.run_maintenance)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in maintenance loop")

    def run_maintenance(self, now: Optional[float] = None) -> dict:
        """One maintenance pass. Safe to run alongside live requests."""
        now = time.time() if now is None else now
        report = {
            "reputation_evicted": self.reputation.decay_and_evict(now),
            "profiles_evicted": self.profiler.evict(now),
            "challenges_purged": self.challenges.purge(now),
            "trust_expired": self.trust.cleanup(now),
            "adapted": False,
        }
        if self.decisions.adapt_due(now):
            self.adapt_thresholds(now)
            report["adapted"] = True
        logger.debug("Maintenance pass: %s", report)
        return report

    def adapt_thresholds(self, now: Optional[float] = None) -> dict:
        fraction, population = self.reputation.high_threat_fraction()
        self.decisions.adapt(fraction, population, now)
        return self.decisions.info()

    # ── Info ─────────────────────────────────────────────

    def info(self) -> dict:
        return {
            "identities": len(self.reputation),
            "profiles": len(self.profiler),
            "trusted_sources": len(self.trust),
            "pending_challenges": len(self.challenges),
            "signatures_version": self.patterns.version,
            "decision": self.decisions.info(),
            "classifier": self.classifier.info(),
        }
