"""
Bastion — Statistical Anomaly Detector.

Flags features whose z-score against the running statistics exceeds a
fixed threshold. Works independently of the classifier, so a novel
request shape is still noticed before any labels exist.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from bastion.detection.features import FEATURE_NAMES, FeatureVector
from bastion.detection.statistics import StatsSnapshot

Z_THRESHOLD = 2.5
# Mean z-score that maps to a full anomaly score of 1.0
Z_SATURATION = 10.0


@dataclass(frozen=True)
class AnomalyResult:
    is_anomaly: bool
    anomaly_score: float
    flagged_features: dict[str, float]

    def reasons(self, top: int = 3) -> list[str]:
        ranked = sorted(self.flagged_features.items(), key=lambda kv: kv[1], reverse=True)
        return [f"{name} z={z:.1f}" for name, z in ranked[:top]]


NO_ANOMALY = AnomalyResult(is_anomaly=False, anomaly_score=0.0, flagged_features={})


class AnomalyDetector:
    """Per-feature z-score outlier detection."""

    def __init__(self, threshold: float = Z_THRESHOLD) -> None:
        self.threshold = threshold

    def detect(self, features: FeatureVector, snapshot: StatsSnapshot) -> AnomalyResult:
        z = snapshot.zscores(features.as_array())
        # NaN marks features without usable statistics (cold or zero variance)
        usable = ~np.isnan(z)
        flagged_mask = np.zeros_like(usable)
        flagged_mask[usable] = z[usable] > self.threshold
        if not flagged_mask.any():
            return NO_ANOMALY

        flagged = {FEATURE_NAMES[i]: float(z[i]) for i in np.flatnonzero(flagged_mask)}
        score = min(1.0, float(np.mean(list(flagged.values()))) / Z_SATURATION)
        return AnomalyResult(is_anomaly=True, anomaly_score=score, flagged_features=flagged)
