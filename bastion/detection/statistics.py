"""
Bastion — Running Feature Statistics.

Per-feature mean / std / min / max maintained with an exponential moving
average. Used both to normalize classifier inputs and to compute anomaly
z-scores. Readers take an immutable snapshot, so training in a worker
thread never sees a half-applied update.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

import numpy as np

from bastion.detection.features import FEATURE_NAMES, FEATURE_SPECS, FeatureKind, FeatureVector

logger = logging.getLogger("bastion.detection.statistics")

DEFAULT_ALPHA = 0.01
# Observations needed before a feature's statistics are trusted
DEFAULT_WARMUP = 30
EPSILON = 1e-9

_IS_COUNT = np.array([FEATURE_SPECS[n][0] is FeatureKind.COUNT for n in FEATURE_NAMES])
_SCALES = np.array([FEATURE_SPECS[n][1] for n in FEATURE_NAMES], dtype=np.float64)


@dataclass(frozen=True)
class StatsSnapshot:
    """Point-in-time copy of the running statistics."""
    mean: np.ndarray
    var: np.ndarray
    min: np.ndarray
    max: np.ndarray
    count: int
    warmup: int = DEFAULT_WARMUP

    @property
    def std(self) -> np.ndarray:
        return np.sqrt(self.var)

    @property
    def ready(self) -> bool:
        return self.count >= self.warmup

    def normalize(self, x: np.ndarray) -> np.ndarray:
        """
        Map a raw feature array into [0, 1].

        Ratios pass through (clamped). Counts are standardized against the
        running statistics once warm, otherwise min-max clamped against the
        feature's default scale.
        """
        x = np.asarray(x, dtype=np.float64)
        out = np.clip(x, 0.0, 1.0)
        fallback = np.clip(x / _SCALES, 0.0, 1.0)
        if self.ready:
            std = self.std
            usable = _IS_COUNT & (std > EPSILON)
            z = np.zeros_like(x)
            np.divide(x - self.mean, std, out=z, where=usable)
            standardized = np.clip(0.5 + z / 6.0, 0.0, 1.0)
            out = np.where(usable, standardized, np.where(_IS_COUNT, fallback, out))
        else:
            out = np.where(_IS_COUNT, fallback, out)
        return out

    def normalize_batch(self, X: np.ndarray) -> np.ndarray:
        return np.vstack([self.normalize(row) for row in X]) if len(X) else X

    def zscores(self, x: np.ndarray) -> np.ndarray:
        """
        Absolute z-score per feature; NaN where undefined
        (statistics not warm, or zero variance).
        """
        x = np.asarray(x, dtype=np.float64)
        z = np.full(x.shape, np.nan)
        if not self.ready:
            return z
        std = self.std
        usable = std > EPSILON
        np.divide(np.abs(x - self.mean), std, out=z, where=usable)
        return z


class FeatureStatistics:
    """EMA-updated statistics over FEATURE_NAMES."""

    def __init__(self, alpha: float = DEFAULT_ALPHA, warmup: int = DEFAULT_WARMUP) -> None:
        self.alpha = alpha
        self.warmup = warmup
        self._lock = threading.Lock()
        n = len(FEATURE_NAMES)
        self._mean = np.zeros(n)
        self._var = np.zeros(n)
        self._min = np.zeros(n)
        self._max = np.zeros(n)
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    def update(self, features: FeatureVector | np.ndarray) -> None:
        x = features.as_array() if isinstance(features, FeatureVector) else np.asarray(features, dtype=np.float64)
        with self._lock:
            if self._count == 0:
                self._mean = x.copy()
                self._var = np.zeros_like(x)
                self._min = x.copy()
                self._max = x.copy()
            else:
                a = self.alpha
                delta = x - self._mean
                self._mean = self._mean + a * delta
                self._var = (1.0 - a) * (self._var + a * delta * delta)
                self._min = np.minimum(self._min, x)
                self._max = np.maximum(self._max, x)
            self._count += 1

    def snapshot(self) -> StatsSnapshot:
        with self._lock:
            # Variance starts at zero; undo the EMA start-up bias
            var = self._var.copy()
            if self._count > 1:
                var /= max(EPSILON, 1.0 - (1.0 - self.alpha) ** (self._count - 1))
            return StatsSnapshot(
                mean=self._mean.copy(),
                var=var,
                min=self._min.copy(),
                max=self._max.copy(),
                count=self._count,
                warmup=self.warmup,
            )

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "alpha": self.alpha,
                "count": self._count,
                "mean": self._mean.tolist(),
                "var": self._var.tolist(),
                "min": self._min.tolist(),
                "max": self._max.tolist(),
            }

    def load(self, data: dict) -> None:
        """Restore state produced by ``to_dict``."""
        if len(data.get("mean", [])) != len(FEATURE_NAMES):
            logger.warning("Ignoring feature statistics with mismatched shape")
            return
        with self._lock:
            self.alpha = float(data.get("alpha", self.alpha))
            self._count = int(data["count"])
            self._mean = np.array(data["mean"], dtype=np.float64)
            self._var = np.array(data["var"], dtype=np.float64)
            self._min = np.array(data["min"], dtype=np.float64)
            self._max = np.array(data["max"], dtype=np.float64)

    def describe(self, name: str) -> dict[str, float]:
        snap = self.snapshot()
        i = FEATURE_NAMES.index(name)
        return {
            "mean": float(snap.mean[i]),
            "std": float(snap.std[i]),
            "min": float(snap.min[i]),
            "max": float(snap.max[i]),
        }
