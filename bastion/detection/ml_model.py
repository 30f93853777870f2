"""
Bastion — Online Threat Classifier.

Logistic scorer over normalized request features: one primary model plus a
small bootstrap ensemble, retrained out-of-band from a bounded buffer of
labeled samples. Analyst feedback can relabel buffered samples before the
next training pass.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Deque, Optional

import numpy as np
from sklearn.utils import resample, shuffle

from bastion.config import Settings, settings as default_settings
from bastion.detection.features import FEATURE_NAMES, FeatureVector
from bastion.detection.statistics import FeatureStatistics

logger = logging.getLogger("bastion.detection.ml")

PRIMARY_WEIGHT = 0.6
ENSEMBLE_WEIGHT = 0.4
MAX_GRAD_NORM = 5.0
EXPORT_FORMAT = 1

DEFAULT_THRESHOLDS = {"low": 0.25, "medium": 0.5, "high": 0.75, "critical": 0.9}

# Starting weights in normalized feature space, so an untrained model
# already leans the right way on obvious signals.
PRIOR_WEIGHTS = {
    "special_char_ratio": 2.5,
    "encoded_char_ratio": 1.5,
    "traversal_count": 1.8,
    "sql_keyword_count": 2.0,
    "script_token_count": 2.0,
    "ua_missing": 1.2,
    "ua_automated": 1.0,
    "accept_missing": 0.6,
    "unusual_method": 1.0,
    "requests_last_minute": 2.0,
    "failed_auth_streak": 1.5,
    "geo_proxy": 0.6,
    "new_country": 0.5,
    "reputation_threat": 2.5,
    "prior_blocks": 1.0,
    "history_score": 1.5,
    "reputation_trust": -1.5,
    "has_cookie": -0.4,
    "has_accept_language": -0.4,
    "has_referer": -0.3,
}
PRIOR_BIAS = -3.0


class FeedbackVerdict(str, Enum):
    CONFIRMED_THREAT = "confirmed_threat"
    FALSE_POSITIVE = "false_positive"

    @property
    def label(self) -> int:
        return 1 if self is FeedbackVerdict.CONFIRMED_THREAT else 0


@dataclass
class MLConfig:
    """Hyperparameters for the online classifier."""
    learning_rate: float = 0.05
    l2: float = 0.001
    batch_size: int = 32
    epochs: int = 5
    buffer_size: int = 5000
    ensemble_size: int = 3
    min_train_samples: int = 64
    retrain_interval_sec: int = 300
    feedback_retrain: int = 25
    model_dir: Optional[str] = "models"
    seed: int = 42

    @classmethod
    def from_settings(cls, s: Settings) -> "MLConfig":
        return cls(
            learning_rate=s.ml_learning_rate,
            l2=s.ml_l2,
            batch_size=s.ml_batch_size,
            epochs=s.ml_epochs,
            buffer_size=s.ml_buffer_size,
            ensemble_size=s.ml_ensemble_size,
            min_train_samples=s.ml_min_train_samples,
            retrain_interval_sec=s.ml_retrain_interval_sec,
            feedback_retrain=s.ml_feedback_retrain,
            model_dir=s.model_dir,
        )


@dataclass(frozen=True)
class ModelWeights:
    """One logistic model. Biases are kept per feature and summed."""
    version: int
    weights: dict[str, float]
    biases: dict[str, float]
    thresholds: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_THRESHOLDS))

    @classmethod
    def initial(cls, rng: Optional[np.random.Generator] = None, jitter: float = 0.0) -> "ModelWeights":
        w = np.array([PRIOR_WEIGHTS.get(n, 0.0) for n in FEATURE_NAMES])
        if rng is not None and jitter:
            w = w + rng.normal(0.0, jitter, size=w.shape)
        b = np.full(len(FEATURE_NAMES), PRIOR_BIAS / len(FEATURE_NAMES))
        return cls.from_arrays(w, b, version=0)

    @classmethod
    def from_arrays(
        cls,
        w: np.ndarray,
        b: np.ndarray,
        version: int,
        thresholds: Optional[dict[str, float]] = None,
    ) -> "ModelWeights":
        return cls(
            version=version,
            weights={n: float(v) for n, v in zip(FEATURE_NAMES, w)},
            biases={n: float(v) for n, v in zip(FEATURE_NAMES, b)},
            thresholds=dict(thresholds or DEFAULT_THRESHOLDS),
        )

    def arrays(self) -> tuple[np.ndarray, np.ndarray]:
        w = np.array([self.weights.get(n, 0.0) for n in FEATURE_NAMES])
        b = np.array([self.biases.get(n, 0.0) for n in FEATURE_NAMES])
        return w, b

    def logit(self, x: np.ndarray) -> float:
        w, b = self.arrays()
        return float(x @ w + b.sum())

    def level(self, probability: float) -> str:
        t = self.thresholds
        if probability >= t["critical"]:
            return "critical"
        if probability >= t["high"]:
            return "high"
        if probability >= t["medium"]:
            return "medium"
        if probability >= t["low"]:
            return "low"
        return "minimal"

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "weights": dict(self.weights),
            "biases": dict(self.biases),
            "thresholds": dict(self.thresholds),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ModelWeights":
        return cls(
            version=int(data["version"]),
            weights={k: float(v) for k, v in data["weights"].items()},
            biases={k: float(v) for k, v in data["biases"].items()},
            thresholds={k: float(v) for k, v in data.get("thresholds", DEFAULT_THRESHOLDS).items()},
        )


@dataclass(frozen=True)
class Prediction:
    probability: float
    explanation: list[str]
    level: str = "minimal"


@dataclass
class Sample:
    id: str
    x: np.ndarray
    label: Optional[int]
    timestamp: float


def _sigmoid(z: np.ndarray | float) -> np.ndarray | float:
    return 1.0 / (1.0 + np.exp(-np.clip(z, -30.0, 30.0)))


class OnlineClassifier:
    """
    Incrementally trained logistic classifier.

    Lifecycle:
      1. Predict from prior weights (persisted weights when available)
      2. observe() every committed request; labels come from decisions or feedback
      3. Retrain out-of-band when the interval elapses or feedback piles up
      4. Persist after each pass so restarts keep what was learned
    """

    def __init__(
        self,
        config: Optional[MLConfig] = None,
        statistics: Optional[FeatureStatistics] = None,
    ) -> None:
        self.config = config or MLConfig.from_settings(default_settings)
        self.statistics = statistics or FeatureStatistics()
        rng = np.random.default_rng(self.config.seed)
        # (primary, ensemble) swapped as one reference after training
        self._models: tuple[ModelWeights, tuple[ModelWeights, ...]] = (
            ModelWeights.initial(),
            tuple(ModelWeights.initial(rng, jitter=0.05) for _ in range(self.config.ensemble_size)),
        )
        self._buffer: Deque[Sample] = deque()
        self._index: dict[str, Sample] = {}
        self._buffer_lock = threading.Lock()
        self._train_lock = asyncio.Lock()
        self._feedback_pending = 0
        self._last_train_time: float = 0.0
        self._train_count: int = 0
        self._sample_seq = 0

        # Try to load persisted weights on init
        self._load_model()

    @property
    def version(self) -> int:
        return self._models[0].version

    @property
    def sample_count(self) -> int:
        return len(self._buffer)

    @property
    def labeled_count(self) -> int:
        with self._buffer_lock:
            return sum(1 for s in self._buffer if s.label is not None)

    # ── Prediction ───────────────────────────────────────

    def predict(self, features: FeatureVector) -> Prediction:
        """Threat probability in [0, 1] with the top contributing features. Never raises."""
        try:
            primary, ensemble = self._models
            x = self.statistics.snapshot().normalize(features.as_array())
            probability = float(_sigmoid(primary.logit(x)))
            if ensemble:
                votes = [float(_sigmoid(m.logit(x))) for m in ensemble]
                probability = PRIMARY_WEIGHT * probability + ENSEMBLE_WEIGHT * float(np.mean(votes))
            return Prediction(
                probability=probability,
                explanation=self._explain(primary, x, features),
                level=primary.level(probability),
            )
        except Exception:
            logger.warning("Prediction failed, returning neutral score", exc_info=True)
            return Prediction(probability=0.0, explanation=["classifier unavailable"])

    @staticmethod
    def _explain(model: ModelWeights, x: np.ndarray, features: FeatureVector, top: int = 3) -> list[str]:
        w, _ = model.arrays()
        contributions = w * x
        order = np.argsort(-contributions)
        out = []
        for i in order[:top]:
            if contributions[i] <= 0:
                break
            name = FEATURE_NAMES[i]
            out.append(f"{name}={features.get(name):.2f} (+{contributions[i]:.2f})")
        return out

    # ── Training data ────────────────────────────────────

    def observe(
        self,
        features: FeatureVector,
        label: Optional[int] = None,
        sample_id: Optional[str] = None,
    ) -> str:
        """
        Record a committed request. Statistics always update; the sample is
        buffered (oldest dropped when full) so a later label can reach it.
        Returns the sample id.
        """
        x = features.as_array()
        self.statistics.update(x)
        with self._buffer_lock:
            self._sample_seq += 1
            sid = sample_id or f"s{self._sample_seq}"
            if len(self._buffer) >= self.config.buffer_size:
                dropped = self._buffer.popleft()
                self._index.pop(dropped.id, None)
            sample = Sample(id=sid, x=x, label=label, timestamp=time.time())
            self._buffer.append(sample)
            self._index[sid] = sample
        return sid

    def feedback(self, sample_id: str, verdict: FeedbackVerdict | str) -> bool:
        """Correct a buffered sample's label. Returns False if it is no longer buffered."""
        verdict = FeedbackVerdict(verdict)
        with self._buffer_lock:
            sample = self._index.get(sample_id)
            if sample is None:
                return False
            sample.label = verdict.label
            self._feedback_pending += 1
        logger.info("Feedback %s recorded for sample %s", verdict.value, sample_id)
        return True

    def should_train(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        if self.labeled_count < self.config.min_train_samples:
            return False
        if self._feedback_pending >= self.config.feedback_retrain:
            return True
        return now - self._last_train_time >= self.config.retrain_interval_sec

    # ── Training ─────────────────────────────────────────

    async def maybe_train(self) -> bool:
        """Train if conditions are met. Returns True if trained."""
        if not self.should_train():
            return False
        return await self.train_async()

    async def train_async(self) -> bool:
        """Run a training pass in a worker thread; requests keep reading old weights."""
        async with self._train_lock:
            trained = await asyncio.to_thread(self.train)
        if trained:
            await asyncio.to_thread(self._save_model)
        return trained

    def train(self) -> bool:
        """Mini-batch gradient descent over the labeled buffer. Returns True if trained."""
        with self._buffer_lock:
            labeled = [(s.x, s.label) for s in self._buffer if s.label is not None]
            pending = self._feedback_pending
        if len(labeled) < self.config.min_train_samples:
            logger.debug("Not enough labeled samples to train (%d)", len(labeled))
            return False

        snap = self.statistics.snapshot()
        X = snap.normalize_batch(np.array([x for x, _ in labeled]))
        y = np.array([label for _, label in labeled], dtype=np.float64)

        primary, ensemble = self._models
        seed = self.config.seed + self._train_count
        new_primary = self._fit(primary, X, y, seed)
        new_ensemble = []
        for i, member in enumerate(ensemble):
            Xb, yb = resample(X, y, replace=True, random_state=seed + 1000 * (i + 1))
            new_ensemble.append(self._fit(member, Xb, yb, seed + i + 1))

        self._models = (new_primary, tuple(new_ensemble))
        with self._buffer_lock:
            self._feedback_pending = max(0, self._feedback_pending - pending)
        self._last_train_time = time.time()
        self._train_count += 1

        logger.info(
            "Classifier trained (#%d, v%d): %d samples, %.0f%% positive",
            self._train_count, new_primary.version, len(y), 100.0 * float(y.mean()),
        )
        return True

    def _fit(self, model: ModelWeights, X: np.ndarray, y: np.ndarray, seed: int) -> ModelWeights:
        cfg = self.config
        w, b = model.arrays()
        d = X.shape[1]
        for epoch in range(cfg.epochs):
            Xs, ys = shuffle(X, y, random_state=seed + epoch)
            for start in range(0, len(Xs), cfg.batch_size):
                xb = Xs[start:start + cfg.batch_size]
                yb = ys[start:start + cfg.batch_size]
                err = _sigmoid(xb @ w + b.sum()) - yb
                grad_w = xb.T @ err / len(xb) + cfg.l2 * w
                grad_b = np.full(d, float(err.mean()) / d)
                norm = float(np.linalg.norm(grad_w))
                if norm > MAX_GRAD_NORM:
                    grad_w *= MAX_GRAD_NORM / norm
                w = w - cfg.learning_rate * grad_w
                b = b - cfg.learning_rate * grad_b
        return ModelWeights.from_arrays(w, b, version=model.version + 1, thresholds=model.thresholds)

    # ── Import / export ──────────────────────────────────

    def export_weights(self) -> dict:
        primary, ensemble = self._models
        return {
            "format": EXPORT_FORMAT,
            "features": list(FEATURE_NAMES),
            "primary": primary.to_dict(),
            "ensemble": [m.to_dict() for m in ensemble],
            "statistics": self.statistics.to_dict(),
            "train_count": self._train_count,
            "timestamp": time.time(),
        }

    def import_weights(self, data: dict) -> None:
        if data.get("format") != EXPORT_FORMAT:
            raise ValueError(f"unsupported classifier export format: {data.get('format')!r}")
        if list(data.get("features", [])) != FEATURE_NAMES:
            raise ValueError("exported feature set does not match this build")
        self._models = (
            ModelWeights.from_dict(data["primary"]),
            tuple(ModelWeights.from_dict(m) for m in data.get("ensemble", [])),
        )
        if "statistics" in data:
            self.statistics.load(data["statistics"])
        self._train_count = int(data.get("train_count", 0))

    # ── Persistence ──────────────────────────────────────

    def _model_path(self) -> Optional[Path]:
        if not self.config.model_dir:
            return None
        return Path(self.config.model_dir) / "classifier.json"

    def _save_model(self) -> None:
        """Persist weights and statistics to disk."""
        path = self._model_path()
        if path is None:
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(json.dumps(self.export_weights()), encoding="utf-8")
            tmp.replace(path)
            logger.info("Classifier saved to %s", path)
        except Exception:
            logger.exception("Failed to save classifier")

    def _load_model(self) -> None:
        """Load persisted weights from disk."""
        path = self._model_path()
        if path is None or not path.exists():
            return
        try:
            self.import_weights(json.loads(path.read_text(encoding="utf-8")))
            logger.info("Classifier loaded from %s (v%d)", path, self.version)
        except Exception:
            logger.exception("Failed to load classifier, starting from priors")

    # ── Info ─────────────────────────────────────────────

    def info(self) -> dict:
        """Return model status for API."""
        return {
            "version": self.version,
            "train_count": self._train_count,
            "buffer_size": self.sample_count,
            "labeled_samples": self.labeled_count,
            "min_train_samples": self.config.min_train_samples,
            "feedback_pending": self._feedback_pending,
            "last_trained": self._last_train_time or None,
            "ensemble_size": len(self._models[1]),
            "statistics_count": self.statistics.count,
        }
