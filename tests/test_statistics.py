"""
Tests for running feature statistics and the z-score anomaly detector.
"""

import numpy as np
import pytest

from bastion.detection.anomaly import AnomalyDetector
from bastion.detection.features import FEATURE_NAMES, FeatureVector
from bastion.detection.statistics import FeatureStatistics

URL = FEATURE_NAMES.index("url_length")
RATIO = FEATURE_NAMES.index("special_char_ratio")


def _sample(url_length: float, ratio: float = 0.0) -> np.ndarray:
    x = np.zeros(len(FEATURE_NAMES))
    x[URL] = url_length
    x[RATIO] = ratio
    return x


@pytest.fixture
def warm_stats():
    stats = FeatureStatistics(alpha=0.05, warmup=30)
    for i in range(60):
        stats.update(_sample(40.0 if i % 2 else 60.0))
    return stats


def test_cold_statistics():
    stats = FeatureStatistics()
    snap = stats.snapshot()
    assert not snap.ready
    assert np.isnan(snap.zscores(_sample(100.0))).all()


def test_ready_after_warmup(warm_stats):
    snap = warm_stats.snapshot()
    assert snap.ready
    assert snap.count == 60
    assert snap.mean[URL] == pytest.approx(50.0, abs=5.0)
    assert snap.std[URL] > 5.0
    assert snap.min[URL] == 40.0
    assert snap.max[URL] == 60.0


def test_normalize_cold_uses_default_scale():
    snap = FeatureStatistics().snapshot()
    out = snap.normalize(_sample(100.0, ratio=3.0))
    assert out[URL] == pytest.approx(0.5)    # 100 / 200
    assert out[RATIO] == 1.0                 # ratios are clamped


def test_normalize_warm_standardizes_counts(warm_stats):
    snap = warm_stats.snapshot()
    out = snap.normalize(_sample(float(snap.mean[URL])))
    assert out[URL] == pytest.approx(0.5)
    assert np.all((out >= 0.0) & (out <= 1.0))
    batch = snap.normalize_batch(np.vstack([_sample(40.0), _sample(10_000.0)]))
    assert batch.shape == (2, len(FEATURE_NAMES))
    assert batch[1, URL] == 1.0


def test_zscores_nan_for_constant_features(warm_stats):
    z = warm_stats.snapshot().zscores(_sample(50.0))
    assert not np.isnan(z[URL])
    assert np.isnan(z[FEATURE_NAMES.index("header_count")])


def test_round_trip_state(warm_stats):
    restored = FeatureStatistics()
    restored.load(warm_stats.to_dict())
    assert restored.count == warm_stats.count
    np.testing.assert_allclose(restored.snapshot().mean, warm_stats.snapshot().mean)


def test_load_ignores_mismatched_shape():
    stats = FeatureStatistics()
    stats.load({"count": 5, "mean": [1.0, 2.0], "var": [0, 0], "min": [0, 0], "max": [0, 0]})
    assert stats.count == 0


def test_describe(warm_stats):
    d = warm_stats.describe("url_length")
    assert set(d) == {"mean", "std", "min", "max"}


def test_update_accepts_feature_vector():
    stats = FeatureStatistics()
    stats.update(FeatureVector({"url_length": 12.0}))
    assert stats.count == 1
    assert stats.snapshot().mean[URL] == 12.0


# ── Anomaly detector ─────────────────────────────────────


def test_no_anomaly_when_cold():
    result = AnomalyDetector().detect(FeatureVector.from_array(_sample(5000.0)), FeatureStatistics().snapshot())
    assert not result.is_anomaly
    assert result.anomaly_score == 0.0


def test_typical_request_not_flagged(warm_stats):
    result = AnomalyDetector().detect(FeatureVector.from_array(_sample(50.0)), warm_stats.snapshot())
    assert not result.is_anomaly


def test_outlier_flagged(warm_stats):
    result = AnomalyDetector().detect(FeatureVector.from_array(_sample(5000.0)), warm_stats.snapshot())
    assert result.is_anomaly
    assert set(result.flagged_features) == {"url_length"}
    assert 0.0 < result.anomaly_score <= 1.0
    assert result.reasons()[0].startswith("url_length z=")


def test_threshold_is_configurable(warm_stats):
    snap = warm_stats.snapshot()
    x = FeatureVector.from_array(_sample(float(snap.mean[URL] + 2 * snap.std[URL])))
    assert not AnomalyDetector(threshold=2.5).detect(x, snap).is_anomaly
    assert AnomalyDetector(threshold=1.5).detect(x, snap).is_anomaly
