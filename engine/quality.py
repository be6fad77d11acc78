"""
Quality classification.

Maps raw metrics onto the five-level scale.  Two composite strategies are
kept side by side because different call sites use different ones:

* ``worst``    -- overall level is the worst per-metric level
                  (monitoring sessions).
* ``weighted`` -- weighted 0-100 score bucketed back into a level
                  (one-shot tests, by default).
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Sequence

from .constants import (
    DOWNLOAD_THRESHOLDS,
    JITTER_THRESHOLDS,
    LATENCY_THRESHOLDS,
    PACKET_LOSS_THRESHOLDS,
    QUALITY_WEIGHTS,
    SCORE_THRESHOLDS,
    UPLOAD_THRESHOLDS,
)
from .stats import clamp

METHOD_WORST = "worst"
METHOD_WEIGHTED = "weighted"
METHODS = (METHOD_WORST, METHOD_WEIGHTED)


class QualityLevel(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    VERY_POOR = "very-poor"

    @property
    def rank(self) -> int:
        """0 for excellent up to 4 for very-poor."""
        return _ORDER.index(self)

    def __str__(self) -> str:
        return self.value


_ORDER = [
    QualityLevel.EXCELLENT,
    QualityLevel.GOOD,
    QualityLevel.FAIR,
    QualityLevel.POOR,
    QualityLevel.VERY_POOR,
]


# ---------------------------------------------------------------------------
# Per-metric classification
# ---------------------------------------------------------------------------

def _lower_is_better(value: float, thresholds: Sequence[float]) -> QualityLevel:
    for bound, level in zip(thresholds, _ORDER):
        if value <= bound:
            return level
    return QualityLevel.VERY_POOR


def _higher_is_better(value: float, thresholds: Sequence[float]) -> QualityLevel:
    for bound, level in zip(thresholds, _ORDER):
        if value >= bound:
            return level
    return QualityLevel.VERY_POOR


def classify_latency(latency_ms: float) -> QualityLevel:
    return _lower_is_better(latency_ms, LATENCY_THRESHOLDS)


def classify_download(speed_mbps: float) -> QualityLevel:
    return _higher_is_better(speed_mbps, DOWNLOAD_THRESHOLDS)


def classify_upload(speed_mbps: float) -> QualityLevel:
    return _higher_is_better(speed_mbps, UPLOAD_THRESHOLDS)


def classify_jitter(jitter_ms: float) -> QualityLevel:
    return _lower_is_better(jitter_ms, JITTER_THRESHOLDS)


def classify_packet_loss(loss_pct: float) -> QualityLevel:
    return _lower_is_better(loss_pct, PACKET_LOSS_THRESHOLDS)


# ---------------------------------------------------------------------------
# Composites
# ---------------------------------------------------------------------------

def worst_of(levels: Iterable[QualityLevel]) -> QualityLevel:
    """The lowest-ranked level; excellent for an empty iterable."""
    return max(levels, key=lambda level: level.rank, default=QualityLevel.EXCELLENT)


def _descending_score(value: float, poor_bound: float) -> float:
    # 100 at zero, 0 at the poor bound
    if poor_bound <= 0:
        return 100.0 if value <= 0 else 0.0
    return clamp((poor_bound - value) / poor_bound * 100, 0.0, 100.0)


def _ascending_score(value: float, excellent_bound: float) -> float:
    # 0 at zero, 100 at the excellent bound
    return clamp(value / excellent_bound * 100, 0.0, 100.0)


def component_scores(
    latency: float,
    download: float,
    upload: float,
    jitter: float,
    packet_loss: float,
) -> Dict[str, float]:
    """0-100 score per metric, linear between its thresholds."""
    return {
        "latency": _descending_score(latency, LATENCY_THRESHOLDS[-1]),
        "download": _ascending_score(download, DOWNLOAD_THRESHOLDS[0]),
        "upload": _ascending_score(upload, UPLOAD_THRESHOLDS[0]),
        "jitter": _descending_score(jitter, JITTER_THRESHOLDS[-1]),
        "packet_loss": _descending_score(packet_loss, PACKET_LOSS_THRESHOLDS[-1]),
    }


def weighted_score(
    latency: float,
    download: float,
    upload: float,
    jitter: float,
    packet_loss: float,
) -> float:
    scores = component_scores(latency, download, upload, jitter, packet_loss)
    total = sum(scores[name] * weight for name, weight in QUALITY_WEIGHTS.items())
    return round(total, 1)


def level_for_score(score: float) -> QualityLevel:
    return _higher_is_better(score, SCORE_THRESHOLDS)


# ---------------------------------------------------------------------------
# Assessment
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class QualityAssessment:
    """Per-metric levels plus an overall level; never mutated after creation."""

    latency: QualityLevel
    download: QualityLevel
    upload: QualityLevel
    jitter: QualityLevel
    packet_loss: QualityLevel
    overall: QualityLevel
    score: float
    method: str = METHOD_WEIGHTED

    def to_dict(self) -> dict:
        return {
            "overall": self.overall.value,
            "latency": self.latency.value,
            "download": self.download.value,
            "upload": self.upload.value,
            "jitter": self.jitter.value,
            "packet_loss": self.packet_loss.value,
            "score": self.score,
            "method": self.method,
        }


def assess(
    latency: float,
    download: float,
    upload: float,
    jitter: float,
    packet_loss: float,
    method: str = METHOD_WEIGHTED,
) -> QualityAssessment:
    """Classify every metric and combine them with *method*."""
    if method not in METHODS:
        raise ValueError(f"Unknown quality method: {method!r}")

    levels = {
        "latency": classify_latency(latency),
        "download": classify_download(download),
        "upload": classify_upload(upload),
        "jitter": classify_jitter(jitter),
        "packet_loss": classify_packet_loss(packet_loss),
    }
    score = weighted_score(latency, download, upload, jitter, packet_loss)

    if method == METHOD_WORST:
        overall = worst_of(levels.values())
    else:
        overall = level_for_score(score)

    return QualityAssessment(overall=overall, score=score, method=method, **levels)
