from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Sequence


MIN_POINTS = 5
DEFAULT_THRESHOLD = 2.5


@dataclass(frozen=True)
class AnomalyResult:
    mean: float
    std_deviation: float
    latest: float
    z_score: float
    threshold: float
    is_anomaly: bool


def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def sample_std_deviation(values: Sequence[float], avg: float | None = None) -> float:
    # Sample (n-1) deviation; undefined below two points so report zero.
    if len(values) < 2:
        return 0.0
    center = mean(values) if avg is None else avg
    variance = sum((value - center) ** 2 for value in values) / (len(values) - 1)
    return math.sqrt(variance)


def detect_anomaly(
    series: Sequence[float],
    *,
    threshold: float = DEFAULT_THRESHOLD,
    min_points: int = MIN_POINTS,
) -> AnomalyResult | None:
    # Score the newest point against the whole window, itself included.
    values = [float(value) for value in series]
    if len(values) < max(2, min_points):
        return None
    avg = mean(values)
    deviation = sample_std_deviation(values, avg)
    if deviation == 0:
        # A flat series cannot be anomalous, whatever the threshold.
        return None
    latest = values[-1]
    z_score = abs(latest - avg) / deviation
    return AnomalyResult(
        mean=avg,
        std_deviation=deviation,
        latest=latest,
        z_score=z_score,
        threshold=threshold,
        is_anomaly=z_score >= threshold,
    )
