"""
Batch-level summary over a set of analysis results.
"""
from __future__ import annotations

import statistics
from typing import Iterable

from .models import AnalysisResult, AnalysisStats

TIER_FIELDS = {
    "excellent": "excellent_count",
    "good": "good_count",
    "acceptable": "acceptable_count",
    "poor": "poor_count",
    "unsuitable": "unsuitable_count",
}


def _mean(values) -> float:
    return round(statistics.fmean(values), 2) if values else 0.0


def summarize(results: Iterable[AnalysisResult], threshold: float = 70.0) -> AnalysisStats:
    """Pure function: tier counts and component averages.

    Failed results count toward `failed_count` and the unsuitable tier but
    are left out of the averages.
    """
    results = list(results)
    stats = AnalysisStats(total_images=len(results))

    for r in results:
        field = TIER_FIELDS.get(r.composite.recommendation, "unsuitable_count")
        setattr(stats, field, getattr(stats, field) + 1)

    ok = [r for r in results if r.status == "completed"]
    stats.failed_count = len(results) - len(ok)

    # ---------- averages over completed images ----------
    stats.average_blur_score = _mean([r.blur.score for r in ok])
    stats.average_exposure_score = _mean([r.exposure.exposure_score for r in ok])
    stats.average_noise_score = _mean([r.noise.noise_score for r in ok])
    stats.average_technical_score = _mean([r.technical_score for r in ok])
    stats.average_descriptor_score = _mean([r.descriptor.photogrammetric_score for r in ok])
    stats.average_composite_score = _mean([r.composite.overall for r in ok])
    stats.average_keypoint_count = _mean([r.descriptor.keypoint_count for r in ok])
    # ----------------------------------------------------

    stats.recommended_for_reconstruction = sum(1 for r in ok if r.composite.overall >= threshold)
    return stats
