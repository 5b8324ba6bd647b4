"""
Composite score: weighted fusion of the five component scores.
"""
from __future__ import annotations

import math
from typing import Optional, Sequence, Tuple

from .config import RECOMMENDATION_TIERS, QualityWeights
from .models import ComponentScore, CompositeScore

COMPONENTS = ("blur", "exposure", "noise", "technical", "descriptor")


def round_half_up(value: float) -> int:
    # the epsilon absorbs float error such as 73.49999999999999
    return int(math.floor(value + 0.5 + 1e-9))


def sanitize(value) -> float:
    """Non-finite or missing inputs count as 0; the rest clamp to [0, 100]."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(100.0, value))


def classify(score: float, tiers: Sequence[Tuple[float, str]] = RECOMMENDATION_TIERS) -> str:
    for threshold, label in tiers:
        if score >= threshold:
            return label
    return tiers[-1][1]


def composite_score(blur: float, exposure: float, noise: float, technical: float,
                    descriptor: float, weights: Optional[QualityWeights] = None,
                    tiers: Sequence[Tuple[float, str]] = RECOMMENDATION_TIERS,
                    method: str = "weighted_average") -> CompositeScore:
    weights = weights or QualityWeights()
    w = weights.as_dict()
    raw = {name: sanitize(v) for name, v in
           zip(COMPONENTS, (blur, exposure, noise, technical, descriptor))}

    components = {
        name: ComponentScore(raw_score=raw[name], weight=w[name], contribution=raw[name] * w[name])
        for name in COMPONENTS
    }
    total = sum(c.contribution for c in components.values())
    overall = max(0, min(100, round_half_up(total)))
    return CompositeScore(
        **raw,
        weights=w,
        components=components,
        method=method,
        overall=overall,
        recommendation=classify(overall, tiers),
    )
