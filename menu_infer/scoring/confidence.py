"""
Confidence Scoring — shared clamping and blend helpers.

Every confidence the pipeline emits goes through clamp01(): weighted sums of
contributing factors are allowed to exceed 1.0 and are saturated, never
renormalized.
"""

from typing import Iterable


def clamp01(value):
    return max(0.0, min(1.0, float(value)))


def mean_confidence(values: Iterable[float]) -> float:
    vals = list(values)
    if not vals:
        return 0.0
    return clamp01(sum(vals) / len(vals))


def item_confidence(region_confidence, price_confidence, anchored=True):
    """
    Item-level blend: region geometry and price evidence weigh equally;
    an item assembled without a classified price anchor costs a flat 0.1.
    """
    score = 0.5 * clamp01(region_confidence) + 0.5 * clamp01(price_confidence)
    if not anchored:
        score -= 0.1
    return clamp01(round(score, 4))
