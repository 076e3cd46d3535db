"""Numeric helpers for score aggregation.

Every function accepts an empty sequence and returns 0 rather than raising
or producing NaN.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import Final

DISTRIBUTION_PERCENTILES: Final[tuple[float, ...]] = (0.25, 0.50, 0.75, 0.90)


def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def population_variance(values: Sequence[float]) -> float:
    """Variance with denominator n."""
    if not values:
        return 0.0
    mu = mean(values)
    return sum((x - mu) ** 2 for x in values) / len(values)


def nearest_rank_percentile(sorted_values: Sequence[float], p: float) -> float:
    """Percentile by floor indexing: sorted_values[floor(n * p)].

    Args:
        sorted_values: Values in ascending order.
        p: Fraction in [0, 1).

    Returns:
        The selected element, or 0.0 for an empty sequence.
    """
    if not sorted_values:
        return 0.0
    idx = min(math.floor(len(sorted_values) * p), len(sorted_values) - 1)
    return float(sorted_values[idx])


def ratio_percent(numerator: float, denominator: float) -> float:
    """numerator / denominator * 100, short-circuiting to 0 for a zero denominator."""
    if denominator == 0:
        return 0.0
    return numerator / denominator * 100.0


def summarize(values: Sequence[float]) -> tuple[int, float, float, float]:
    """Return (count, mean, max, min); all zeros for an empty sequence."""
    if not values:
        return 0, 0.0, 0.0, 0.0
    return len(values), mean(values), float(max(values)), float(min(values))
