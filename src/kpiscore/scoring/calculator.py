"""Score calculator: raw measurement + indicator definition -> weighted final score.

    attainment  = min(100, value / target_value * 100)
    final_score = weight * attainment / 100

A single indicator's contribution is capped at its weight. Invalid numeric
input fails explicitly; nothing is coerced into a placeholder score.
"""

from __future__ import annotations

import math

from kpiscore.models.indicator import IndicatorDefinition, IndicatorRole
from kpiscore.models.subject import ActingSubject, Subject, SubjectRole
from kpiscore.services.errors import InvalidIndicatorError, ScoreValidationError

MAX_ATTAINMENT = 100.0
DEFAULT_FIELD_UNIT_DEPARTMENT = "Field Unit"


def compute(value: float, target_value: float, weight: float) -> float:
    """Compute the capped, weighted final score.

    Args:
        value: Submitted measurement (must be finite and >= 0).
        target_value: Indicator target (must be finite and > 0).
        weight: Indicator weight in [0, 100].

    Returns:
        Final score in [0, weight].

    Raises:
        ScoreValidationError: If value is negative or non-finite.
        InvalidIndicatorError: If target_value or weight cannot produce a score.
    """
    if not _is_finite_number(value):
        raise ScoreValidationError(f"value must be a finite number, got {value!r}")
    if value < 0:
        raise ScoreValidationError(f"value must be >= 0, got {value}")
    if not _is_finite_number(target_value) or target_value <= 0:
        raise InvalidIndicatorError(
            f"target_value must be a finite number > 0, got {target_value!r}"
        )
    if not _is_finite_number(weight) or weight < 0 or weight > 100:
        raise InvalidIndicatorError(f"weight must be within [0, 100], got {weight!r}")

    attainment = min(MAX_ATTAINMENT, (value / target_value) * 100.0)
    final_score = weight * (attainment / 100.0)
    return min(max(final_score, 0.0), float(weight))


def compute_for_indicator(value: float, indicator: IndicatorDefinition) -> float:
    """Compute the final score of a value against a stored indicator."""
    try:
        return compute(value, indicator.target_value, indicator.weight)
    except InvalidIndicatorError as e:
        raise InvalidIndicatorError(str(e), indicator_id=indicator.indicator_id) from e


def indicator_role_for(
    subject: Subject | ActingSubject,
    field_unit_department: str = DEFAULT_FIELD_UNIT_DEPARTMENT,
) -> IndicatorRole:
    """Map a subject to the indicator role whose KPIs apply to them.

    Field-unit department membership wins over the organizational role.
    """
    if subject.department == field_unit_department:
        return IndicatorRole.FIELD_UNIT
    if subject.role == SubjectRole.DIVISION_HEAD:
        return IndicatorRole.DIVISION_HEAD
    return IndicatorRole.HQ_STAFF


def _is_finite_number(x: object) -> bool:
    if isinstance(x, bool) or not isinstance(x, int | float):
        return False
    return math.isfinite(x)
