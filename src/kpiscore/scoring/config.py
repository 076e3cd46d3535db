"""Aggregation configuration loaded from the environment.

Environment variables:
    KPISCORE_TREND_BUCKETS: Most recent (month, year) buckets kept in trends (default: 12)
    KPISCORE_PERFORMER_LIMIT: Size of the high/low performer lists (default: 5)
    KPISCORE_FIELD_UNIT_DEPARTMENT: Department mapped to the FIELD_UNIT role
        (default: "Field Unit")

Invalid values fail closed with AnalyticsConfigError.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Final

from kpiscore.scoring.calculator import DEFAULT_FIELD_UNIT_DEPARTMENT

ENV_TREND_BUCKETS: Final[str] = "KPISCORE_TREND_BUCKETS"
ENV_PERFORMER_LIMIT: Final[str] = "KPISCORE_PERFORMER_LIMIT"
ENV_FIELD_UNIT_DEPARTMENT: Final[str] = "KPISCORE_FIELD_UNIT_DEPARTMENT"

DEFAULT_TREND_BUCKETS: Final[int] = 12
DEFAULT_PERFORMER_LIMIT: Final[int] = 5


class AnalyticsConfigError(Exception):
    """Raised when aggregation configuration is invalid."""


@dataclass(frozen=True)
class AnalyticsConfig:
    """Aggregation configuration (immutable).

    Attributes:
        trend_buckets: Number of most recent trend buckets to keep.
        performer_limit: Number of subjects in each performer list.
        field_unit_department: Department whose members are scored as FIELD_UNIT.
    """

    trend_buckets: int = DEFAULT_TREND_BUCKETS
    performer_limit: int = DEFAULT_PERFORMER_LIMIT
    field_unit_department: str = DEFAULT_FIELD_UNIT_DEPARTMENT

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.trend_buckets <= 0:
            raise AnalyticsConfigError(
                f"{ENV_TREND_BUCKETS} must be a positive integer, got {self.trend_buckets}"
            )
        if self.performer_limit <= 0:
            raise AnalyticsConfigError(
                f"{ENV_PERFORMER_LIMIT} must be a positive integer, got {self.performer_limit}"
            )
        if not self.field_unit_department.strip():
            raise AnalyticsConfigError(f"{ENV_FIELD_UNIT_DEPARTMENT} must not be blank")


def _parse_positive_int(env_var: str, default: int) -> int:
    """Parse a positive integer from environment variable.

    Raises:
        AnalyticsConfigError: If value is set but not a positive integer.
    """
    raw = os.environ.get(env_var)
    if raw is None:
        return default

    raw = raw.strip()
    if not raw:
        return default

    try:
        value = int(raw)
    except ValueError as e:
        raise AnalyticsConfigError(f"{env_var} must be a positive integer, got '{raw}'") from e

    if value <= 0:
        raise AnalyticsConfigError(f"{env_var} must be a positive integer, got {value}")

    return value


def load_analytics_config() -> AnalyticsConfig:
    """Load aggregation configuration from environment variables."""
    department = os.environ.get(ENV_FIELD_UNIT_DEPARTMENT)
    if department is None or not department.strip():
        department = DEFAULT_FIELD_UNIT_DEPARTMENT

    return AnalyticsConfig(
        trend_buckets=_parse_positive_int(ENV_TREND_BUCKETS, DEFAULT_TREND_BUCKETS),
        performer_limit=_parse_positive_int(ENV_PERFORMER_LIMIT, DEFAULT_PERFORMER_LIMIT),
        field_unit_department=department.strip(),
    )
