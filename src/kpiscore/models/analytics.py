"""Analytics report models produced by the aggregation engine.

All numeric fields are finite; empty inputs produce zeros, never NaN.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from kpiscore.models.indicator import IndicatorKind
from kpiscore.models.period import MAX_PERIOD_YEAR, MIN_PERIOD_YEAR, Month, Period


class AnalyticsLevel(StrEnum):
    """Aggregation granularity."""

    INDIVIDUAL = "individual"
    TEAM = "team"
    ORG = "org"


class ComparisonDimension(StrEnum):
    """Grouping dimension for organization-wide comparisons."""

    DEPARTMENTS = "departments"
    ROLES = "roles"


class AnalyticsFilters(BaseModel):
    """Optional narrowing of the records considered.

    A ``period`` label, when given, fills ``month`` and ``year``; explicit
    values that disagree with the label are rejected.
    """

    model_config = ConfigDict(frozen=True)

    period: str | None = None
    year: int | None = Field(default=None, ge=MIN_PERIOD_YEAR, le=MAX_PERIOD_YEAR)
    month: Month | None = None

    @model_validator(mode="before")
    @classmethod
    def _expand_period_label(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not data.get("period"):
            return data
        parsed = Period.parse(str(data["period"]))
        year = data.get("year")
        month = data.get("month")
        if year is not None and int(year) != parsed.year:
            raise ValueError(f"year {year} conflicts with period '{data['period']}'")
        if month is not None and Month(month) != parsed.month:
            raise ValueError(f"month {month} conflicts with period '{data['period']}'")
        return {**data, "period": parsed.label, "year": parsed.year, "month": parsed.month}

    def matches(self, month: Month | str, year: int) -> bool:
        """Return True if a (month, year) pair passes these filters."""
        if self.year is not None and year != self.year:
            return False
        return not (self.month is not None and Month(month) != self.month)


class ScoreSummary(BaseModel):
    count: int = 0
    mean: float = 0.0
    max: float = 0.0
    min: float = 0.0


class IndicatorBreakdownEntry(BaseModel):
    """One record, annotated with its indicator definition."""

    score_id: str
    subject_id: str
    indicator_id: str
    indicator_name: str
    category: str
    kind: IndicatorKind
    weight: float
    target_value: float
    value: float
    final_score: float
    period: str
    verified: bool


class KindBreakdownEntry(BaseModel):
    kind: IndicatorKind
    count: int
    average_score: float
    total_score: float


class CategoryPerformanceEntry(BaseModel):
    category: str
    average_score: float
    count: int
    indicator_count: int


class TrendPoint(BaseModel):
    month: Month
    year: int
    period: str
    average_score: float
    count: int


class PerformerEntry(BaseModel):
    subject_id: str
    name: str | None = None
    department: str | None = None
    average_score: float
    count: int


class DepartmentComparisonEntry(BaseModel):
    department: str
    average_score: float
    count: int
    subject_count: int


class ScoreDistribution(BaseModel):
    """Spread of one subject's per-indicator scores in one period."""

    period: str | None = None
    count: int = 0
    mean: float = 0.0
    variance: float = 0.0
    p25: float = 0.0
    p50: float = 0.0
    p75: float = 0.0
    p90: float = 0.0


class PerformanceSummary(BaseModel):
    """Quantitative/qualitative split of one subject's period total."""

    period: str | None = None
    total_score: float = 0.0
    quantitative_score: float = 0.0
    quantitative_weight: float = 0.0
    quantitative_attainment: float = 0.0
    qualitative_score: float = 0.0
    qualitative_weight: float = 0.0
    qualitative_attainment: float = 0.0
    submitted_indicators: int = 0
    applicable_indicators: int = 0
    coverage: float = 0.0


class AnalyticsReport(BaseModel):
    """Role-scoped analytics for one level."""

    level: AnalyticsLevel
    org_id: str
    subject_id: str | None = None
    department: str | None = None
    member_count: int
    filters: AnalyticsFilters
    generated_at: datetime
    summary: ScoreSummary
    by_indicator: list[IndicatorBreakdownEntry]
    by_kind: list[KindBreakdownEntry]
    category_performance: list[CategoryPerformanceEntry]
    trend: list[TrendPoint]
    high_performers: list[PerformerEntry]
    low_performers: list[PerformerEntry]
    department_comparisons: list[DepartmentComparisonEntry] | None = None
    distribution: ScoreDistribution | None = None
    performance_summary: PerformanceSummary | None = None


class ComparisonEntry(BaseModel):
    group: str
    average_score: float
    max_score: float
    min_score: float
    count: int
    subject_count: int


class ComparisonReport(BaseModel):
    dimension: ComparisonDimension
    org_id: str
    filters: AnalyticsFilters
    generated_at: datetime
    groups: list[ComparisonEntry]
