"""Aggregation engine: stored score records -> role-scoped analytics.

The engine is pure: it never touches storage. Services fetch the candidate
records for a resolved visibility scope and pass them in together with
indicator and subject lookups. Records outside the scope or filters are
dropped again here, so a too-wide query can never leak into a report.

Report sections:
    summary                 count/mean/max/min of final scores
    by_indicator            one entry per record, annotated with its indicator
    by_kind                 quantitative vs qualitative
    category_performance    per indicator category
    trend                   (month, year) buckets, chronological, most recent N
    high/low_performers     per-subject averages; low list is lowest-first
    department_comparisons  org level only
    distribution            individual level only (one subject, one period)
    performance_summary     individual level only
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime

from kpiscore.models.analytics import (
    AnalyticsFilters,
    AnalyticsLevel,
    AnalyticsReport,
    CategoryPerformanceEntry,
    ComparisonDimension,
    ComparisonEntry,
    ComparisonReport,
    DepartmentComparisonEntry,
    IndicatorBreakdownEntry,
    KindBreakdownEntry,
    PerformanceSummary,
    PerformerEntry,
    ScoreDistribution,
    ScoreSummary,
    TrendPoint,
)
from kpiscore.models.indicator import IndicatorDefinition, IndicatorKind
from kpiscore.models.period import Month, format_period_label, period_sort_key
from kpiscore.models.score_record import ScoreRecord
from kpiscore.models.subject import Subject
from kpiscore.scoring.config import AnalyticsConfig
from kpiscore.scoring.statistics import (
    DISTRIBUTION_PERCENTILES,
    mean,
    nearest_rank_percentile,
    population_variance,
    ratio_percent,
    summarize,
)
from kpiscore.scoring.visibility import VisibilityScope

logger = logging.getLogger(__name__)

UNKNOWN_INDICATOR_NAME = "(deleted indicator)"
UNASSIGNED_GROUP = "(unassigned)"


def summarize_scores(records: Sequence[ScoreRecord]) -> ScoreSummary:
    count, avg, high, low = summarize([r.final_score for r in records])
    return ScoreSummary(count=count, mean=avg, max=high, min=low)


def indicator_breakdown(
    records: Iterable[ScoreRecord],
    indicators: Mapping[str, IndicatorDefinition],
) -> list[IndicatorBreakdownEntry]:
    """Passthrough grouping: one entry per record, newest period first."""
    ordered = sorted(
        records,
        key=lambda r: (-r.year, -Month(r.month).ordinal, r.subject_id, r.indicator_id),
    )
    entries: list[IndicatorBreakdownEntry] = []
    for r in ordered:
        indicator = indicators.get(r.indicator_id)
        entries.append(
            IndicatorBreakdownEntry(
                score_id=r.score_id,
                subject_id=r.subject_id,
                indicator_id=r.indicator_id,
                indicator_name=indicator.name if indicator else UNKNOWN_INDICATOR_NAME,
                category=indicator.category if indicator else UNASSIGNED_GROUP,
                kind=r.kind,
                weight=indicator.weight if indicator else 0.0,
                target_value=r.target_snapshot,
                value=r.value,
                final_score=r.final_score,
                period=r.period,
                verified=r.verified,
            )
        )
    return entries


def kind_breakdown(records: Iterable[ScoreRecord]) -> list[KindBreakdownEntry]:
    grouped: dict[IndicatorKind, list[float]] = defaultdict(list)
    for r in records:
        grouped[r.kind].append(r.final_score)
    return [
        KindBreakdownEntry(
            kind=kind,
            count=len(grouped[kind]),
            average_score=mean(grouped[kind]),
            total_score=sum(grouped[kind]),
        )
        for kind in IndicatorKind
        if kind in grouped
    ]


def category_performance(
    records: Iterable[ScoreRecord],
    indicators: Mapping[str, IndicatorDefinition],
) -> list[CategoryPerformanceEntry]:
    scores: dict[str, list[float]] = defaultdict(list)
    indicator_ids: dict[str, set[str]] = defaultdict(set)
    for r in records:
        indicator = indicators.get(r.indicator_id)
        category = indicator.category if indicator else UNASSIGNED_GROUP
        scores[category].append(r.final_score)
        indicator_ids[category].add(r.indicator_id)
    entries = [
        CategoryPerformanceEntry(
            category=category,
            average_score=mean(values),
            count=len(values),
            indicator_count=len(indicator_ids[category]),
        )
        for category, values in scores.items()
    ]
    entries.sort(key=lambda e: (-e.average_score, e.category))
    return entries


def trend(records: Iterable[ScoreRecord], buckets: int) -> list[TrendPoint]:
    """Average final score per (month, year), chronological, most recent buckets only."""
    grouped: dict[tuple[int, int], list[ScoreRecord]] = defaultdict(list)
    for r in records:
        grouped[period_sort_key(r.month, r.year)].append(r)
    points: list[TrendPoint] = []
    for key in sorted(grouped)[-buckets:]:
        bucket = grouped[key]
        month, year = bucket[0].month, bucket[0].year
        points.append(
            TrendPoint(
                month=month,
                year=year,
                period=format_period_label(month, year),
                average_score=mean([r.final_score for r in bucket]),
                count=len(bucket),
            )
        )
    return points


def performers(
    records: Iterable[ScoreRecord],
    subjects: Mapping[str, Subject],
    limit: int,
) -> tuple[list[PerformerEntry], list[PerformerEntry]]:
    """Rank subjects by average final score.

    Returns:
        (high, low): the top ``limit`` subjects best-first and the bottom
        ``limit`` subjects worst-first. With fewer than 2 * limit subjects the
        lists overlap.
    """
    grouped: dict[str, list[float]] = defaultdict(list)
    for r in records:
        grouped[r.subject_id].append(r.final_score)
    ranked: list[PerformerEntry] = []
    for subject_id, values in grouped.items():
        subject = subjects.get(subject_id)
        ranked.append(
            PerformerEntry(
                subject_id=subject_id,
                name=subject.name if subject else None,
                department=subject.department if subject else None,
                average_score=mean(values),
                count=len(values),
            )
        )
    ranked.sort(key=lambda p: (-p.average_score, p.subject_id))
    high = ranked[:limit]
    low = list(reversed(ranked[-limit:])) if ranked else []
    return high, low


def department_comparisons(
    records: Iterable[ScoreRecord],
    subjects: Mapping[str, Subject],
) -> list[DepartmentComparisonEntry]:
    scores: dict[str, list[float]] = defaultdict(list)
    members: dict[str, set[str]] = defaultdict(set)
    for r in records:
        subject = subjects.get(r.subject_id)
        department = subject.department if subject else UNASSIGNED_GROUP
        scores[department].append(r.final_score)
        members[department].add(r.subject_id)
    entries = [
        DepartmentComparisonEntry(
            department=department,
            average_score=mean(values),
            count=len(values),
            subject_count=len(members[department]),
        )
        for department, values in scores.items()
    ]
    entries.sort(key=lambda e: (-e.average_score, e.department))
    return entries


def latest_period(records: Iterable[ScoreRecord]) -> tuple[Month, int] | None:
    """Most recent (month, year) among records, or None."""
    best: ScoreRecord | None = None
    for r in records:
        if best is None or period_sort_key(r.month, r.year) > period_sort_key(
            best.month, best.year
        ):
            best = r
    return (best.month, best.year) if best else None


def distribution(values: Sequence[float], period: str | None = None) -> ScoreDistribution:
    """Mean, population variance and nearest-rank percentiles of per-indicator scores."""
    ordered = sorted(values)
    p25, p50, p75, p90 = (nearest_rank_percentile(ordered, p) for p in DISTRIBUTION_PERCENTILES)
    return ScoreDistribution(
        period=period,
        count=len(ordered),
        mean=mean(ordered),
        variance=population_variance(ordered),
        p25=p25,
        p50=p50,
        p75=p75,
        p90=p90,
    )


def performance_summary(
    records: Sequence[ScoreRecord],
    indicators: Mapping[str, IndicatorDefinition],
    applicable_indicators: int,
    period: str | None = None,
) -> PerformanceSummary:
    """Quantitative/qualitative split of one subject's records in one period."""
    quantitative_score = quantitative_weight = 0.0
    qualitative_score = qualitative_weight = 0.0
    for r in records:
        indicator = indicators.get(r.indicator_id)
        weight = indicator.weight if indicator else 0.0
        if r.kind == IndicatorKind.QUANTITATIVE:
            quantitative_score += r.final_score
            quantitative_weight += weight
        else:
            qualitative_score += r.final_score
            qualitative_weight += weight
    submitted = len({r.indicator_id for r in records})
    return PerformanceSummary(
        period=period,
        total_score=quantitative_score + qualitative_score,
        quantitative_score=quantitative_score,
        quantitative_weight=quantitative_weight,
        quantitative_attainment=ratio_percent(quantitative_score, quantitative_weight),
        qualitative_score=qualitative_score,
        qualitative_weight=qualitative_weight,
        qualitative_attainment=ratio_percent(qualitative_score, qualitative_weight),
        submitted_indicators=submitted,
        applicable_indicators=applicable_indicators,
        coverage=ratio_percent(submitted, applicable_indicators),
    )


class AggregationEngine:
    """Builds analytics reports from already-fetched records."""

    def __init__(self, config: AnalyticsConfig | None = None) -> None:
        self._config = config or AnalyticsConfig()

    @property
    def config(self) -> AnalyticsConfig:
        return self._config

    def build_report(
        self,
        scope: VisibilityScope,
        records: Iterable[ScoreRecord],
        indicators: Mapping[str, IndicatorDefinition],
        subjects: Mapping[str, Subject],
        filters: AnalyticsFilters,
        applicable_indicators: int = 0,
    ) -> AnalyticsReport:
        """Aggregate records for a resolved scope.

        Args:
            scope: Visibility scope from the resolver.
            records: Candidate records (re-filtered against scope and filters).
            indicators: Indicator lookup by id, inactive ones included.
            subjects: Subject lookup by id.
            filters: Period/year/month filters.
            applicable_indicators: Active indicators for the target subject's
                role (individual level coverage only).

        Returns:
            AnalyticsReport for scope.level.
        """
        selected = [
            r
            for r in records
            if r.subject_id in scope.member_ids and filters.matches(r.month, r.year)
        ]
        high, low = performers(selected, subjects, self._config.performer_limit)

        report = AnalyticsReport(
            level=scope.level,
            org_id=scope.actor.org_id,
            subject_id=scope.target_subject_id,
            department=scope.department,
            member_count=len(scope.member_ids),
            filters=filters,
            generated_at=datetime.now(UTC),
            summary=summarize_scores(selected),
            by_indicator=indicator_breakdown(selected, indicators),
            by_kind=kind_breakdown(selected),
            category_performance=category_performance(selected, indicators),
            trend=trend(selected, self._config.trend_buckets),
            high_performers=high,
            low_performers=low,
        )

        if scope.level == AnalyticsLevel.ORG:
            report.department_comparisons = department_comparisons(selected, subjects)

        if scope.level == AnalyticsLevel.INDIVIDUAL:
            period_key = self._distribution_period(selected, filters)
            period_records = (
                [r for r in selected if (r.month, r.year) == period_key] if period_key else []
            )
            label = format_period_label(*period_key) if period_key else None
            report.distribution = distribution([r.final_score for r in period_records], label)
            report.performance_summary = performance_summary(
                period_records, indicators, applicable_indicators, label
            )

        logger.debug(
            "Built %s report: org=%s members=%d records=%d",
            scope.level.value,
            scope.actor.org_id,
            len(scope.member_ids),
            len(selected),
        )
        return report

    @staticmethod
    def _distribution_period(
        records: Sequence[ScoreRecord], filters: AnalyticsFilters
    ) -> tuple[Month, int] | None:
        if filters.month is not None and filters.year is not None:
            return (filters.month, filters.year)
        return latest_period(records)

    def compare(
        self,
        dimension: ComparisonDimension,
        org_id: str,
        records: Iterable[ScoreRecord],
        subjects: Mapping[str, Subject],
        filters: AnalyticsFilters,
    ) -> ComparisonReport:
        """Group an organization's records by department or subject role."""
        scores: dict[str, list[float]] = defaultdict(list)
        members: dict[str, set[str]] = defaultdict(set)
        for r in records:
            if r.org_id != org_id or not filters.matches(r.month, r.year):
                continue
            subject = subjects.get(r.subject_id)
            if subject is None:
                group = UNASSIGNED_GROUP
            elif dimension == ComparisonDimension.DEPARTMENTS:
                group = subject.department
            else:
                group = subject.role.value
            scores[group].append(r.final_score)
            members[group].add(r.subject_id)

        groups = [
            ComparisonEntry(
                group=group,
                average_score=mean(values),
                max_score=max(values),
                min_score=min(values),
                count=len(values),
                subject_count=len(members[group]),
            )
            for group, values in scores.items()
        ]
        groups.sort(key=lambda g: (-g.average_score, g.group))
        return ComparisonReport(
            dimension=dimension,
            org_id=org_id,
            filters=filters,
            generated_at=datetime.now(UTC),
            groups=groups,
        )
