"""AnalyticsService - role-scoped reports and organization comparisons.

Flow per request: resolve the visible member set from current subjects,
fetch only those members' records, then hand everything to the pure
aggregation engine.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from kpiscore.models.analytics import (
    AnalyticsFilters,
    AnalyticsLevel,
    AnalyticsReport,
    ComparisonDimension,
    ComparisonReport,
)
from kpiscore.models.period import Month
from kpiscore.models.subject import ActingSubject
from kpiscore.observability.tracing import traced_operation
from kpiscore.persistence.repositories.indicators import get_indicators_repository
from kpiscore.persistence.repositories.scores import get_scores_repository
from kpiscore.persistence.repositories.subjects import get_subjects_repository
from kpiscore.scoring.aggregation import AggregationEngine
from kpiscore.scoring.calculator import indicator_role_for
from kpiscore.scoring.config import AnalyticsConfig
from kpiscore.scoring.visibility import ORG_READERS, resolve_members
from kpiscore.services.errors import ForbiddenError, InvalidPeriodError, SubjectNotFoundError

if TYPE_CHECKING:
    from sqlalchemy import Connection

logger = logging.getLogger(__name__)


def build_filters(
    period: str | None = None,
    year: int | None = None,
    month: str | None = None,
) -> AnalyticsFilters:
    """Validate loosely typed filter values (query strings, CLI flags).

    Raises:
        InvalidPeriodError: If the label is malformed, a value is out of
            range, or the label disagrees with year/month.
    """
    try:
        return AnalyticsFilters(
            period=period or None,
            year=year,
            month=Month(month.strip().capitalize()) if month else None,
        )
    except ValueError as e:
        raise InvalidPeriodError(str(e)) from e


class AnalyticsService:
    """Builds analytics reports for an acting subject."""

    def __init__(
        self,
        org_id: str,
        db_conn: Connection | None = None,
        config: AnalyticsConfig | None = None,
    ) -> None:
        self._org_id = org_id
        self._engine = AggregationEngine(config)
        self._subjects_repo = get_subjects_repository(db_conn, org_id)
        self._indicators_repo = get_indicators_repository(db_conn, org_id)
        self._scores_repo = get_scores_repository(db_conn, org_id)

    def get_analytics(
        self,
        level: AnalyticsLevel,
        actor: ActingSubject,
        filters: AnalyticsFilters | None = None,
        target_subject_id: str | None = None,
    ) -> AnalyticsReport:
        """Aggregate the records visible to the actor at one level.

        Args:
            level: individual, team or org.
            actor: Acting subject.
            filters: Optional period/year/month narrowing.
            target_subject_id: Subject of an individual report (defaults to the actor).

        Returns:
            AnalyticsReport for the resolved scope.

        Raises:
            ForbiddenError: If the actor may not read at this level or target.
            SubjectNotFoundError: If an administrator targets an unknown subject.
        """
        filters = filters or AnalyticsFilters()
        with traced_operation(
            "get_analytics", {"kpiscore.org_id": self._org_id, "kpiscore.level": level}
        ):
            subjects = self._subjects_repo.list(active_only=False)
            scope = resolve_members(actor, level, subjects, target_subject_id)
            subjects_by_id = {s.subject_id: s for s in subjects}
            target_id = scope.target_subject_id
            if target_id and target_id != actor.subject_id and target_id not in subjects_by_id:
                raise SubjectNotFoundError(target_id, self._org_id)

            records = self._scores_repo.list_for_subjects(scope.member_ids, filters)
            indicators = self._indicators_repo.get_many(r.indicator_id for r in records)

            applicable = 0
            if level == AnalyticsLevel.INDIVIDUAL and target_id:
                target = subjects_by_id.get(target_id)
                if target is not None:
                    role = indicator_role_for(target, self._engine.config.field_unit_department)
                    applicable = len(self._indicators_repo.active_weights(role))

            report = self._engine.build_report(
                scope,
                records,
                indicators,
                subjects_by_id,
                filters,
                applicable_indicators=applicable,
            )

        logger.info(
            "Analytics built: level=%s actor=%s members=%d records=%d",
            level.value,
            actor.subject_id,
            report.member_count,
            report.summary.count,
        )
        return report

    def compare(
        self,
        dimension: ComparisonDimension,
        actor: ActingSubject,
        filters: AnalyticsFilters | None = None,
    ) -> ComparisonReport:
        """Compare the organization's departments or roles.

        Raises:
            ForbiddenError: If the actor is not an administrator.
        """
        if actor.role not in ORG_READERS:
            raise ForbiddenError(
                "Comparisons require administrator access", reason="org_level_denied"
            )
        filters = filters or AnalyticsFilters()
        subjects = {s.subject_id: s for s in self._subjects_repo.list(active_only=False)}
        records = self._scores_repo.list_for_subjects(None, filters)
        return self._engine.compare(dimension, self._org_id, records, subjects, filters)
