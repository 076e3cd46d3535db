"""Analytics routes for the kpiscore API.

The level in the path selects the aggregation scope; the acting subject's
role decides which members it may cover. Asking for a scope beyond the
caller's role answers 403 FORBIDDEN, never a silently narrowed report.
"""

from __future__ import annotations

from fastapi import APIRouter, Request

from kpiscore.api.auth import RequireActingSubject
from kpiscore.api.errors import ERROR_RESPONSES, to_http_error
from kpiscore.models.analytics import (
    AnalyticsLevel,
    AnalyticsReport,
    ComparisonDimension,
    ComparisonReport,
)
from kpiscore.services.analytics import AnalyticsService, build_filters
from kpiscore.services.errors import KpiServiceError

router = APIRouter(prefix="/v1", tags=["Analytics"], responses=ERROR_RESPONSES)


def _get_analytics_service(request: Request, org_id: str) -> AnalyticsService:
    return AnalyticsService(
        org_id=org_id,
        db_conn=getattr(request.state, "db_conn", None),
        config=getattr(request.app.state, "analytics_config", None),
    )


@router.get(
    "/analytics/comparisons/{dimension}",
    response_model=ComparisonReport,
    operation_id="getComparisons",
)
def get_comparisons(
    dimension: ComparisonDimension,
    request: Request,
    actor: RequireActingSubject,
    period: str | None = None,
    year: int | None = None,
    month: str | None = None,
) -> ComparisonReport:
    """Compare departments or roles across the organization."""
    service = _get_analytics_service(request, actor.org_id)
    try:
        filters = build_filters(period=period, year=year, month=month)
        return service.compare(dimension, actor, filters)
    except KpiServiceError as e:
        raise to_http_error(e) from e


@router.get(
    "/analytics/{level}",
    response_model=AnalyticsReport,
    response_model_exclude_none=True,
    operation_id="getAnalytics",
)
def get_analytics(
    level: AnalyticsLevel,
    request: Request,
    actor: RequireActingSubject,
    subject_id: str | None = None,
    period: str | None = None,
    year: int | None = None,
    month: str | None = None,
) -> AnalyticsReport:
    """Build the analytics report for one level.

    Args:
        level: individual, team or org.
        request: FastAPI request for DB connection access.
        actor: Injected acting subject from auth dependency.
        subject_id: Target of an individual report (defaults to the caller).
        period: Optional period label filter, e.g. "Jan 2025".
        year: Optional year filter.
        month: Optional month filter ("Jan" .. "Dec").

    Returns:
        AnalyticsReport for the resolved scope.

    Raises:
        KpiHttpError: 403 FORBIDDEN if the level or target is beyond the
            caller's role, 400 INVALID_PERIOD for malformed filters.
    """
    service = _get_analytics_service(request, actor.org_id)
    try:
        filters = build_filters(period=period, year=year, month=month)
        return service.get_analytics(level, actor, filters, target_subject_id=subject_id)
    except KpiServiceError as e:
        raise to_http_error(e) from e
