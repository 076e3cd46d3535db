"""Indicator routes for the kpiscore API.

Creation and updates of active indicators are checked against the role's
weight budget; a save that would push the role above 100 answers
409 WEIGHT_EXCEEDED and stores nothing.
"""

from __future__ import annotations

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel

from kpiscore.api.auth import RequireActingSubject
from kpiscore.api.errors import ERROR_RESPONSES, to_http_error
from kpiscore.models.indicator import (
    IndicatorDefinition,
    IndicatorKind,
    IndicatorRole,
    IndicatorStats,
)
from kpiscore.persistence.repositories.indicators import MAX_PAGE_SIZE
from kpiscore.services.errors import KpiServiceError
from kpiscore.services.indicators import (
    CreateIndicatorInput,
    IndicatorService,
    UpdateIndicatorInput,
)

router = APIRouter(prefix="/v1", tags=["Indicators"], responses=ERROR_RESPONSES)


class CreateIndicatorRequest(CreateIndicatorInput):
    """Request body for POST /v1/indicators."""


class UpdateIndicatorRequest(UpdateIndicatorInput):
    """Request body for PATCH /v1/indicators/{indicator_id}."""


class PaginatedIndicatorList(BaseModel):
    """Paginated list of indicators."""

    items: list[IndicatorDefinition]
    next_cursor: str | None = None


class IndicatorList(BaseModel):
    items: list[IndicatorDefinition]


class CategoryList(BaseModel):
    items: list[str]


class WeightAllocationResponse(BaseModel):
    """Read-time allocation of one role's weight budget."""

    role: IndicatorRole
    total_weight: float
    indicator_count: int
    remaining_weight: float
    is_fully_allocated: bool
    message: str


def _get_indicator_service(request: Request, org_id: str) -> IndicatorService:
    """Get IndicatorService bound to the request's DB connection and audit sink."""
    db_conn = getattr(request.state, "db_conn", None)
    audit_sink = getattr(request.app.state, "audit_sink", None)
    return IndicatorService(org_id=org_id, db_conn=db_conn, audit_sink=audit_sink)


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


@router.post(
    "/indicators",
    response_model=IndicatorDefinition,
    status_code=201,
    operation_id="createIndicator",
)
def create_indicator(
    request: Request,
    actor: RequireActingSubject,
    body: CreateIndicatorRequest,
) -> IndicatorDefinition:
    """Create an indicator for a role.

    Args:
        request: FastAPI request for DB connection access.
        actor: Injected acting subject from auth dependency.
        body: Indicator definition.

    Returns:
        Created indicator.

    Raises:
        KpiHttpError: 409 WEIGHT_EXCEEDED if the role total would exceed 100.
    """
    service = _get_indicator_service(request, actor.org_id)
    input_data = body.model_copy(update={"request_id": _request_id(request)})
    try:
        return service.validate_and_save(input_data, actor)
    except KpiServiceError as e:
        raise to_http_error(e) from e


@router.get(
    "/indicators",
    response_model=PaginatedIndicatorList,
    operation_id="listIndicators",
)
def list_indicators(
    request: Request,
    actor: RequireActingSubject,
    role: IndicatorRole | None = None,
    category: str | None = None,
    kind: IndicatorKind | None = None,
    include_inactive: bool = False,
    limit: int = Query(default=50, ge=1, le=MAX_PAGE_SIZE),
    cursor: str | None = None,
) -> PaginatedIndicatorList:
    """List indicators, ordered by id, with optional filters."""
    service = _get_indicator_service(request, actor.org_id)
    items, next_cursor = service.list(
        role=role,
        category=category,
        kind=kind,
        include_inactive=include_inactive,
        limit=limit,
        cursor=cursor,
    )
    return PaginatedIndicatorList(items=items, next_cursor=next_cursor)


@router.get(
    "/indicators/categories",
    response_model=CategoryList,
    operation_id="listIndicatorCategories",
)
def list_indicator_categories(request: Request, actor: RequireActingSubject) -> CategoryList:
    """Distinct categories of active indicators."""
    service = _get_indicator_service(request, actor.org_id)
    return CategoryList(items=service.categories())


@router.get(
    "/indicators/stats",
    response_model=IndicatorStats,
    operation_id="getIndicatorStats",
)
def get_indicator_stats(request: Request, actor: RequireActingSubject) -> IndicatorStats:
    """Per-role counts and weight totals of active indicators."""
    service = _get_indicator_service(request, actor.org_id)
    return service.stats()


@router.get(
    "/indicators/roles/{role}",
    response_model=IndicatorList,
    operation_id="listIndicatorsByRole",
)
def list_indicators_by_role(
    role: IndicatorRole,
    request: Request,
    actor: RequireActingSubject,
    category: str | None = None,
    kind: IndicatorKind | None = None,
) -> IndicatorList:
    """Active indicators of one role, heaviest first."""
    service = _get_indicator_service(request, actor.org_id)
    return IndicatorList(items=service.list_by_role(role, category=category, kind=kind))


@router.get(
    "/indicators/roles/{role}/allocation",
    response_model=WeightAllocationResponse,
    operation_id="getWeightAllocation",
)
def get_weight_allocation(
    role: IndicatorRole,
    request: Request,
    actor: RequireActingSubject,
) -> WeightAllocationResponse:
    """Report whether a role's active weights sum to exactly 100."""
    service = _get_indicator_service(request, actor.org_id)
    allocation = service.allocation(role)
    return WeightAllocationResponse(
        role=allocation.role,
        total_weight=allocation.total_weight,
        indicator_count=allocation.indicator_count,
        remaining_weight=allocation.remaining_weight,
        is_fully_allocated=allocation.is_fully_allocated,
        message=allocation.message,
    )


@router.get(
    "/indicators/{indicator_id}",
    response_model=IndicatorDefinition,
    operation_id="getIndicator",
)
def get_indicator(
    indicator_id: str,
    request: Request,
    actor: RequireActingSubject,
) -> IndicatorDefinition:
    """Get an indicator by id.

    Raises:
        KpiHttpError: 404 if the indicator does not exist in the organization.
    """
    service = _get_indicator_service(request, actor.org_id)
    try:
        return service.get(indicator_id)
    except KpiServiceError as e:
        raise to_http_error(e) from e


@router.patch(
    "/indicators/{indicator_id}",
    response_model=IndicatorDefinition,
    operation_id="updateIndicator",
)
def update_indicator(
    indicator_id: str,
    request: Request,
    actor: RequireActingSubject,
    body: UpdateIndicatorRequest,
) -> IndicatorDefinition:
    """Partially update an indicator.

    Raises:
        KpiHttpError: 404 if not found, 409 WEIGHT_EXCEEDED if the update
            would push the role total above 100.
    """
    service = _get_indicator_service(request, actor.org_id)
    input_data = body.model_copy(update={"request_id": _request_id(request)})
    try:
        return service.update(indicator_id, input_data, actor)
    except KpiServiceError as e:
        raise to_http_error(e) from e


@router.delete(
    "/indicators/{indicator_id}",
    response_model=IndicatorDefinition,
    operation_id="deactivateIndicator",
)
def deactivate_indicator(
    indicator_id: str,
    request: Request,
    actor: RequireActingSubject,
) -> IndicatorDefinition:
    """Soft-delete an indicator; its score records are kept."""
    service = _get_indicator_service(request, actor.org_id)
    try:
        return service.deactivate(indicator_id, actor, request_id=_request_id(request))
    except KpiServiceError as e:
        raise to_http_error(e) from e
