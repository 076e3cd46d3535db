"""Score routes for the kpiscore API.

Provides:
- POST /v1/scores (Submit Score)
- GET /v1/scores/{score_id} (Get Score)
- PATCH /v1/scores/{score_id} (Correct Score Value)
- POST /v1/scores/{score_id}/verify (Verify Score)
- GET /v1/subjects/{subject_id}/scores (List Subject Scores)
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from kpiscore.api.auth import RequireActingSubject
from kpiscore.api.errors import ERROR_RESPONSES, to_http_error
from kpiscore.models.analytics import IndicatorBreakdownEntry
from kpiscore.models.score_record import ScoreRecord
from kpiscore.services.analytics import build_filters
from kpiscore.services.errors import KpiServiceError
from kpiscore.services.scores import ScoreService, SubmitScoreInput, UpdateScoreInput

router = APIRouter(prefix="/v1", tags=["Scores"], responses=ERROR_RESPONSES)


class SubmitScoreRequest(SubmitScoreInput):
    """Request body for POST /v1/scores."""


class UpdateScoreRequest(UpdateScoreInput):
    """Request body for PATCH /v1/scores/{score_id}."""


class SubjectScoreList(BaseModel):
    """One subject's records, newest period first."""

    subject_id: str
    items: list[IndicatorBreakdownEntry]


def _get_score_service(request: Request, org_id: str) -> ScoreService:
    """Get ScoreService wired to the request's connection and the app collaborators."""
    app_state = request.app.state
    return ScoreService(
        org_id=org_id,
        db_conn=getattr(request.state, "db_conn", None),
        audit_sink=getattr(app_state, "audit_sink", None),
        notification_dispatcher=getattr(app_state, "notification_dispatcher", None),
        config=getattr(app_state, "analytics_config", None),
    )


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


@router.post(
    "/scores",
    response_model=ScoreRecord,
    status_code=201,
    operation_id="submitScore",
)
def submit_score(
    request: Request,
    actor: RequireActingSubject,
    body: SubmitScoreRequest,
) -> ScoreRecord:
    """Submit one measurement for one indicator and period.

    Args:
        request: FastAPI request for DB connection access.
        actor: Injected acting subject from auth dependency.
        body: Indicator, value, period and optional scored subject.

    Returns:
        Stored record with its computed final score.

    Raises:
        KpiHttpError: 409 DUPLICATE_PERIOD for a second submission in the same
            period, 403 ROLE_MISMATCH when the indicator's role does not apply,
            400 for invalid values or periods.
    """
    service = _get_score_service(request, actor.org_id)
    input_data = body.model_copy(update={"request_id": _request_id(request)})
    try:
        return service.submit_score(input_data, actor)
    except KpiServiceError as e:
        raise to_http_error(e) from e


@router.get(
    "/scores/{score_id}",
    response_model=ScoreRecord,
    operation_id="getScore",
)
def get_score(score_id: str, request: Request, actor: RequireActingSubject) -> ScoreRecord:
    """Get one record. Records the caller may not see answer 404."""
    service = _get_score_service(request, actor.org_id)
    try:
        return service.get_score(score_id, actor)
    except KpiServiceError as e:
        raise to_http_error(e) from e


@router.patch(
    "/scores/{score_id}",
    response_model=ScoreRecord,
    operation_id="updateScore",
)
def update_score(
    score_id: str,
    request: Request,
    actor: RequireActingSubject,
    body: UpdateScoreRequest,
) -> ScoreRecord:
    """Correct the value of an unverified record.

    Raises:
        KpiHttpError: 409 ALREADY_VERIFIED once the record is verified.
    """
    service = _get_score_service(request, actor.org_id)
    input_data = body.model_copy(update={"request_id": _request_id(request)})
    try:
        return service.update_value(score_id, input_data, actor)
    except KpiServiceError as e:
        raise to_http_error(e) from e


@router.post(
    "/scores/{score_id}/verify",
    response_model=ScoreRecord,
    operation_id="verifyScore",
)
def verify_score(score_id: str, request: Request, actor: RequireActingSubject) -> ScoreRecord:
    """Verify a record, freezing its final score.

    Raises:
        KpiHttpError: 409 ALREADY_VERIFIED on a second verification, 404 if
            the record does not exist.
    """
    service = _get_score_service(request, actor.org_id)
    try:
        return service.verify_score(score_id, actor, request_id=_request_id(request))
    except KpiServiceError as e:
        raise to_http_error(e) from e


@router.get(
    "/subjects/{subject_id}/scores",
    response_model=SubjectScoreList,
    operation_id="listSubjectScores",
)
def list_subject_scores(
    subject_id: str,
    request: Request,
    actor: RequireActingSubject,
    period: str | None = None,
    year: int | None = None,
    month: str | None = None,
) -> SubjectScoreList:
    """List a subject's records with indicator details, newest period first."""
    service = _get_score_service(request, actor.org_id)
    try:
        filters = build_filters(period=period, year=year, month=month)
        items = service.list_subject_scores(subject_id, actor, filters)
    except KpiServiceError as e:
        raise to_http_error(e) from e
    return SubjectScoreList(subject_id=subject_id, items=items)
