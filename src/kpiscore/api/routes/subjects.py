"""Subject routes for the kpiscore API.

Provides:
- GET /v1/subjects (List Subjects)
- PUT /v1/subjects/{subject_id} (Register or Edit Subject)
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from kpiscore.api.auth import RequireActingSubject
from kpiscore.api.errors import ERROR_RESPONSES, to_http_error
from kpiscore.models.subject import Subject
from kpiscore.services.errors import KpiServiceError
from kpiscore.services.subjects import SubjectService, UpsertSubjectInput

router = APIRouter(prefix="/v1", tags=["Subjects"], responses=ERROR_RESPONSES)


class UpsertSubjectRequest(UpsertSubjectInput):
    """Request body for PUT /v1/subjects/{subject_id}."""


class SubjectList(BaseModel):
    items: list[Subject]


def _get_subject_service(request: Request, org_id: str) -> SubjectService:
    return SubjectService(org_id=org_id, db_conn=getattr(request.state, "db_conn", None))


@router.get("/subjects", response_model=SubjectList, operation_id="listSubjects")
def list_subjects(
    request: Request,
    actor: RequireActingSubject,
    department: str | None = None,
    include_inactive: bool = False,
) -> SubjectList:
    """List subjects: all for administrators, own department for division heads."""
    service = _get_subject_service(request, actor.org_id)
    try:
        items = service.list(actor, department=department, include_inactive=include_inactive)
    except KpiServiceError as e:
        raise to_http_error(e) from e
    return SubjectList(items=items)


@router.put("/subjects/{subject_id}", response_model=Subject, operation_id="upsertSubject")
def upsert_subject(
    subject_id: str,
    request: Request,
    actor: RequireActingSubject,
    body: UpsertSubjectRequest,
) -> Subject:
    """Create or replace a subject. Role and department changes apply to the
    next analytics request."""
    service = _get_subject_service(request, actor.org_id)
    try:
        return service.upsert(subject_id, body, actor)
    except KpiServiceError as e:
        raise to_http_error(e) from e
