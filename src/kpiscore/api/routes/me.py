"""Identity route: GET /v1/me."""

from fastapi import APIRouter

from kpiscore.api.auth import RequireActingSubject
from kpiscore.models.subject import ActingSubject

router = APIRouter(prefix="/v1", tags=["Identity"])


@router.get("/me", response_model=ActingSubject, operation_id="getMe")
def get_me(actor: RequireActingSubject) -> ActingSubject:
    """Return the acting subject resolved from the API key.

    Args:
        actor: Injected acting subject from auth dependency.

    Returns:
        ActingSubject with org_id, subject_id, name, role and department.
    """
    return actor
