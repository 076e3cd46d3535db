"""kpiscore API authentication and acting-subject resolution.

Callers authenticate with an API key (X-KPISCORE-API-Key header). The key
registry maps each key to an organization and subject, plus the name, role
and department used to register that subject on first use. After that the
subject store is authoritative for role, department and active status.
Nothing downstream trusts identity fields sent in request bodies.

Fails closed on missing or invalid credentials. Unknown roles are rejected
when the registry is loaded.
"""

from __future__ import annotations

import hmac
import json
import logging
import os
from typing import Annotated

from fastapi import Depends, Request
from pydantic import BaseModel, ValidationError

from kpiscore.api.errors import KpiHttpError, to_http_error
from kpiscore.api.policy import policy_check
from kpiscore.models.subject import ActingSubject, SubjectRole
from kpiscore.services.errors import ForbiddenError
from kpiscore.services.subjects import SubjectService

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-KPISCORE-API-Key"
KPISCORE_API_KEYS_ENV = "KPISCORE_API_KEYS_JSON"


class ApiKeyRecord(BaseModel):
    """API key registry entry: the identity a key acts as."""

    org_id: str
    subject_id: str
    name: str
    role: SubjectRole
    department: str


def _load_api_key_registry() -> dict[str, ApiKeyRecord]:
    """Load the API key registry from the environment.

    Returns:
        Dict mapping API key strings to ApiKeyRecord objects. Entries that
        fail validation (including unknown roles) are dropped; a missing or
        malformed variable yields an empty registry.
    """
    raw = os.environ.get(KPISCORE_API_KEYS_ENV)
    if not raw:
        return {}

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Failed to parse %s; treating as empty registry", KPISCORE_API_KEYS_ENV)
        return {}

    if not isinstance(parsed, dict):
        logger.warning("%s is not a dict; treating as empty registry", KPISCORE_API_KEYS_ENV)
        return {}

    registry: dict[str, ApiKeyRecord] = {}
    for key, value in parsed.items():
        if not isinstance(key, str) or not isinstance(value, dict):
            continue
        try:
            registry[key] = ApiKeyRecord.model_validate(value)
        except ValidationError:
            logger.warning("Skipping invalid API key registry entry")
            continue

    return registry


def _constant_time_lookup(
    provided_key: str, registry: dict[str, ApiKeyRecord]
) -> ApiKeyRecord | None:
    """Look up an API key comparing against every entry with hmac.compare_digest."""
    matched_record: ApiKeyRecord | None = None
    provided_bytes = provided_key.encode("utf-8")

    for registered_key, record in registry.items():
        if hmac.compare_digest(provided_bytes, registered_key.encode("utf-8")):
            matched_record = record

    return matched_record


def authenticate_request(request: Request) -> ActingSubject:
    """Resolve the acting subject from the X-KPISCORE-API-Key header.

    Raises:
        KpiHttpError: 401 if the key is missing, unknown, or no registry exists.
    """
    api_key = request.headers.get(API_KEY_HEADER)
    if not api_key:
        raise KpiHttpError(status_code=401, code="UNAUTHORIZED", message="Missing API key")

    registry = _load_api_key_registry()
    record = _constant_time_lookup(api_key, registry) if registry else None
    if record is None:
        raise KpiHttpError(status_code=401, code="UNAUTHORIZED", message="Invalid API key")

    return ActingSubject(
        org_id=record.org_id,
        subject_id=record.subject_id,
        name=record.name,
        role=record.role,
        department=record.department,
    )


def _route_operation_id(request: Request) -> str | None:
    route = request.scope.get("route")
    return getattr(route, "operation_id", None)


def require_acting_subject(request: Request) -> ActingSubject:
    """FastAPI dependency: authenticate, authorize, and register the caller.

    Flow (fail closed):
    1. Resolve the key's identity => 401 on failure.
    2. Register the subject on first use, then replace the key's role and
       department with the stored ones => 403 FORBIDDEN if inactive.
    3. Check the matched route's operation_id against POLICY_RULES using the
       stored role => 403 RBAC_DENIED.
    4. Store the acting subject in request.state for downstream use.

    Declared sync so FastAPI runs the store access in its threadpool.

    Raises:
        KpiHttpError: 401 on auth failure, 403 for inactive subjects or on
            policy denial.
    """
    key_identity = authenticate_request(request)
    request_id = getattr(request.state, "request_id", None)

    db_conn = getattr(request.state, "db_conn", None)
    try:
        actor = SubjectService(key_identity.org_id, db_conn=db_conn).resolve_actor(key_identity)
    except ForbiddenError as e:
        raise to_http_error(e) from e

    operation_id = _route_operation_id(request)

    decision = policy_check(
        org_id=actor.org_id,
        subject_id=actor.subject_id,
        role=actor.role.value,
        operation_id=operation_id,
    )
    if not decision.allow:
        logger.info(
            "RBAC denied: %s for subject=%s operation=%s",
            decision.message,
            actor.subject_id,
            operation_id,
            extra={"request_id": request_id, "decision_code": decision.code},
        )
        raise KpiHttpError(
            status_code=403,
            code=decision.code,
            message=decision.message,
            details=decision.details,
        )

    request.state.acting_subject = actor
    return actor


RequireActingSubject = Annotated[ActingSubject, Depends(require_acting_subject)]
