"""SubjectService - the people who are scored and who act.

Subjects reach the store two ways: authentication mirrors every API-key
identity on first use (``ensure``), and administrators register or edit
subjects directly (``upsert``). Once a subject exists, the stored record is
the caller's identity (``resolve_actor``): role, department and active flag
edits apply from the caller's next request, and team membership is never
cached.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from kpiscore.models.subject import ActingSubject, Subject, SubjectRole
from kpiscore.persistence.repositories.subjects import get_subjects_repository
from kpiscore.services.errors import ForbiddenError

if TYPE_CHECKING:
    from sqlalchemy import Connection

logger = logging.getLogger(__name__)


class UpsertSubjectInput(BaseModel):
    """Input model for registering or editing a subject."""

    name: str = Field(..., min_length=1, max_length=200)
    role: SubjectRole
    department: str = Field(..., min_length=1, max_length=100)
    active: bool = True


class SubjectService:
    """Service layer for subjects, scoped to one organization."""

    def __init__(self, org_id: str, db_conn: Connection | None = None) -> None:
        self._org_id = org_id
        self._subjects_repo = get_subjects_repository(db_conn, org_id)

    def ensure(self, actor: ActingSubject) -> bool:
        """Mirror an authenticated identity into the store if it is not there yet.

        Returns:
            True if the subject was created.
        """
        created = self._subjects_repo.ensure(
            Subject(
                subject_id=actor.subject_id,
                org_id=actor.org_id,
                name=actor.name,
                role=actor.role,
                department=actor.department,
            )
        )
        if created:
            logger.info("Subject registered from identity: %s", actor.subject_id)
        return created

    def resolve_actor(self, actor: ActingSubject) -> ActingSubject:
        """Return the caller's identity as the subject store currently records it.

        The key registry only seeds a subject on first use; role, department
        and name are read back from the store on every request.

        Raises:
            ForbiddenError: If the subject has been deactivated.
        """
        self.ensure(actor)
        stored = self._subjects_repo.get(actor.subject_id)
        if stored is None:
            return actor
        if not stored.active:
            logger.info("Inactive subject refused: %s", actor.subject_id)
            raise ForbiddenError("Subject is inactive", reason="subject_inactive")
        if (stored.role, stored.department) != (actor.role, actor.department):
            logger.debug(
                "Identity for %s taken from subject store: role=%s department=%s",
                actor.subject_id,
                stored.role.value,
                stored.department,
            )
        return ActingSubject(
            org_id=actor.org_id,
            subject_id=stored.subject_id,
            name=stored.name,
            role=stored.role,
            department=stored.department,
        )

    def upsert(
        self,
        subject_id: str,
        input_data: UpsertSubjectInput,
        actor: ActingSubject,
    ) -> Subject:
        """Create or replace a subject.

        Raises:
            ForbiddenError: If the actor is not an administrator.
        """
        if not actor.is_administrator:
            raise ForbiddenError(
                "Only administrators may manage subjects", reason="administrator_required"
            )
        subject = self._subjects_repo.upsert(
            Subject(
                subject_id=subject_id,
                org_id=self._org_id,
                name=input_data.name,
                role=input_data.role,
                department=input_data.department,
                active=input_data.active,
            )
        )
        logger.info(
            "Subject upserted: id=%s role=%s department=%s by=%s",
            subject_id,
            subject.role.value,
            subject.department,
            actor.subject_id,
        )
        return subject

    def list(
        self,
        actor: ActingSubject,
        department: str | None = None,
        include_inactive: bool = False,
    ) -> list[Subject]:
        """List subjects visible to the actor.

        Administrators see everyone (optionally one department); division
        heads see their own department only.

        Raises:
            ForbiddenError: If the actor is an employee, or a division head
                asks for another department.
        """
        if actor.is_administrator:
            return self._subjects_repo.list(department=department, active_only=not include_inactive)
        if actor.is_division_head:
            if department is not None and department != actor.department:
                raise ForbiddenError(
                    "Division heads can only list their own department",
                    reason="other_department",
                )
            return self._subjects_repo.list(
                department=actor.department, active_only=not include_inactive
            )
        raise ForbiddenError("Listing subjects requires division head access", reason="list_denied")
