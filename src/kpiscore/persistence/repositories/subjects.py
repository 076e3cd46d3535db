"""Subjects repository.

Subjects are mirrored from the identity registry (see api.auth) and may also
be registered by administrators. Team membership is derived from the
``department`` column on every read; nothing is cached.
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import text

from kpiscore.models.subject import Subject, SubjectRole
from kpiscore.persistence.db import execute, is_postgres_configured

if TYPE_CHECKING:
    from sqlalchemy import Connection

logger = logging.getLogger(__name__)

_SUBJECT_COLUMNS = "subject_id, org_id, name, role, department, active"


class SubjectsRepository:
    """Postgres repository for subjects, scoped to one organization."""

    def __init__(self, conn: Connection, org_id: str) -> None:
        """Initialize repository with connection and organization scope.

        Args:
            conn: SQLAlchemy connection (must be in a transaction).
            org_id: Organization identifier all queries are scoped to.
        """
        self._conn = conn
        self._org_id = org_id

    def get(self, subject_id: str) -> Subject | None:
        row = execute(
            self._conn,
            text(
                f"""
                SELECT {_SUBJECT_COLUMNS}
                FROM subjects
                WHERE org_id = :org_id AND subject_id = :subject_id
                """
            ),
            {"org_id": self._org_id, "subject_id": subject_id},
            operation="subjects.get",
        ).fetchone()
        return _row_to_subject(row) if row is not None else None

    def list(self, department: str | None = None, active_only: bool = True) -> list[Subject]:
        clauses = ["org_id = :org_id"]
        params: dict[str, Any] = {"org_id": self._org_id}
        if department is not None:
            clauses.append("department = :department")
            params["department"] = department
        if active_only:
            clauses.append("active = TRUE")
        where = " AND ".join(clauses)
        rows = execute(
            self._conn,
            text(
                f"""
                SELECT {_SUBJECT_COLUMNS}
                FROM subjects
                WHERE {where}
                ORDER BY subject_id
                """
            ),
            params,
            operation="subjects.list",
        ).fetchall()
        return [_row_to_subject(row) for row in rows]

    def upsert(self, subject: Subject) -> Subject:
        """Insert or replace a subject's name, role, department and active flag."""
        execute(
            self._conn,
            text(
                """
                INSERT INTO subjects (
                    org_id, subject_id, name, role, department, active, created_at
                ) VALUES (
                    :org_id, :subject_id, :name, :role, :department, :active, :now
                )
                ON CONFLICT (org_id, subject_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    role = EXCLUDED.role,
                    department = EXCLUDED.department,
                    active = EXCLUDED.active,
                    updated_at = :now
                """
            ),
            {**_subject_params(subject, self._org_id), "now": datetime.now(UTC)},
            operation="subjects.upsert",
        )
        return subject

    def ensure(self, subject: Subject) -> bool:
        """Insert a subject if absent. Returns True if a row was created."""
        result = execute(
            self._conn,
            text(
                """
                INSERT INTO subjects (
                    org_id, subject_id, name, role, department, active, created_at
                ) VALUES (
                    :org_id, :subject_id, :name, :role, :department, :active, :now
                )
                ON CONFLICT (org_id, subject_id) DO NOTHING
                """
            ),
            {**_subject_params(subject, self._org_id), "now": datetime.now(UTC)},
            operation="subjects.ensure",
        )
        return result.rowcount > 0


def _subject_params(subject: Subject, org_id: str) -> dict[str, Any]:
    return {
        "org_id": org_id,
        "subject_id": subject.subject_id,
        "name": subject.name,
        "role": subject.role.value,
        "department": subject.department,
        "active": subject.active,
    }


def _row_to_subject(row: Any) -> Subject:
    return Subject(
        subject_id=str(row.subject_id),
        org_id=str(row.org_id),
        name=row.name,
        role=SubjectRole(row.role),
        department=row.department,
        active=bool(row.active),
    )


_in_memory_store: dict[tuple[str, str], Subject] = {}
_store_lock = threading.Lock()


class InMemorySubjectsRepository:
    """In-memory fallback repository for when Postgres is not configured."""

    def __init__(self, org_id: str) -> None:
        self._org_id = org_id

    def get(self, subject_id: str) -> Subject | None:
        return _in_memory_store.get((self._org_id, subject_id))

    def list(self, department: str | None = None, active_only: bool = True) -> list[Subject]:
        with _store_lock:
            subjects = [s for (org_id, _), s in _in_memory_store.items() if org_id == self._org_id]
        if department is not None:
            subjects = [s for s in subjects if s.department == department]
        if active_only:
            subjects = [s for s in subjects if s.active]
        return sorted(subjects, key=lambda s: s.subject_id)

    def upsert(self, subject: Subject) -> Subject:
        stored = subject.model_copy(update={"org_id": self._org_id})
        with _store_lock:
            _in_memory_store[(self._org_id, subject.subject_id)] = stored
        return stored

    def ensure(self, subject: Subject) -> bool:
        key = (self._org_id, subject.subject_id)
        with _store_lock:
            if key in _in_memory_store:
                return False
            _in_memory_store[key] = subject.model_copy(update={"org_id": self._org_id})
            return True


def seed_subject_in_memory(subject: Subject) -> None:
    """Seed a subject into the in-memory store. For testing only."""
    InMemorySubjectsRepository(subject.org_id).upsert(subject)


def clear_in_memory_store() -> None:
    """Clear the in-memory store. For testing only."""
    with _store_lock:
        _in_memory_store.clear()


def get_subjects_repository(
    conn: Connection | None,
    org_id: str,
) -> SubjectsRepository | InMemorySubjectsRepository:
    """Return the Postgres repository if configured, otherwise the in-memory fallback."""
    if conn is not None and is_postgres_configured():
        return SubjectsRepository(conn, org_id)
    return InMemorySubjectsRepository(org_id)
