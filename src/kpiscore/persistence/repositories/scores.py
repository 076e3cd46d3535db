"""Score records repository.

Uniqueness of (org_id, subject_id, indicator_id, month, year) is enforced by
the store itself: a unique index in Postgres, a check under the store lock in
memory. Value corrections and verification are conditional writes that only
touch unverified rows, so two concurrent verifiers cannot both succeed.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import text

from kpiscore.models.analytics import AnalyticsFilters
from kpiscore.models.indicator import IndicatorKind
from kpiscore.models.period import Month
from kpiscore.models.score_record import ScoreRecord, ScoreSource
from kpiscore.persistence.db import execute, is_postgres_configured

if TYPE_CHECKING:
    from sqlalchemy import Connection

logger = logging.getLogger(__name__)

_SCORE_COLUMNS = """
    score_id, org_id, subject_id, indicator_id, value, target_snapshot,
    month, year, period, final_score, kind, evaluated_by, notes, source,
    verified, verified_by, verified_at, created_at, updated_at
"""


def newest_first(records: Iterable[ScoreRecord]) -> list[ScoreRecord]:
    """Order records by period descending, then by indicator."""
    return sorted(
        records,
        key=lambda r: (-r.year, -r.month.ordinal, r.indicator_id, r.score_id),
    )


def _filter_clauses(filters: AnalyticsFilters | None, params: dict[str, Any]) -> list[str]:
    clauses: list[str] = []
    if filters is None:
        return clauses
    if filters.year is not None:
        clauses.append("year = :year")
        params["year"] = filters.year
    if filters.month is not None:
        clauses.append("month = :month")
        params["month"] = filters.month.value
    return clauses


class ScoresRepository:
    """Postgres repository for score records, scoped to one organization."""

    def __init__(self, conn: Connection, org_id: str) -> None:
        """Initialize repository with connection and organization scope.

        Args:
            conn: SQLAlchemy connection (must be in a transaction).
            org_id: Organization identifier all queries are scoped to.
        """
        self._conn = conn
        self._org_id = org_id

    def insert(self, record: ScoreRecord) -> bool:
        """Insert a new record.

        Returns:
            False if a record already exists for the same subject, indicator
            and period; the existing row is left untouched.
        """
        result = execute(
            self._conn,
            text(
                """
                INSERT INTO score_records (
                    score_id, org_id, subject_id, indicator_id, value,
                    target_snapshot, month, month_ordinal, year, period,
                    final_score, kind, evaluated_by, notes, source, verified,
                    verified_by, verified_at, created_at, updated_at
                ) VALUES (
                    :score_id, :org_id, :subject_id, :indicator_id, :value,
                    :target_snapshot, :month, :month_ordinal, :year, :period,
                    :final_score, :kind, :evaluated_by, :notes, :source, :verified,
                    :verified_by, :verified_at, :created_at, :updated_at
                )
                ON CONFLICT (org_id, subject_id, indicator_id, month, year) DO NOTHING
                """
            ),
            _score_params(record, self._org_id),
            operation="scores.insert",
        )
        return result.rowcount > 0

    def get(self, score_id: str) -> ScoreRecord | None:
        row = execute(
            self._conn,
            text(
                f"""
                SELECT {_SCORE_COLUMNS}
                FROM score_records
                WHERE org_id = :org_id AND score_id = :score_id
                """
            ),
            {"org_id": self._org_id, "score_id": score_id},
            operation="scores.get",
        ).fetchone()
        return _row_to_score(row) if row is not None else None

    def list_for_subjects(
        self,
        subject_ids: Iterable[str] | None,
        filters: AnalyticsFilters | None = None,
    ) -> list[ScoreRecord]:
        """List records for the given subjects, newest period first.

        Args:
            subject_ids: Subjects to include, or None for the whole organization.
            filters: Optional month/year narrowing.
        """
        params: dict[str, Any] = {"org_id": self._org_id}
        clauses = ["org_id = :org_id"]
        if subject_ids is not None:
            ids = sorted(set(subject_ids))
            if not ids:
                return []
            clauses.append("subject_id = ANY(:subject_ids)")
            params["subject_ids"] = ids
        clauses.extend(_filter_clauses(filters, params))
        where = " AND ".join(clauses)

        rows = execute(
            self._conn,
            text(
                f"""
                SELECT {_SCORE_COLUMNS}
                FROM score_records
                WHERE {where}
                ORDER BY year DESC, month_ordinal DESC, indicator_id, score_id
                """
            ),
            params,
            operation="scores.list_for_subjects",
        ).fetchall()
        return [_row_to_score(row) for row in rows]

    def update_value(
        self,
        score_id: str,
        *,
        value: float,
        target_snapshot: float,
        final_score: float,
        notes: str,
        evaluated_by: str,
        updated_at: datetime,
    ) -> ScoreRecord | None:
        """Correct an unverified record's value and derived score.

        Returns:
            The updated record, or None if it does not exist or is verified.
        """
        row = execute(
            self._conn,
            text(
                f"""
                UPDATE score_records SET
                    value = :value,
                    target_snapshot = :target_snapshot,
                    final_score = :final_score,
                    notes = :notes,
                    evaluated_by = :evaluated_by,
                    updated_at = :updated_at
                WHERE org_id = :org_id AND score_id = :score_id AND verified = FALSE
                RETURNING {_SCORE_COLUMNS}
                """
            ),
            {
                "org_id": self._org_id,
                "score_id": score_id,
                "value": value,
                "target_snapshot": target_snapshot,
                "final_score": final_score,
                "notes": notes,
                "evaluated_by": evaluated_by,
                "updated_at": updated_at,
            },
            operation="scores.update_value",
        ).fetchone()
        return _row_to_score(row) if row is not None else None

    def mark_verified(
        self,
        score_id: str,
        *,
        verified_by: str,
        verified_at: datetime,
    ) -> ScoreRecord | None:
        """Flip verified from false to true.

        Returns:
            The verified record, or None if it does not exist or was already verified.
        """
        row = execute(
            self._conn,
            text(
                f"""
                UPDATE score_records SET
                    verified = TRUE,
                    verified_by = :verified_by,
                    verified_at = :verified_at,
                    updated_at = :verified_at
                WHERE org_id = :org_id AND score_id = :score_id AND verified = FALSE
                RETURNING {_SCORE_COLUMNS}
                """
            ),
            {
                "org_id": self._org_id,
                "score_id": score_id,
                "verified_by": verified_by,
                "verified_at": verified_at,
            },
            operation="scores.mark_verified",
        ).fetchone()
        return _row_to_score(row) if row is not None else None


def _score_params(record: ScoreRecord, org_id: str) -> dict[str, Any]:
    return {
        "score_id": record.score_id,
        "org_id": org_id,
        "subject_id": record.subject_id,
        "indicator_id": record.indicator_id,
        "value": record.value,
        "target_snapshot": record.target_snapshot,
        "month": record.month.value,
        "month_ordinal": record.month.ordinal,
        "year": record.year,
        "period": record.period,
        "final_score": record.final_score,
        "kind": record.kind.value,
        "evaluated_by": record.evaluated_by,
        "notes": record.notes,
        "source": record.source.value,
        "verified": record.verified,
        "verified_by": record.verified_by,
        "verified_at": record.verified_at,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def _row_to_score(row: Any) -> ScoreRecord:
    return ScoreRecord(
        score_id=str(row.score_id),
        org_id=str(row.org_id),
        subject_id=str(row.subject_id),
        indicator_id=str(row.indicator_id),
        value=float(row.value),
        target_snapshot=float(row.target_snapshot),
        month=Month(row.month),
        year=int(row.year),
        period=row.period,
        final_score=float(row.final_score),
        kind=IndicatorKind(row.kind),
        evaluated_by=row.evaluated_by,
        notes=row.notes or "",
        source=ScoreSource(row.source),
        verified=bool(row.verified),
        verified_by=row.verified_by,
        verified_at=row.verified_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


_in_memory_store: dict[str, ScoreRecord] = {}
_store_lock = threading.Lock()


def _natural_key(record: ScoreRecord) -> tuple[str, str, str, Month, int]:
    return (record.org_id, record.subject_id, record.indicator_id, record.month, record.year)


class InMemoryScoresRepository:
    """In-memory fallback repository for when Postgres is not configured."""

    def __init__(self, org_id: str) -> None:
        self._org_id = org_id

    def insert(self, record: ScoreRecord) -> bool:
        stored = record.model_copy(update={"org_id": self._org_id})
        key = _natural_key(stored)
        with _store_lock:
            if any(_natural_key(r) == key for r in _in_memory_store.values()):
                return False
            _in_memory_store[stored.score_id] = stored
        return True

    def get(self, score_id: str) -> ScoreRecord | None:
        record = _in_memory_store.get(score_id)
        if record is None or record.org_id != self._org_id:
            return None
        return record

    def list_for_subjects(
        self,
        subject_ids: Iterable[str] | None,
        filters: AnalyticsFilters | None = None,
    ) -> list[ScoreRecord]:
        wanted = set(subject_ids) if subject_ids is not None else None
        with _store_lock:
            records = [r for r in _in_memory_store.values() if r.org_id == self._org_id]
        if wanted is not None:
            records = [r for r in records if r.subject_id in wanted]
        if filters is not None:
            records = [r for r in records if filters.matches(r.month, r.year)]
        return newest_first(records)

    def update_value(
        self,
        score_id: str,
        *,
        value: float,
        target_snapshot: float,
        final_score: float,
        notes: str,
        evaluated_by: str,
        updated_at: datetime,
    ) -> ScoreRecord | None:
        with _store_lock:
            current = _in_memory_store.get(score_id)
            if current is None or current.org_id != self._org_id or current.verified:
                return None
            updated = current.model_copy(
                update={
                    "value": value,
                    "target_snapshot": target_snapshot,
                    "final_score": final_score,
                    "notes": notes,
                    "evaluated_by": evaluated_by,
                    "updated_at": updated_at,
                }
            )
            _in_memory_store[score_id] = updated
        return updated

    def mark_verified(
        self,
        score_id: str,
        *,
        verified_by: str,
        verified_at: datetime,
    ) -> ScoreRecord | None:
        with _store_lock:
            current = _in_memory_store.get(score_id)
            if current is None or current.org_id != self._org_id or current.verified:
                return None
            updated = current.model_copy(
                update={
                    "verified": True,
                    "verified_by": verified_by,
                    "verified_at": verified_at,
                    "updated_at": verified_at,
                }
            )
            _in_memory_store[score_id] = updated
        return updated


def seed_score_in_memory(record: ScoreRecord) -> None:
    """Seed a record into the in-memory store without recomputation. For testing."""
    with _store_lock:
        _in_memory_store[record.score_id] = record


def clear_in_memory_store() -> None:
    """Clear the in-memory store. For testing only."""
    with _store_lock:
        _in_memory_store.clear()


def get_scores_repository(
    conn: Connection | None,
    org_id: str,
) -> ScoresRepository | InMemoryScoresRepository:
    """Return the Postgres repository if configured, otherwise the in-memory fallback."""
    if conn is not None and is_postgres_configured():
        return ScoresRepository(conn, org_id)
    return InMemoryScoresRepository(org_id)
