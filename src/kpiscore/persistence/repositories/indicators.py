"""Indicators repository.

Besides CRUD, each implementation provides the per-role critical section the
weight ledger needs:

- Postgres: ``pg_advisory_xact_lock`` keyed by (org_id, role). It is released
  when the request transaction commits or rolls back, so the ledger's read,
  check and the following write are serialized across processes.
- In memory: one ``threading.Lock`` per (org_id, role).
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import text

from kpiscore.models.indicator import IndicatorDefinition, IndicatorKind, IndicatorRole
from kpiscore.persistence.db import execute, is_postgres_configured

if TYPE_CHECKING:
    from sqlalchemy import Connection

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200

_INDICATOR_COLUMNS = """
    indicator_id, org_id, name, description, weight, kind, unit, target_value,
    role, category, active, created_by, last_modified_by, created_at, updated_at
"""


def _role_lock_key(org_id: str, role: IndicatorRole) -> str:
    return f"{org_id}:indicator-weights:{role.value}"


class IndicatorsRepository:
    """Postgres repository for indicator definitions, scoped to one organization."""

    def __init__(self, conn: Connection, org_id: str) -> None:
        """Initialize repository with connection and organization scope.

        Args:
            conn: SQLAlchemy connection (must be in a transaction).
            org_id: Organization identifier all queries are scoped to.
        """
        self._conn = conn
        self._org_id = org_id

    @contextmanager
    def role_lock(self, role: IndicatorRole) -> Generator[None, None, None]:
        """Take the transaction-scoped advisory lock for a role.

        The lock outlives the ``with`` block and is released at transaction end.
        """
        execute(
            self._conn,
            text("SELECT pg_advisory_xact_lock(hashtext(:lock_key))"),
            {"lock_key": _role_lock_key(self._org_id, role)},
            operation="indicators.role_lock",
        )
        yield

    def create(self, indicator: IndicatorDefinition) -> IndicatorDefinition:
        execute(
            self._conn,
            text(
                """
                INSERT INTO indicators (
                    indicator_id, org_id, name, description, weight, kind, unit,
                    target_value, role, category, active, created_by,
                    last_modified_by, created_at, updated_at
                ) VALUES (
                    :indicator_id, :org_id, :name, :description, :weight, :kind, :unit,
                    :target_value, :role, :category, :active, :created_by,
                    :last_modified_by, :created_at, :updated_at
                )
                """
            ),
            _indicator_params(indicator, self._org_id),
            operation="indicators.create",
        )
        return indicator

    def update(self, indicator: IndicatorDefinition) -> IndicatorDefinition | None:
        """Replace all mutable fields. Returns None if the indicator does not exist."""
        result = execute(
            self._conn,
            text(
                """
                UPDATE indicators SET
                    name = :name,
                    description = :description,
                    weight = :weight,
                    kind = :kind,
                    unit = :unit,
                    target_value = :target_value,
                    role = :role,
                    category = :category,
                    active = :active,
                    last_modified_by = :last_modified_by,
                    updated_at = :updated_at
                WHERE org_id = :org_id AND indicator_id = :indicator_id
                """
            ),
            _indicator_params(indicator, self._org_id),
            operation="indicators.update",
        )
        return indicator if result.rowcount > 0 else None

    def get(self, indicator_id: str) -> IndicatorDefinition | None:
        row = execute(
            self._conn,
            text(
                f"""
                SELECT {_INDICATOR_COLUMNS}
                FROM indicators
                WHERE org_id = :org_id AND indicator_id = :indicator_id
                """
            ),
            {"org_id": self._org_id, "indicator_id": indicator_id},
            operation="indicators.get",
        ).fetchone()
        return _row_to_indicator(row) if row is not None else None

    def get_many(self, indicator_ids: Iterable[str]) -> dict[str, IndicatorDefinition]:
        """Look up indicators by id, inactive ones included."""
        ids = sorted(set(indicator_ids))
        if not ids:
            return {}
        rows = execute(
            self._conn,
            text(
                f"""
                SELECT {_INDICATOR_COLUMNS}
                FROM indicators
                WHERE org_id = :org_id AND indicator_id = ANY(:indicator_ids)
                """
            ),
            {"org_id": self._org_id, "indicator_ids": ids},
            operation="indicators.get_many",
        ).fetchall()
        return {str(row.indicator_id): _row_to_indicator(row) for row in rows}

    def list(
        self,
        *,
        role: IndicatorRole | None = None,
        category: str | None = None,
        kind: IndicatorKind | None = None,
        active_only: bool = True,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[IndicatorDefinition], str | None]:
        """List indicators ordered by id with cursor pagination."""
        effective_limit = min(max(1, limit), MAX_PAGE_SIZE)
        clauses = ["org_id = :org_id"]
        params: dict[str, Any] = {"org_id": self._org_id, "limit": effective_limit + 1}
        if role is not None:
            clauses.append("role = :role")
            params["role"] = role.value
        if category is not None:
            clauses.append("category = :category")
            params["category"] = category
        if kind is not None:
            clauses.append("kind = :kind")
            params["kind"] = kind.value
        if active_only:
            clauses.append("active = TRUE")
        if cursor:
            clauses.append("indicator_id > :cursor")
            params["cursor"] = cursor
        where = " AND ".join(clauses)

        rows = execute(
            self._conn,
            text(
                f"""
                SELECT {_INDICATOR_COLUMNS}
                FROM indicators
                WHERE {where}
                ORDER BY indicator_id
                LIMIT :limit
                """
            ),
            params,
            operation="indicators.list",
        ).fetchall()

        items = [_row_to_indicator(row) for row in rows[:effective_limit]]
        next_cursor = items[-1].indicator_id if len(rows) > effective_limit else None
        return items, next_cursor

    def list_active_by_role(self, role: IndicatorRole) -> list[IndicatorDefinition]:
        """All active indicators of a role, heaviest first."""
        rows = execute(
            self._conn,
            text(
                f"""
                SELECT {_INDICATOR_COLUMNS}
                FROM indicators
                WHERE org_id = :org_id AND role = :role AND active = TRUE
                ORDER BY weight DESC, name
                """
            ),
            {"org_id": self._org_id, "role": role.value},
            operation="indicators.list_active_by_role",
        ).fetchall()
        return [_row_to_indicator(row) for row in rows]

    def list_active(self) -> list[IndicatorDefinition]:
        rows = execute(
            self._conn,
            text(
                f"""
                SELECT {_INDICATOR_COLUMNS}
                FROM indicators
                WHERE org_id = :org_id AND active = TRUE
                ORDER BY role, weight DESC, name
                """
            ),
            {"org_id": self._org_id},
            operation="indicators.list_active",
        ).fetchall()
        return [_row_to_indicator(row) for row in rows]

    def active_weights(self, role: IndicatorRole) -> list[tuple[str, float]]:
        rows = execute(
            self._conn,
            text(
                """
                SELECT indicator_id, weight
                FROM indicators
                WHERE org_id = :org_id AND role = :role AND active = TRUE
                """
            ),
            {"org_id": self._org_id, "role": role.value},
            operation="indicators.active_weights",
        ).fetchall()
        return [(str(row.indicator_id), float(row.weight)) for row in rows]

    def categories(self) -> list[str]:
        rows = execute(
            self._conn,
            text(
                """
                SELECT DISTINCT category
                FROM indicators
                WHERE org_id = :org_id AND active = TRUE
                ORDER BY category
                """
            ),
            {"org_id": self._org_id},
            operation="indicators.categories",
        ).fetchall()
        return [row.category for row in rows]


def _indicator_params(indicator: IndicatorDefinition, org_id: str) -> dict[str, Any]:
    return {
        "indicator_id": indicator.indicator_id,
        "org_id": org_id,
        "name": indicator.name,
        "description": indicator.description,
        "weight": indicator.weight,
        "kind": indicator.kind.value,
        "unit": indicator.unit,
        "target_value": indicator.target_value,
        "role": indicator.role.value,
        "category": indicator.category,
        "active": indicator.active,
        "created_by": indicator.created_by,
        "last_modified_by": indicator.last_modified_by,
        "created_at": indicator.created_at,
        "updated_at": indicator.updated_at,
    }


def _row_to_indicator(row: Any) -> IndicatorDefinition:
    return IndicatorDefinition(
        indicator_id=str(row.indicator_id),
        org_id=str(row.org_id),
        name=row.name,
        description=row.description or "",
        weight=float(row.weight),
        kind=IndicatorKind(row.kind),
        unit=row.unit or "",
        target_value=float(row.target_value),
        role=IndicatorRole(row.role),
        category=row.category,
        active=bool(row.active),
        created_by=row.created_by,
        last_modified_by=row.last_modified_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


_in_memory_store: dict[str, IndicatorDefinition] = {}
_store_lock = threading.Lock()
_role_locks: dict[str, threading.Lock] = {}
_role_locks_guard = threading.Lock()


def _in_memory_role_lock(org_id: str, role: IndicatorRole) -> threading.Lock:
    key = _role_lock_key(org_id, role)
    with _role_locks_guard:
        lock = _role_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _role_locks[key] = lock
        return lock


class InMemoryIndicatorsRepository:
    """In-memory fallback repository for when Postgres is not configured.

    Used for development/testing without database dependency.
    """

    def __init__(self, org_id: str) -> None:
        self._org_id = org_id

    @contextmanager
    def role_lock(self, role: IndicatorRole) -> Generator[None, None, None]:
        with _in_memory_role_lock(self._org_id, role):
            yield

    def _org_indicators(self) -> list[IndicatorDefinition]:
        with _store_lock:
            return [i for i in _in_memory_store.values() if i.org_id == self._org_id]

    def create(self, indicator: IndicatorDefinition) -> IndicatorDefinition:
        stored = indicator.model_copy(update={"org_id": self._org_id})
        with _store_lock:
            _in_memory_store[stored.indicator_id] = stored
        return stored

    def update(self, indicator: IndicatorDefinition) -> IndicatorDefinition | None:
        with _store_lock:
            existing = _in_memory_store.get(indicator.indicator_id)
            if existing is None or existing.org_id != self._org_id:
                return None
            _in_memory_store[indicator.indicator_id] = indicator
        return indicator

    def get(self, indicator_id: str) -> IndicatorDefinition | None:
        indicator = _in_memory_store.get(indicator_id)
        if indicator is None or indicator.org_id != self._org_id:
            return None
        return indicator

    def get_many(self, indicator_ids: Iterable[str]) -> dict[str, IndicatorDefinition]:
        wanted = set(indicator_ids)
        return {i.indicator_id: i for i in self._org_indicators() if i.indicator_id in wanted}

    def list(
        self,
        *,
        role: IndicatorRole | None = None,
        category: str | None = None,
        kind: IndicatorKind | None = None,
        active_only: bool = True,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[IndicatorDefinition], str | None]:
        items = self._org_indicators()
        if role is not None:
            items = [i for i in items if i.role == role]
        if category is not None:
            items = [i for i in items if i.category == category]
        if kind is not None:
            items = [i for i in items if i.kind == kind]
        if active_only:
            items = [i for i in items if i.active]
        items.sort(key=lambda i: i.indicator_id)
        if cursor:
            items = [i for i in items if i.indicator_id > cursor]

        effective_limit = min(max(1, limit), MAX_PAGE_SIZE)
        page = items[:effective_limit]
        next_cursor = page[-1].indicator_id if len(items) > effective_limit else None
        return page, next_cursor

    def list_active_by_role(self, role: IndicatorRole) -> list[IndicatorDefinition]:
        items = [i for i in self._org_indicators() if i.active and i.role == role]
        return sorted(items, key=lambda i: (-i.weight, i.name))

    def list_active(self) -> list[IndicatorDefinition]:
        items = [i for i in self._org_indicators() if i.active]
        return sorted(items, key=lambda i: (i.role.value, -i.weight, i.name))

    def active_weights(self, role: IndicatorRole) -> list[tuple[str, float]]:
        return [
            (i.indicator_id, i.weight)
            for i in self._org_indicators()
            if i.active and i.role == role
        ]

    def categories(self) -> list[str]:
        return sorted({i.category for i in self._org_indicators() if i.active})


def seed_indicator_in_memory(indicator: IndicatorDefinition) -> None:
    """Seed an indicator into the in-memory store, bypassing the weight ledger. For testing."""
    with _store_lock:
        _in_memory_store[indicator.indicator_id] = indicator


def clear_in_memory_store() -> None:
    """Clear the in-memory store. For testing only."""
    with _store_lock:
        _in_memory_store.clear()


def get_indicators_repository(
    conn: Connection | None,
    org_id: str,
) -> IndicatorsRepository | InMemoryIndicatorsRepository:
    """Return the Postgres repository if configured, otherwise the in-memory fallback."""
    if conn is not None and is_postgres_configured():
        return IndicatorsRepository(conn, org_id)
    return InMemoryIndicatorsRepository(org_id)
