"""IndicatorService - definition and maintenance of weighted indicators.

Every save that leaves an indicator active runs through the weight ledger
inside the role's critical section, so the active weights of a role never
sum to more than 100. Deactivation (soft delete) only frees budget and skips
the ledger.

Uses Postgres repositories when db_conn exists, in-memory fallback otherwise.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from kpiscore.audit.sink import AuditSink, InMemoryAuditSink, build_audit_event
from kpiscore.models.indicator import (
    IndicatorDefinition,
    IndicatorKind,
    IndicatorRole,
    IndicatorStats,
    RoleIndicatorStats,
)
from kpiscore.models.subject import ActingSubject
from kpiscore.observability.tracing import set_span_attributes
from kpiscore.persistence.repositories.indicators import get_indicators_repository
from kpiscore.scoring.weight_ledger import WeightAllocation, WeightLedger, sum_weights
from kpiscore.services.errors import ForbiddenError, IndicatorNotFoundError

if TYPE_CHECKING:
    from sqlalchemy import Connection

logger = logging.getLogger(__name__)


def _strip_required(value: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError("must not be blank")
    return stripped


class CreateIndicatorInput(BaseModel):
    """Input model for creating an indicator."""

    model_config = ConfigDict(allow_inf_nan=False)

    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)
    weight: float = Field(..., ge=0, le=100)
    kind: IndicatorKind
    unit: str = Field(default="", max_length=50)
    target_value: float = Field(..., gt=0)
    role: IndicatorRole
    category: str = Field(..., min_length=1, max_length=100)
    request_id: str | None = Field(default=None, description="Request correlation ID")

    @field_validator("name", "category")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        return _strip_required(v)


class UpdateIndicatorInput(BaseModel):
    """Partial update; omitted fields keep their stored values."""

    model_config = ConfigDict(allow_inf_nan=False)

    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    weight: float | None = Field(default=None, ge=0, le=100)
    kind: IndicatorKind | None = None
    unit: str | None = Field(default=None, max_length=50)
    target_value: float | None = Field(default=None, gt=0)
    role: IndicatorRole | None = None
    category: str | None = Field(default=None, min_length=1, max_length=100)
    active: bool | None = None
    request_id: str | None = Field(default=None, description="Request correlation ID")

    @field_validator("name", "category")
    @classmethod
    def _not_blank(cls, v: str | None) -> str | None:
        return _strip_required(v) if v is not None else None

    def changes(self) -> dict[str, Any]:
        """Fields explicitly set by the caller, request_id excluded."""
        return self.model_dump(exclude_unset=True, exclude={"request_id"}, exclude_none=True)


def _require_administrator(actor: ActingSubject, action: str) -> None:
    if not actor.is_administrator:
        raise ForbiddenError(f"Only administrators may {action}", reason="administrator_required")


class IndicatorService:
    """Service layer for indicator definitions.

    All operations are organization-scoped. Mutations require an
    administrator and emit one audit event each.
    """

    def __init__(
        self,
        org_id: str,
        db_conn: Connection | None = None,
        audit_sink: AuditSink | None = None,
    ) -> None:
        """Initialize IndicatorService with organization context.

        Args:
            org_id: Organization identifier scoping all operations.
            db_conn: SQLAlchemy connection for Postgres. If None, uses in-memory.
            audit_sink: Optional audit sink for event emission.
        """
        self._org_id = org_id
        self._audit_sink = audit_sink or InMemoryAuditSink()
        self._indicators_repo = get_indicators_repository(db_conn, org_id)
        self._ledger = WeightLedger(self._indicators_repo)

    @property
    def org_id(self) -> str:
        return self._org_id

    def _emit_audit_event(
        self,
        event_type: str,
        indicator: IndicatorDefinition,
        actor: ActingSubject,
        request_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        event = build_audit_event(
            event_type=event_type,
            org_id=self._org_id,
            actor_id=actor.subject_id,
            resource_type="indicator",
            resource_id=indicator.indicator_id,
            summary=f"{event_type} for indicator {indicator.name}",
            details={
                "role": indicator.role.value,
                "weight": indicator.weight,
                "active": indicator.active,
                **(details or {}),
            },
            request_id=request_id,
        )
        try:
            self._audit_sink.emit(event)
        except Exception as e:
            logger.warning("Failed to emit audit event %s: %s", event_type, e)

    def validate_and_save(
        self,
        input_data: CreateIndicatorInput,
        actor: ActingSubject,
    ) -> IndicatorDefinition:
        """Create an indicator if its role's weight budget allows it.

        Args:
            input_data: Validated indicator fields.
            actor: Acting subject (must be an administrator).

        Returns:
            The stored indicator.

        Raises:
            ForbiddenError: If the actor is not an administrator.
            WeightExceededError: If the role total would exceed 100. Nothing is stored.
        """
        _require_administrator(actor, "create indicators")
        set_span_attributes({"kpiscore.org_id": self._org_id, "kpiscore.role": input_data.role})

        now = datetime.now(UTC)
        indicator = IndicatorDefinition(
            indicator_id=str(uuid.uuid4()),
            org_id=self._org_id,
            name=input_data.name,
            description=input_data.description,
            weight=input_data.weight,
            kind=input_data.kind,
            unit=input_data.unit,
            target_value=input_data.target_value,
            role=input_data.role,
            category=input_data.category,
            active=True,
            created_by=actor.subject_id,
            last_modified_by=actor.subject_id,
            created_at=now,
            updated_at=now,
        )

        with self._ledger.guard(indicator.role):
            reservation = self._ledger.reserve(indicator.role, indicator.weight)
            stored = self._indicators_repo.create(indicator)

        logger.info(
            "Indicator created: id=%s role=%s weight=%s role_total=%s",
            stored.indicator_id,
            stored.role.value,
            stored.weight,
            reservation.total_after,
        )
        self._emit_audit_event(
            "indicator.created",
            stored,
            actor,
            request_id=input_data.request_id,
            details={"role_total": reservation.total_after},
        )
        return stored

    def update(
        self,
        indicator_id: str,
        input_data: UpdateIndicatorInput,
        actor: ActingSubject,
    ) -> IndicatorDefinition:
        """Apply a partial update.

        The ledger runs whenever the result is active, excluding the edited
        indicator's stored weight, so weight edits, role moves and
        reactivations are all budget-checked.

        Raises:
            ForbiddenError: If the actor is not an administrator.
            IndicatorNotFoundError: If the indicator does not exist.
            WeightExceededError: If the target role's total would exceed 100.
        """
        _require_administrator(actor, "update indicators")
        current = self.get(indicator_id)
        changes = input_data.changes()

        updated = current.model_copy(
            update={
                **changes,
                "last_modified_by": actor.subject_id,
                "updated_at": datetime.now(UTC),
            }
        )
        # model_copy skips validation; re-validate the merged definition
        updated = IndicatorDefinition.model_validate(updated.model_dump())

        if updated.active:
            with self._ledger.guard(updated.role):
                self._ledger.reserve(
                    updated.role, updated.weight, exclude_indicator_id=indicator_id
                )
                stored = self._indicators_repo.update(updated)
        else:
            stored = self._indicators_repo.update(updated)

        if stored is None:
            raise IndicatorNotFoundError(indicator_id, self._org_id)

        logger.info("Indicator updated: id=%s fields=%s", indicator_id, sorted(changes))
        self._emit_audit_event(
            "indicator.updated",
            stored,
            actor,
            request_id=input_data.request_id,
            details={"changed_fields": sorted(changes)},
        )
        return stored

    def deactivate(
        self,
        indicator_id: str,
        actor: ActingSubject,
        request_id: str | None = None,
    ) -> IndicatorDefinition:
        """Soft-delete an indicator. Its stored score records are kept.

        Raises:
            ForbiddenError: If the actor is not an administrator.
            IndicatorNotFoundError: If the indicator does not exist.
        """
        _require_administrator(actor, "deactivate indicators")
        current = self.get(indicator_id)
        if not current.active:
            return current

        stored = self._indicators_repo.update(
            current.model_copy(
                update={
                    "active": False,
                    "last_modified_by": actor.subject_id,
                    "updated_at": datetime.now(UTC),
                }
            )
        )
        if stored is None:
            raise IndicatorNotFoundError(indicator_id, self._org_id)

        logger.info("Indicator deactivated: id=%s role=%s", indicator_id, stored.role.value)
        self._emit_audit_event("indicator.deactivated", stored, actor, request_id=request_id)
        return stored

    def get(self, indicator_id: str) -> IndicatorDefinition:
        """Get an indicator by id (active or not).

        Raises:
            IndicatorNotFoundError: If the indicator does not exist in this organization.
        """
        indicator = self._indicators_repo.get(indicator_id)
        if indicator is None:
            raise IndicatorNotFoundError(indicator_id, self._org_id)
        return indicator

    def list(
        self,
        *,
        role: IndicatorRole | None = None,
        category: str | None = None,
        kind: IndicatorKind | None = None,
        include_inactive: bool = False,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[IndicatorDefinition], str | None]:
        """List indicators with optional filters and cursor pagination."""
        return self._indicators_repo.list(
            role=role,
            category=category,
            kind=kind,
            active_only=not include_inactive,
            limit=limit,
            cursor=cursor,
        )

    def list_by_role(
        self,
        role: IndicatorRole,
        *,
        category: str | None = None,
        kind: IndicatorKind | None = None,
    ) -> list[IndicatorDefinition]:
        """Active indicators of one role, heaviest first."""
        indicators = self._indicators_repo.list_active_by_role(role)
        if category is not None:
            indicators = [i for i in indicators if i.category == category]
        if kind is not None:
            indicators = [i for i in indicators if i.kind == kind]
        return indicators

    def allocation(self, role: IndicatorRole) -> WeightAllocation:
        """Read-time allocation status (fully allocated means exactly 100)."""
        return self._ledger.allocation(role)

    def categories(self) -> list[str]:
        """Distinct categories of active indicators, sorted."""
        return self._indicators_repo.categories()

    def stats(self) -> IndicatorStats:
        """Per-role counts, weight totals and kind split of active indicators."""
        by_role: dict[IndicatorRole, list[IndicatorDefinition]] = defaultdict(list)
        for indicator in self._indicators_repo.list_active():
            by_role[indicator.role].append(indicator)

        role_stats = [
            RoleIndicatorStats(
                role=role,
                count=len(indicators),
                total_weight=float(sum_weights(i.weight for i in indicators)),
                quantitative=sum(1 for i in indicators if i.kind == IndicatorKind.QUANTITATIVE),
                qualitative=sum(1 for i in indicators if i.kind == IndicatorKind.QUALITATIVE),
            )
            for role, indicators in sorted(by_role.items(), key=lambda item: item[0].value)
        ]
        return IndicatorStats(
            total_indicators=sum(s.count for s in role_stats),
            by_role=role_stats,
        )
