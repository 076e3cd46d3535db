"""Weight ledger: per-role budget of indicator weights.

Write-time guard: the sum of active indicator weights for a role must never
exceed 100. Read-time query: a role is "fully allocated" when the sum is
exactly 100. The two are separate operations; a role may legitimately sit
below 100 while indicators are being defined.

Sums use Decimal so fractional weights (e.g. 33.3 + 33.3 + 33.4) do not
drift. Callers must hold the source's per-role lock across reserve() and the
write that follows it; see WeightLedger.guard().
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from contextlib import AbstractContextManager
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from kpiscore.models.indicator import MAX_TOTAL_WEIGHT, IndicatorRole
from kpiscore.services.errors import WeightExceededError

logger = logging.getLogger(__name__)

_MAX_TOTAL = Decimal(MAX_TOTAL_WEIGHT)


class WeightSource(Protocol):
    """Read side of an indicator store, as seen by the ledger."""

    def active_weights(self, role: IndicatorRole) -> list[tuple[str, float]]:
        """Return (indicator_id, weight) for every active indicator of a role."""
        ...

    def role_lock(self, role: IndicatorRole) -> AbstractContextManager[None]:
        """Return a context manager serializing writers for one role."""
        ...


@dataclass(frozen=True)
class WeightReservation:
    """Successful reservation: the role total after the pending write."""

    role: IndicatorRole
    new_weight: float
    total_after: float


@dataclass(frozen=True)
class WeightAllocation:
    """Read-time view of a role's weight budget."""

    role: IndicatorRole
    total_weight: float
    indicator_count: int
    remaining_weight: float
    is_fully_allocated: bool

    @property
    def message(self) -> str:
        return f"KPI weights sum to {self.total_weight:g}%, should be 100%"


def _as_decimal(weight: float) -> Decimal:
    return Decimal(str(weight))


def sum_weights(weights: Iterable[float]) -> Decimal:
    """Sum weights exactly."""
    return sum((_as_decimal(w) for w in weights), Decimal(0))


class WeightLedger:
    """Enforces the per-role weight budget over a WeightSource."""

    def __init__(self, source: WeightSource) -> None:
        self._source = source

    def guard(self, role: IndicatorRole) -> AbstractContextManager[None]:
        """Per-role critical section covering reserve() plus the write."""
        return self._source.role_lock(role)

    def active_total(
        self,
        role: IndicatorRole,
        exclude_indicator_id: str | None = None,
    ) -> Decimal:
        """Sum of active weights for a role, optionally excluding one indicator."""
        return sum_weights(
            weight
            for indicator_id, weight in self._source.active_weights(role)
            if indicator_id != exclude_indicator_id
        )

    def reserve(
        self,
        role: IndicatorRole,
        new_weight: float,
        exclude_indicator_id: str | None = None,
    ) -> WeightReservation:
        """Check that adding new_weight keeps the role total <= 100.

        Args:
            role: Indicator role whose budget is checked.
            new_weight: Weight of the indicator being created or edited.
            exclude_indicator_id: Indicator being edited (its old weight is not counted).

        Returns:
            WeightReservation with the would-be total.

        Raises:
            WeightExceededError: If the would-be total exceeds 100. Nothing is written.
        """
        total = self.active_total(role, exclude_indicator_id) + _as_decimal(new_weight)
        if total > _MAX_TOTAL:
            logger.info(
                "Weight reservation rejected: role=%s new_weight=%s would_be_total=%s",
                role.value,
                new_weight,
                total,
            )
            raise WeightExceededError(role.value, float(total))
        return WeightReservation(role=role, new_weight=new_weight, total_after=float(total))

    def allocation(self, role: IndicatorRole) -> WeightAllocation:
        """Return the read-time allocation status of a role."""
        return _build_allocation(role, [w for _, w in self._source.active_weights(role)])


def _build_allocation(role: IndicatorRole, weights: list[float]) -> WeightAllocation:
    total = sum_weights(weights)
    return WeightAllocation(
        role=role,
        total_weight=float(total),
        indicator_count=len(weights),
        remaining_weight=float(max(_MAX_TOTAL - total, Decimal(0))),
        is_fully_allocated=total == _MAX_TOTAL,
    )


def check_allocations(
    weights_by_role: dict[IndicatorRole, list[float]],
) -> dict[IndicatorRole, WeightAllocation]:
    """Offline allocation check over plain weight lists (used by the CLI)."""
    return {role: _build_allocation(role, weights) for role, weights in weights_by_role.items()}
