"""Weight ledger tests.

The write-time guard keeps each role's active weights at or below 100; the
read-time allocation reports whether they sum to exactly 100. Concurrent
reservations for one role are serialized by the role lock.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from kpiscore.models.indicator import IndicatorKind, IndicatorRole
from kpiscore.persistence.repositories import (
    InMemoryIndicatorsRepository,
    seed_indicator_in_memory,
)
from kpiscore.scoring.weight_ledger import WeightLedger, check_allocations, sum_weights
from kpiscore.services.errors import WeightExceededError
from kpiscore.services.indicators import CreateIndicatorInput, IndicatorService
from tests.fixtures.kpi_fixture import ADMIN, ORG_ID, OTHER_ORG_ID, make_indicator


@pytest.fixture
def ledger() -> WeightLedger:
    return WeightLedger(InMemoryIndicatorsRepository(ORG_ID))


class TestReserve:
    def test_reserve_within_budget_returns_total(self, ledger: WeightLedger) -> None:
        seed_indicator_in_memory(make_indicator("a", weight=60))

        reservation = ledger.reserve(IndicatorRole.HQ_STAFF, 40)

        assert reservation.total_after == pytest.approx(100.0)

    def test_reserve_over_budget_raises_with_would_be_total(self, ledger: WeightLedger) -> None:
        seed_indicator_in_memory(make_indicator("a", weight=60))
        seed_indicator_in_memory(make_indicator("b", weight=30))

        with pytest.raises(WeightExceededError) as exc_info:
            ledger.reserve(IndicatorRole.HQ_STAFF, 20)

        assert exc_info.value.role == "HQ_STAFF"
        assert exc_info.value.current_total == pytest.approx(110.0)
        assert "cannot exceed 100%" in str(exc_info.value)

    def test_inactive_indicators_do_not_count(self, ledger: WeightLedger) -> None:
        seed_indicator_in_memory(make_indicator("a", weight=90, active=False))

        assert ledger.reserve(IndicatorRole.HQ_STAFF, 100).total_after == pytest.approx(100.0)

    def test_other_roles_do_not_count(self, ledger: WeightLedger) -> None:
        seed_indicator_in_memory(make_indicator("a", weight=90, role=IndicatorRole.FIELD_UNIT))

        assert ledger.reserve(IndicatorRole.HQ_STAFF, 50).total_after == pytest.approx(50.0)

    def test_other_organizations_do_not_count(self, ledger: WeightLedger) -> None:
        seed_indicator_in_memory(make_indicator("a", weight=90, org_id=OTHER_ORG_ID))

        assert ledger.reserve(IndicatorRole.HQ_STAFF, 50).total_after == pytest.approx(50.0)

    def test_edit_excludes_the_indicator_being_edited(self, ledger: WeightLedger) -> None:
        seed_indicator_in_memory(make_indicator("a", weight=70))
        seed_indicator_in_memory(make_indicator("b", weight=30))

        reservation = ledger.reserve(IndicatorRole.HQ_STAFF, 50, exclude_indicator_id="a")

        assert reservation.total_after == pytest.approx(80.0)

    def test_fractional_weights_sum_exactly(self, ledger: WeightLedger) -> None:
        seed_indicator_in_memory(make_indicator("a", weight=33.3))
        seed_indicator_in_memory(make_indicator("b", weight=33.3))

        reservation = ledger.reserve(IndicatorRole.HQ_STAFF, 33.4)

        assert reservation.total_after == 100.0


class TestAllocation:
    def test_exactly_100_is_fully_allocated(self, ledger: WeightLedger) -> None:
        seed_indicator_in_memory(make_indicator("a", weight=60))
        seed_indicator_in_memory(make_indicator("b", weight=40))

        allocation = ledger.allocation(IndicatorRole.HQ_STAFF)

        assert allocation.is_fully_allocated is True
        assert allocation.remaining_weight == 0.0
        assert allocation.indicator_count == 2

    def test_below_100_is_valid_but_not_fully_allocated(self, ledger: WeightLedger) -> None:
        seed_indicator_in_memory(make_indicator("a", weight=60))

        allocation = ledger.allocation(IndicatorRole.HQ_STAFF)

        assert allocation.is_fully_allocated is False
        assert allocation.remaining_weight == pytest.approx(40.0)
        assert allocation.message == "KPI weights sum to 60%, should be 100%"

    def test_empty_role(self, ledger: WeightLedger) -> None:
        allocation = ledger.allocation(IndicatorRole.DIVISION_HEAD)

        assert allocation.total_weight == 0.0
        assert allocation.indicator_count == 0
        assert allocation.is_fully_allocated is False


def test_check_allocations_reports_each_role() -> None:
    allocations = check_allocations(
        {IndicatorRole.HQ_STAFF: [50, 50], IndicatorRole.FIELD_UNIT: [70, 40]}
    )

    assert allocations[IndicatorRole.HQ_STAFF].is_fully_allocated is True
    assert allocations[IndicatorRole.FIELD_UNIT].total_weight == pytest.approx(110.0)
    assert allocations[IndicatorRole.FIELD_UNIT].remaining_weight == 0.0


def test_sum_weights_is_exact() -> None:
    assert float(sum_weights([0.1, 0.2])) == 0.3


def test_concurrent_reservations_never_exceed_budget() -> None:
    """Eight writers race to add 30-weight indicators; only three can fit."""
    service = IndicatorService(ORG_ID)
    start = threading.Barrier(8)

    def create(n: int) -> bool:
        start.wait()
        try:
            service.validate_and_save(
                CreateIndicatorInput(
                    name=f"Race {n}",
                    weight=30,
                    kind=IndicatorKind.QUANTITATIVE,
                    target_value=10,
                    role=IndicatorRole.HQ_STAFF,
                    category="Race",
                ),
                ADMIN,
            )
        except WeightExceededError:
            return False
        return True

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(create, range(8)))

    assert results.count(True) == 3
    allocation = service.allocation(IndicatorRole.HQ_STAFF)
    assert allocation.total_weight == pytest.approx(90.0)
    assert allocation.indicator_count == 3
