"""Tests for IndicatorService.

Tests:
- Creation runs through the weight ledger and stores nothing on rejection
- Updates and reactivations are budget-checked against the target role
- Deactivation frees budget without touching the ledger
- Only administrators mutate; every mutation emits one audit event
"""

from __future__ import annotations

import pytest

from kpiscore.audit.sink import InMemoryAuditSink
from kpiscore.models.indicator import IndicatorKind, IndicatorRole
from kpiscore.persistence.repositories import seed_indicator_in_memory
from kpiscore.services.errors import (
    ForbiddenError,
    IndicatorNotFoundError,
    WeightExceededError,
)
from kpiscore.services.indicators import (
    CreateIndicatorInput,
    IndicatorService,
    UpdateIndicatorInput,
)
from tests.fixtures.kpi_fixture import (
    ADMIN,
    EMPLOYEE_SALES,
    HEAD_SALES,
    ORG_ID,
    OTHER_ORG_ID,
    make_indicator,
)


@pytest.fixture
def service(audit_sink: InMemoryAuditSink) -> IndicatorService:
    return IndicatorService(ORG_ID, db_conn=None, audit_sink=audit_sink)


def _input(**overrides) -> CreateIndicatorInput:
    data = {
        "name": "Tickets closed",
        "weight": 30,
        "kind": IndicatorKind.QUANTITATIVE,
        "target_value": 90,
        "role": IndicatorRole.HQ_STAFF,
        "category": "Delivery",
    }
    data.update(overrides)
    return CreateIndicatorInput(**data)


class TestValidateAndSave:
    def test_creates_active_indicator(
        self, service: IndicatorService, audit_sink: InMemoryAuditSink
    ) -> None:
        indicator = service.validate_and_save(_input(request_id="req-1"), ADMIN)

        assert indicator.active is True
        assert indicator.org_id == ORG_ID
        assert indicator.created_by == ADMIN.subject_id
        assert service.get(indicator.indicator_id) == indicator

        events = audit_sink.of_type("indicator.created")
        assert len(events) == 1
        assert events[0]["request_id"] == "req-1"
        assert events[0]["details"]["role_total"] == pytest.approx(30.0)

    def test_rejection_stores_nothing(
        self, service: IndicatorService, audit_sink: InMemoryAuditSink
    ) -> None:
        seed_indicator_in_memory(make_indicator("a", weight=80))

        with pytest.raises(WeightExceededError) as exc_info:
            service.validate_and_save(_input(weight=30), ADMIN)

        assert exc_info.value.current_total == pytest.approx(110.0)
        indicators, _ = service.list()
        assert [i.indicator_id for i in indicators] == ["a"]
        assert audit_sink.events == []

    def test_fill_to_exactly_100(self, service: IndicatorService) -> None:
        service.validate_and_save(_input(weight=60), ADMIN)
        service.validate_and_save(_input(name="Second", weight=40), ADMIN)

        assert service.allocation(IndicatorRole.HQ_STAFF).is_fully_allocated is True

    @pytest.mark.parametrize("actor", [HEAD_SALES, EMPLOYEE_SALES])
    def test_non_administrator_forbidden(self, service: IndicatorService, actor) -> None:
        with pytest.raises(ForbiddenError):
            service.validate_and_save(_input(), actor)

    def test_blank_name_rejected_by_input_model(self) -> None:
        with pytest.raises(ValueError):
            _input(name="   ")

    def test_non_positive_target_rejected_by_input_model(self) -> None:
        with pytest.raises(ValueError):
            _input(target_value=0)


class TestUpdate:
    def test_weight_edit_excludes_own_weight(self, service: IndicatorService) -> None:
        seed_indicator_in_memory(make_indicator("a", weight=70))
        seed_indicator_in_memory(make_indicator("b", weight=30))

        updated = service.update("a", UpdateIndicatorInput(weight=60), ADMIN)

        assert updated.weight == 60
        assert updated.last_modified_by == ADMIN.subject_id

    def test_weight_edit_over_budget_rejected(self, service: IndicatorService) -> None:
        seed_indicator_in_memory(make_indicator("a", weight=70))
        seed_indicator_in_memory(make_indicator("b", weight=30))

        with pytest.raises(WeightExceededError):
            service.update("a", UpdateIndicatorInput(weight=71), ADMIN)

        assert service.get("a").weight == 70

    def test_role_move_checks_target_role(self, service: IndicatorService) -> None:
        seed_indicator_in_memory(make_indicator("a", weight=50))
        seed_indicator_in_memory(
            make_indicator("f", weight=60, role=IndicatorRole.FIELD_UNIT)
        )

        with pytest.raises(WeightExceededError) as exc_info:
            service.update("a", UpdateIndicatorInput(role=IndicatorRole.FIELD_UNIT), ADMIN)

        assert exc_info.value.role == "FIELD_UNIT"

    def test_reactivation_is_budget_checked(self, service: IndicatorService) -> None:
        seed_indicator_in_memory(make_indicator("old", weight=50, active=False))
        seed_indicator_in_memory(make_indicator("b", weight=60))

        with pytest.raises(WeightExceededError):
            service.update("old", UpdateIndicatorInput(active=True), ADMIN)

    def test_update_emits_changed_fields(
        self, service: IndicatorService, audit_sink: InMemoryAuditSink
    ) -> None:
        seed_indicator_in_memory(make_indicator("a"))

        service.update("a", UpdateIndicatorInput(name="Renamed", unit="tickets"), ADMIN)

        event = audit_sink.of_type("indicator.updated")[0]
        assert event["details"]["changed_fields"] == ["name", "unit"]

    def test_unknown_indicator(self, service: IndicatorService) -> None:
        with pytest.raises(IndicatorNotFoundError):
            service.update("missing", UpdateIndicatorInput(weight=1), ADMIN)

    def test_other_organization_indicator_is_invisible(self, service: IndicatorService) -> None:
        seed_indicator_in_memory(make_indicator("x", org_id=OTHER_ORG_ID))

        with pytest.raises(IndicatorNotFoundError):
            service.get("x")


class TestDeactivate:
    def test_deactivation_frees_budget(self, service: IndicatorService) -> None:
        seed_indicator_in_memory(make_indicator("a", weight=80))

        service.deactivate("a", ADMIN)

        assert service.get("a").active is False
        assert service.allocation(IndicatorRole.HQ_STAFF).total_weight == 0.0
        service.validate_and_save(_input(weight=100), ADMIN)

    def test_deactivating_twice_is_a_noop(
        self, service: IndicatorService, audit_sink: InMemoryAuditSink
    ) -> None:
        seed_indicator_in_memory(make_indicator("a"))

        service.deactivate("a", ADMIN)
        service.deactivate("a", ADMIN)

        assert len(audit_sink.of_type("indicator.deactivated")) == 1

    def test_non_administrator_forbidden(self, service: IndicatorService) -> None:
        seed_indicator_in_memory(make_indicator("a"))

        with pytest.raises(ForbiddenError):
            service.deactivate("a", HEAD_SALES)


class TestQueries:
    def test_list_paginates_by_id(self, service: IndicatorService) -> None:
        for n in range(5):
            seed_indicator_in_memory(make_indicator(f"ind-{n}", weight=10))

        first, cursor = service.list(limit=2)
        second, _ = service.list(limit=2, cursor=cursor)

        assert [i.indicator_id for i in first] == ["ind-0", "ind-1"]
        assert [i.indicator_id for i in second] == ["ind-2", "ind-3"]

    def test_list_hides_inactive_by_default(self, service: IndicatorService) -> None:
        seed_indicator_in_memory(make_indicator("a"))
        seed_indicator_in_memory(make_indicator("b", active=False))

        active, _ = service.list()
        everything, _ = service.list(include_inactive=True)

        assert [i.indicator_id for i in active] == ["a"]
        assert len(everything) == 2

    def test_list_by_role_is_heaviest_first(self, service: IndicatorService) -> None:
        seed_indicator_in_memory(make_indicator("light", weight=10))
        seed_indicator_in_memory(make_indicator("heavy", weight=50))
        seed_indicator_in_memory(make_indicator("field", weight=90, role=IndicatorRole.FIELD_UNIT))

        indicators = service.list_by_role(IndicatorRole.HQ_STAFF)

        assert [i.indicator_id for i in indicators] == ["heavy", "light"]

    def test_categories_and_stats(self, service: IndicatorService) -> None:
        seed_indicator_in_memory(make_indicator("a", weight=40, category="Quality"))
        seed_indicator_in_memory(
            make_indicator("b", weight=20, category="Delivery", kind=IndicatorKind.QUALITATIVE)
        )
        seed_indicator_in_memory(make_indicator("c", weight=70, role=IndicatorRole.FIELD_UNIT))
        seed_indicator_in_memory(make_indicator("d", category="Retired", active=False))

        assert service.categories() == ["Delivery", "Quality"]

        stats = service.stats()
        assert stats.total_indicators == 3
        hq = next(s for s in stats.by_role if s.role == IndicatorRole.HQ_STAFF)
        assert hq.count == 2
        assert hq.total_weight == pytest.approx(60.0)
        assert hq.quantitative == 1
        assert hq.qualitative == 1
