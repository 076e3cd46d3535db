"""Tests for ScoreService.

Tests:
- Submission computes the capped final score and snapshots the target
- Role mismatch, inactive indicator and bad periods are rejected
- One record per (subject, indicator, period)
- Verification is restricted, one-shot and freezes the record
- Notifications follow successful writes only
- Racing duplicate submissions and verifications leave exactly one winner
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from kpiscore.audit.sink import InMemoryAuditSink
from kpiscore.models.analytics import AnalyticsFilters
from kpiscore.models.indicator import IndicatorDefinition, IndicatorRole
from kpiscore.models.period import Month
from kpiscore.models.subject import Subject, SubjectRole
from kpiscore.persistence.repositories import seed_indicator_in_memory
from kpiscore.services.errors import (
    AlreadyVerifiedError,
    DuplicatePeriodError,
    ForbiddenError,
    IndicatorNotFoundError,
    InvalidPeriodError,
    RoleMismatchError,
    ScoreNotFoundError,
    ScoreValidationError,
    SubjectNotFoundError,
)
from kpiscore.services.notifications.dispatcher import InMemoryNotificationDispatcher
from kpiscore.services.scores import (
    ScoreService,
    SubmitScoreInput,
    UpdateScoreInput,
    resolve_period,
)
from tests.fixtures.kpi_fixture import (
    ADMIN,
    EMPLOYEE_OPS,
    EMPLOYEE_SALES,
    FIELD_WORKER,
    HEAD_SALES,
    ORG_ID,
    make_actor,
    make_indicator,
)


@pytest.fixture
def service(
    audit_sink: InMemoryAuditSink,
    dispatcher: InMemoryNotificationDispatcher,
    seeded_subjects: list[Subject],
) -> ScoreService:
    return ScoreService(
        ORG_ID, db_conn=None, audit_sink=audit_sink, notification_dispatcher=dispatcher
    )


def _submit(service: ScoreService, actor, value: float = 99, **overrides):
    data = {"indicator_id": "ind-hq", "value": value, "period": "Jan 2025"}
    data.update(overrides)
    return service.submit_score(SubmitScoreInput(**data), actor)


class TestResolvePeriod:
    def test_label(self) -> None:
        period = resolve_period("mar 2025", None, None)
        assert (period.month, period.year) == (Month.MAR, 2025)

    def test_month_and_year(self) -> None:
        assert resolve_period(None, "feb", 2024).label == "Feb 2024"

    @pytest.mark.parametrize(
        ("label", "month", "year"),
        [
            (None, None, None),
            (None, "Jan", None),
            ("Jan 2019", None, None),
            ("Foo 2025", None, None),
            ("Jan", None, None),
            ("Jan 2025", None, 2024),
            ("Jan 2025", "Feb", None),
        ],
    )
    def test_rejected(self, label, month, year) -> None:
        with pytest.raises(InvalidPeriodError):
            resolve_period(label, month, year)


class TestSubmit:
    def test_value_above_target_is_capped(
        self, service: ScoreService, hq_indicator: IndicatorDefinition
    ) -> None:
        record = _submit(service, EMPLOYEE_SALES, value=99)

        assert record.final_score == pytest.approx(20.0)
        assert record.target_snapshot == 90
        assert record.period == "Jan 2025"
        assert record.subject_id == EMPLOYEE_SALES.subject_id
        assert record.evaluated_by == EMPLOYEE_SALES.subject_id
        assert record.verified is False

    def test_partial_attainment(
        self, service: ScoreService, hq_indicator: IndicatorDefinition
    ) -> None:
        record = _submit(service, EMPLOYEE_SALES, value=45)
        assert record.final_score == pytest.approx(10.0)

    def test_duplicate_period_rejected(
        self, service: ScoreService, hq_indicator: IndicatorDefinition
    ) -> None:
        _submit(service, EMPLOYEE_SALES)

        with pytest.raises(DuplicatePeriodError) as exc_info:
            _submit(service, EMPLOYEE_SALES, value=10, period=None, month="Jan", year=2025)

        assert exc_info.value.period == "Jan 2025"

    def test_same_indicator_next_period_allowed(
        self, service: ScoreService, hq_indicator: IndicatorDefinition
    ) -> None:
        _submit(service, EMPLOYEE_SALES)
        record = _submit(service, EMPLOYEE_SALES, period="Feb 2025")
        assert record.month == Month.FEB

    def test_negative_value_stores_nothing(
        self, service: ScoreService, hq_indicator: IndicatorDefinition
    ) -> None:
        with pytest.raises(ScoreValidationError):
            _submit(service, EMPLOYEE_SALES, value=-1)

        assert service.list_subject_scores(EMPLOYEE_SALES.subject_id, EMPLOYEE_SALES) == []

    def test_role_mismatch(self, service: ScoreService) -> None:
        seed_indicator_in_memory(make_indicator("ind-field", role=IndicatorRole.FIELD_UNIT))

        with pytest.raises(RoleMismatchError) as exc_info:
            _submit(service, EMPLOYEE_SALES, indicator_id="ind-field")

        assert exc_info.value.indicator_role == "FIELD_UNIT"
        assert exc_info.value.subject_role == "HQ_STAFF"

    def test_field_unit_department_scores_field_indicators(self, service: ScoreService) -> None:
        seed_indicator_in_memory(
            make_indicator("ind-field", weight=50, target_value=10, role=IndicatorRole.FIELD_UNIT)
        )

        record = _submit(service, FIELD_WORKER, value=5, indicator_id="ind-field")

        assert record.final_score == pytest.approx(25.0)

    def test_inactive_indicator_rejected(self, service: ScoreService) -> None:
        seed_indicator_in_memory(make_indicator("ind-old", active=False))

        with pytest.raises(IndicatorNotFoundError):
            _submit(service, EMPLOYEE_SALES, indicator_id="ind-old")

    def test_division_head_may_submit_for_team_member(
        self, service: ScoreService, hq_indicator: IndicatorDefinition
    ) -> None:
        record = _submit(service, HEAD_SALES, subject_id=EMPLOYEE_SALES.subject_id)

        assert record.subject_id == EMPLOYEE_SALES.subject_id
        assert record.evaluated_by == HEAD_SALES.subject_id

    def test_employee_may_not_submit_for_colleague(
        self, service: ScoreService, hq_indicator: IndicatorDefinition
    ) -> None:
        with pytest.raises(ForbiddenError):
            _submit(service, EMPLOYEE_OPS, subject_id=EMPLOYEE_SALES.subject_id)

    def test_division_head_may_not_submit_for_other_department(
        self, service: ScoreService, hq_indicator: IndicatorDefinition
    ) -> None:
        with pytest.raises(ForbiddenError):
            _submit(service, HEAD_SALES, subject_id=EMPLOYEE_OPS.subject_id)

    def test_unknown_subject(self, service: ScoreService, hq_indicator: IndicatorDefinition) -> None:
        with pytest.raises(SubjectNotFoundError):
            _submit(service, ADMIN, subject_id="nobody")

    def test_submission_notifies_division_head(
        self,
        service: ScoreService,
        hq_indicator: IndicatorDefinition,
        dispatcher: InMemoryNotificationDispatcher,
        audit_sink: InMemoryAuditSink,
    ) -> None:
        record = _submit(service, EMPLOYEE_SALES)

        (event,) = dispatcher.events
        assert event.kind == "score_submitted"
        assert event.recipient_ids == [HEAD_SALES.subject_id]
        assert event.score_id == record.score_id
        assert event.indicator_name == "Tickets closed"
        assert len(audit_sink.of_type("score.submitted")) == 1

    def test_no_notification_without_division_head(
        self,
        service: ScoreService,
        hq_indicator: IndicatorDefinition,
        dispatcher: InMemoryNotificationDispatcher,
    ) -> None:
        _submit(service, EMPLOYEE_OPS)
        assert dispatcher.events == []

    def test_division_head_is_not_notified_of_own_submission(
        self,
        service: ScoreService,
        hq_indicator: IndicatorDefinition,
        dispatcher: InMemoryNotificationDispatcher,
    ) -> None:
        _submit(service, HEAD_SALES, subject_id=EMPLOYEE_SALES.subject_id)
        assert dispatcher.events == []

    def test_failing_dispatcher_does_not_fail_submission(
        self, audit_sink: InMemoryAuditSink, seeded_subjects, hq_indicator
    ) -> None:
        class Broken:
            def dispatch(self, event) -> None:
                raise RuntimeError("push gateway down")

        service = ScoreService(ORG_ID, audit_sink=audit_sink, notification_dispatcher=Broken())

        record = _submit(service, EMPLOYEE_SALES)

        assert service.get_score(record.score_id, EMPLOYEE_SALES) == record


class TestVerify:
    def test_division_head_verifies_team_score(
        self,
        service: ScoreService,
        hq_indicator: IndicatorDefinition,
        dispatcher: InMemoryNotificationDispatcher,
    ) -> None:
        record = _submit(service, EMPLOYEE_SALES)
        dispatcher.clear()

        verified = service.verify_score(record.score_id, HEAD_SALES)

        assert verified.verified is True
        assert verified.verified_by == HEAD_SALES.subject_id
        assert verified.verified_at is not None
        assert verified.final_score == record.final_score
        (event,) = dispatcher.events
        assert event.kind == "score_verified"
        assert event.recipient_ids == [EMPLOYEE_SALES.subject_id]

    def test_second_verification_rejected_and_first_kept(
        self, service: ScoreService, hq_indicator: IndicatorDefinition
    ) -> None:
        record = _submit(service, EMPLOYEE_SALES)
        first = service.verify_score(record.score_id, HEAD_SALES)

        with pytest.raises(AlreadyVerifiedError):
            service.verify_score(record.score_id, ADMIN)

        stored = service.get_score(record.score_id, ADMIN)
        assert stored.verified_by == HEAD_SALES.subject_id
        assert stored.verified_at == first.verified_at

    def test_employee_cannot_verify(
        self, service: ScoreService, hq_indicator: IndicatorDefinition
    ) -> None:
        record = _submit(service, EMPLOYEE_SALES)

        with pytest.raises(ForbiddenError) as exc_info:
            service.verify_score(record.score_id, EMPLOYEE_SALES)

        assert exc_info.value.reason == "verifier_role_required"

    def test_division_head_of_other_department_cannot_verify(
        self, service: ScoreService, hq_indicator: IndicatorDefinition
    ) -> None:
        record = _submit(service, EMPLOYEE_OPS)

        with pytest.raises(ForbiddenError) as exc_info:
            service.verify_score(record.score_id, HEAD_SALES)

        assert exc_info.value.reason == "verify_other_department"

    def test_administrator_verifies_any_department(
        self, service: ScoreService, hq_indicator: IndicatorDefinition
    ) -> None:
        record = _submit(service, EMPLOYEE_OPS)
        assert service.verify_score(record.score_id, ADMIN).verified is True

    def test_unknown_score(self, service: ScoreService) -> None:
        with pytest.raises(ScoreNotFoundError):
            service.verify_score("missing", ADMIN)


class TestUpdateValue:
    def test_correction_recomputes(
        self, service: ScoreService, hq_indicator: IndicatorDefinition, audit_sink
    ) -> None:
        record = _submit(service, EMPLOYEE_SALES, value=99)

        updated = service.update_value(
            record.score_id, UpdateScoreInput(value=45, notes="recount"), EMPLOYEE_SALES
        )

        assert updated.value == 45
        assert updated.final_score == pytest.approx(10.0)
        assert updated.notes == "recount"
        event = audit_sink.of_type("score.updated")[0]
        assert event["details"]["previous_final_score"] == pytest.approx(20.0)

    def test_verified_record_is_frozen(
        self, service: ScoreService, hq_indicator: IndicatorDefinition
    ) -> None:
        record = _submit(service, EMPLOYEE_SALES)
        service.verify_score(record.score_id, HEAD_SALES)

        with pytest.raises(AlreadyVerifiedError):
            service.update_value(record.score_id, UpdateScoreInput(value=1), ADMIN)

        assert service.get_score(record.score_id, ADMIN).final_score == pytest.approx(20.0)

    def test_colleague_cannot_edit(
        self, service: ScoreService, hq_indicator: IndicatorDefinition
    ) -> None:
        record = _submit(service, EMPLOYEE_SALES)

        with pytest.raises(ForbiddenError):
            service.update_value(record.score_id, UpdateScoreInput(value=1), EMPLOYEE_OPS)


class TestReads:
    def test_get_score_hidden_from_other_employees(
        self, service: ScoreService, hq_indicator: IndicatorDefinition
    ) -> None:
        record = _submit(service, EMPLOYEE_SALES)

        assert service.get_score(record.score_id, HEAD_SALES) == record
        with pytest.raises(ScoreNotFoundError):
            service.get_score(record.score_id, EMPLOYEE_OPS)

    def test_list_subject_scores_newest_first_with_filters(
        self, service: ScoreService, hq_indicator: IndicatorDefinition
    ) -> None:
        _submit(service, EMPLOYEE_SALES, period="Jan 2025")
        _submit(service, EMPLOYEE_SALES, period="Mar 2025")
        _submit(service, EMPLOYEE_SALES, period="Dec 2024")

        entries = service.list_subject_scores(EMPLOYEE_SALES.subject_id, HEAD_SALES)
        filtered = service.list_subject_scores(
            EMPLOYEE_SALES.subject_id, EMPLOYEE_SALES, AnalyticsFilters(year=2024)
        )

        assert [e.period for e in entries] == ["Mar 2025", "Jan 2025", "Dec 2024"]
        assert entries[0].indicator_name == "Tickets closed"
        assert [e.period for e in filtered] == ["Dec 2024"]

    def test_list_subject_scores_forbidden_for_colleague(self, service: ScoreService) -> None:
        with pytest.raises(ForbiddenError):
            service.list_subject_scores(EMPLOYEE_SALES.subject_id, EMPLOYEE_OPS)


class TestConcurrentWrites:
    WRITERS = 8

    def test_racing_submissions_store_one_record(
        self,
        service: ScoreService,
        hq_indicator: IndicatorDefinition,
        dispatcher: InMemoryNotificationDispatcher,
    ) -> None:
        """Eight submissions for the same period race; one is stored."""
        start = threading.Barrier(self.WRITERS)

        def submit(n: int):
            start.wait()
            try:
                return _submit(service, EMPLOYEE_SALES, value=10 + n)
            except DuplicatePeriodError:
                return None

        with ThreadPoolExecutor(max_workers=self.WRITERS) as pool:
            results = list(pool.map(submit, range(self.WRITERS)))

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        (stored,) = service.list_subject_scores(EMPLOYEE_SALES.subject_id, ADMIN)
        assert stored.score_id == winners[0].score_id
        assert stored.value == winners[0].value
        assert len(dispatcher.events) == 1

    def test_racing_verifications_have_one_winner(
        self,
        service: ScoreService,
        hq_indicator: IndicatorDefinition,
        audit_sink: InMemoryAuditSink,
    ) -> None:
        """Eight administrators verify the same record at once; one succeeds."""
        record = _submit(service, EMPLOYEE_SALES)
        verifiers = [
            make_actor(f"admin-{n}", SubjectRole.ADMINISTRATOR, "Headquarters")
            for n in range(self.WRITERS)
        ]
        start = threading.Barrier(self.WRITERS)

        def verify(verifier):
            start.wait()
            try:
                return service.verify_score(record.score_id, verifier)
            except AlreadyVerifiedError:
                return None

        with ThreadPoolExecutor(max_workers=self.WRITERS) as pool:
            results = list(pool.map(verify, verifiers))

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        stored = service.get_score(record.score_id, ADMIN)
        assert stored.verified is True
        assert stored.verified_by == winners[0].verified_by
        assert stored.verified_at == winners[0].verified_at
        assert len(audit_sink.of_type("score.verified")) == 1
