"""ScoreService - measurement submission, correction and verification.

Submission resolves the scored subject and the indicator, checks that the
indicator's role applies to the subject, computes the capped final score and
inserts the record. The store rejects a second record for the same
(subject, indicator, period). Verification and value correction are
conditional writes on unverified records only.

Notifications are sent after the write succeeds; a failing dispatcher is
logged and never fails the request.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from kpiscore.audit.sink import AuditSink, InMemoryAuditSink, build_audit_event
from kpiscore.models.analytics import AnalyticsFilters, IndicatorBreakdownEntry
from kpiscore.models.indicator import IndicatorDefinition
from kpiscore.models.notification import (
    NotificationEvent,
    ScoreSubmittedEvent,
    ScoreVerifiedEvent,
)
from kpiscore.models.period import Month, Period
from kpiscore.models.score_record import ScoreRecord, ScoreSource
from kpiscore.models.subject import ActingSubject, Subject, SubjectRole
from kpiscore.observability.tracing import traced_operation
from kpiscore.persistence.repositories.indicators import get_indicators_repository
from kpiscore.persistence.repositories.scores import get_scores_repository
from kpiscore.persistence.repositories.subjects import get_subjects_repository
from kpiscore.scoring.aggregation import indicator_breakdown
from kpiscore.scoring.calculator import compute_for_indicator, indicator_role_for
from kpiscore.scoring.config import AnalyticsConfig
from kpiscore.scoring.visibility import can_view_subject
from kpiscore.services.errors import (
    AlreadyVerifiedError,
    DuplicatePeriodError,
    ForbiddenError,
    IndicatorNotFoundError,
    InvalidPeriodError,
    RoleMismatchError,
    ScoreNotFoundError,
    SubjectNotFoundError,
)
from kpiscore.services.notifications.dispatcher import (
    InMemoryNotificationDispatcher,
    NotificationDispatcher,
)

if TYPE_CHECKING:
    from sqlalchemy import Connection

logger = logging.getLogger(__name__)

VERIFIER_ROLES = frozenset({SubjectRole.DIVISION_HEAD, SubjectRole.ADMINISTRATOR})


class SubmitScoreInput(BaseModel):
    """Input model for submitting a measurement.

    The period is given either as a label ("Jan 2025") or as month + year.
    ``value`` is unconstrained here; the calculator rejects
    negative and non-finite values with a domain error.
    """

    indicator_id: str = Field(..., min_length=1)
    value: float
    period: str | None = Field(default=None, description='Period label, e.g. "Jan 2025"')
    month: str | None = Field(default=None, description="Jan .. Dec")
    year: int | None = None
    subject_id: str | None = Field(
        default=None, description="Scored subject; defaults to the acting subject"
    )
    notes: str = Field(default="", max_length=500)
    source: ScoreSource = ScoreSource.MANUAL
    request_id: str | None = Field(default=None, description="Request correlation ID")


class UpdateScoreInput(BaseModel):
    """Value correction for an unverified record."""

    value: float
    notes: str | None = Field(default=None, max_length=500)
    request_id: str | None = Field(default=None, description="Request correlation ID")


def resolve_period(
    period: str | None,
    month: str | None,
    year: int | None,
) -> Period:
    """Build a Period from a label and/or an explicit month and year.

    Raises:
        InvalidPeriodError: If nothing usable is given, values are out of
            range, or the label disagrees with month/year.
    """
    try:
        if period:
            parsed = Period.parse(period)
            if year is not None and year != parsed.year:
                raise InvalidPeriodError(f"year {year} conflicts with period '{period}'")
            if month is not None and Month(month.strip().capitalize()) != parsed.month:
                raise InvalidPeriodError(f"month {month} conflicts with period '{period}'")
            return parsed
        if month is None or year is None:
            raise InvalidPeriodError("Either period or both month and year are required")
        return Period(month=Month(month.strip().capitalize()), year=year)
    except ValueError as e:
        raise InvalidPeriodError(str(e)) from e


class ScoreService:
    """Service layer for score records.

    All operations are organization-scoped and take the acting subject
    resolved by authentication.
    """

    def __init__(
        self,
        org_id: str,
        db_conn: Connection | None = None,
        audit_sink: AuditSink | None = None,
        notification_dispatcher: NotificationDispatcher | None = None,
        config: AnalyticsConfig | None = None,
    ) -> None:
        """Initialize ScoreService with organization context.

        Args:
            org_id: Organization identifier scoping all operations.
            db_conn: SQLAlchemy connection for Postgres. If None, uses in-memory.
            audit_sink: Optional audit sink for event emission.
            notification_dispatcher: Receives submit/verify events.
            config: Supplies the field-unit department used for role matching.
        """
        self._org_id = org_id
        self._audit_sink = audit_sink or InMemoryAuditSink()
        self._dispatcher = notification_dispatcher or InMemoryNotificationDispatcher()
        self._config = config or AnalyticsConfig()
        self._subjects_repo = get_subjects_repository(db_conn, org_id)
        self._indicators_repo = get_indicators_repository(db_conn, org_id)
        self._scores_repo = get_scores_repository(db_conn, org_id)

    @property
    def org_id(self) -> str:
        return self._org_id

    def _emit_audit_event(
        self,
        event_type: str,
        record: ScoreRecord,
        actor: ActingSubject,
        request_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        event = build_audit_event(
            event_type=event_type,
            org_id=self._org_id,
            actor_id=actor.subject_id,
            resource_type="score",
            resource_id=record.score_id,
            summary=f"{event_type} for subject {record.subject_id} ({record.period})",
            details={
                "subject_id": record.subject_id,
                "indicator_id": record.indicator_id,
                "period": record.period,
                "final_score": record.final_score,
                **(details or {}),
            },
            request_id=request_id,
        )
        try:
            self._audit_sink.emit(event)
        except Exception as e:
            logger.warning("Failed to emit audit event %s: %s", event_type, e)

    def _notify(self, event: NotificationEvent) -> None:
        try:
            self._dispatcher.dispatch(event)
        except Exception as e:
            logger.warning(
                "Notification %s for score %s failed: %s", event.kind, event.score_id, e
            )

    def _get_subject(self, subject_id: str) -> Subject:
        subject = self._subjects_repo.get(subject_id)
        if subject is None:
            raise SubjectNotFoundError(subject_id, self._org_id)
        return subject

    def _get_record(self, score_id: str) -> ScoreRecord:
        record = self._scores_repo.get(score_id)
        if record is None:
            raise ScoreNotFoundError(score_id, self._org_id)
        return record

    def _get_indicator(self, indicator_id: str, *, active_only: bool) -> IndicatorDefinition:
        indicator = self._indicators_repo.get(indicator_id)
        if indicator is None or (active_only and not indicator.active):
            raise IndicatorNotFoundError(indicator_id, self._org_id)
        return indicator

    def _division_heads_of(self, department: str, exclude: str) -> list[str]:
        return [
            s.subject_id
            for s in self._subjects_repo.list(department=department)
            if s.role == SubjectRole.DIVISION_HEAD and s.subject_id != exclude
        ]

    def submit_score(self, input_data: SubmitScoreInput, actor: ActingSubject) -> ScoreRecord:
        """Submit one measurement for one subject, indicator and period.

        Args:
            input_data: Indicator, value, period and optional target subject.
            actor: Acting subject. Submitting for someone else requires being
                their division head or an administrator.

        Returns:
            The stored record with its computed final score.

        Raises:
            SubjectNotFoundError: If the scored subject is unknown.
            ForbiddenError: If the actor may not submit for that subject.
            IndicatorNotFoundError: If the indicator is missing or inactive.
            RoleMismatchError: If the indicator's role does not apply to the subject.
            InvalidPeriodError: If the period is malformed or out of range.
            ScoreValidationError: If the value is negative or non-finite.
            DuplicatePeriodError: If a record already exists for this period.
        """
        subject_id = input_data.subject_id or actor.subject_id
        with traced_operation(
            "submit_score",
            {"kpiscore.org_id": self._org_id, "kpiscore.indicator_id": input_data.indicator_id},
        ):
            subject = self._get_subject(subject_id)
            if subject_id != actor.subject_id and not (
                actor.is_administrator or actor.heads_department_of(subject)
            ):
                raise ForbiddenError(
                    "Scores for another subject may only be submitted by their "
                    "division head or an administrator",
                    reason="submit_on_behalf_denied",
                )

            indicator = self._get_indicator(input_data.indicator_id, active_only=True)
            subject_role = indicator_role_for(subject, self._config.field_unit_department)
            if indicator.role != subject_role:
                raise RoleMismatchError(indicator.role.value, subject_role.value)

            period = resolve_period(input_data.period, input_data.month, input_data.year)
            final_score = compute_for_indicator(input_data.value, indicator)

            record = ScoreRecord(
                score_id=str(uuid.uuid4()),
                org_id=self._org_id,
                subject_id=subject_id,
                indicator_id=indicator.indicator_id,
                value=input_data.value,
                target_snapshot=indicator.target_value,
                month=period.month,
                year=period.year,
                period=period.label,
                final_score=final_score,
                kind=indicator.kind,
                evaluated_by=actor.subject_id,
                notes=input_data.notes,
                source=input_data.source,
                created_at=datetime.now(UTC),
            )
            if not self._scores_repo.insert(record):
                logger.info(
                    "Duplicate score rejected: subject=%s indicator=%s period=%s",
                    subject_id,
                    indicator.indicator_id,
                    period.label,
                )
                raise DuplicatePeriodError(subject_id, indicator.indicator_id, period.label)

        logger.info(
            "Score submitted: id=%s subject=%s indicator=%s period=%s final=%.2f",
            record.score_id,
            subject_id,
            indicator.indicator_id,
            record.period,
            record.final_score,
        )
        self._emit_audit_event(
            "score.submitted", record, actor, request_id=input_data.request_id
        )

        recipients = self._division_heads_of(subject.department, exclude=actor.subject_id)
        if recipients:
            self._notify(
                ScoreSubmittedEvent(
                    event_id=str(uuid.uuid4()),
                    org_id=self._org_id,
                    recipient_ids=recipients,
                    score_id=record.score_id,
                    subject_id=subject_id,
                    indicator_id=indicator.indicator_id,
                    indicator_name=indicator.name,
                    period=record.period,
                    occurred_at=record.created_at,
                    value=record.value,
                    final_score=record.final_score,
                    submitted_by=actor.subject_id,
                    submitted_by_name=actor.name,
                )
            )
        return record

    def update_value(
        self,
        score_id: str,
        input_data: UpdateScoreInput,
        actor: ActingSubject,
    ) -> ScoreRecord:
        """Correct the value of an unverified record and recompute its score.

        The record is recomputed against the indicator's current definition
        and its target snapshot is refreshed.

        Raises:
            ScoreNotFoundError: If the record does not exist.
            ForbiddenError: If the actor is not the subject, their division
                head, or an administrator.
            AlreadyVerifiedError: If the record is verified.
            IndicatorNotFoundError: If the indicator no longer exists.
            ScoreValidationError: If the value is negative or non-finite.
        """
        record = self._get_record(score_id)
        subject = self._subjects_repo.get(record.subject_id)
        may_edit = (
            actor.is_administrator
            or actor.subject_id == record.subject_id
            or (subject is not None and actor.heads_department_of(subject))
        )
        if not may_edit:
            raise ForbiddenError("You cannot edit this score", reason="score_edit_denied")
        if record.verified:
            raise AlreadyVerifiedError(score_id)

        indicator = self._get_indicator(record.indicator_id, active_only=False)
        final_score = compute_for_indicator(input_data.value, indicator)

        updated = self._scores_repo.update_value(
            score_id,
            value=input_data.value,
            target_snapshot=indicator.target_value,
            final_score=final_score,
            notes=input_data.notes if input_data.notes is not None else record.notes,
            evaluated_by=actor.subject_id,
            updated_at=datetime.now(UTC),
        )
        if updated is None:
            # verified between the read and the conditional write
            raise AlreadyVerifiedError(score_id)

        logger.info(
            "Score updated: id=%s value=%s final=%.2f",
            score_id,
            updated.value,
            updated.final_score,
        )
        self._emit_audit_event(
            "score.updated",
            updated,
            actor,
            request_id=input_data.request_id,
            details={"previous_final_score": record.final_score},
        )
        return updated

    def verify_score(
        self,
        score_id: str,
        verifier: ActingSubject,
        request_id: str | None = None,
    ) -> ScoreRecord:
        """Mark a record verified, freezing its final score.

        Raises:
            ForbiddenError: If the verifier is neither an administrator nor the
                division head of the scored subject's department.
            ScoreNotFoundError: If the record does not exist.
            AlreadyVerifiedError: If the record is already verified; the
                existing verified_by/verified_at are left unchanged.
        """
        if verifier.role not in VERIFIER_ROLES:
            raise ForbiddenError(
                "Only division heads and administrators may verify scores",
                reason="verifier_role_required",
            )

        with traced_operation(
            "verify_score", {"kpiscore.org_id": self._org_id, "kpiscore.score_id": score_id}
        ):
            record = self._get_record(score_id)
            if not verifier.is_administrator:
                subject = self._subjects_repo.get(record.subject_id)
                if subject is None or not verifier.heads_department_of(subject):
                    raise ForbiddenError(
                        "You can only verify scores from your department",
                        reason="verify_other_department",
                    )
            if record.verified:
                raise AlreadyVerifiedError(score_id)

            verified = self._scores_repo.mark_verified(
                score_id, verified_by=verifier.subject_id, verified_at=datetime.now(UTC)
            )
            if verified is None:
                raise AlreadyVerifiedError(score_id)

        logger.info("Score verified: id=%s by=%s", score_id, verifier.subject_id)
        self._emit_audit_event("score.verified", verified, verifier, request_id=request_id)

        indicator = self._indicators_repo.get(verified.indicator_id)
        self._notify(
            ScoreVerifiedEvent(
                event_id=str(uuid.uuid4()),
                org_id=self._org_id,
                recipient_ids=[verified.subject_id],
                score_id=verified.score_id,
                subject_id=verified.subject_id,
                indicator_id=verified.indicator_id,
                indicator_name=indicator.name if indicator else verified.indicator_id,
                period=verified.period,
                occurred_at=verified.verified_at or datetime.now(UTC),
                final_score=verified.final_score,
                verified_by=verifier.subject_id,
                verified_by_name=verifier.name,
            )
        )
        return verified

    def get_score(self, score_id: str, actor: ActingSubject) -> ScoreRecord:
        """Get one record, subject to the same visibility as the subject's list.

        Raises:
            ScoreNotFoundError: If the record does not exist or is not visible.
        """
        record = self._get_record(score_id)
        subject = self._subjects_repo.get(record.subject_id)
        if actor.subject_id != record.subject_id and (
            subject is None or not can_view_subject(actor, subject)
        ):
            raise ScoreNotFoundError(score_id, self._org_id)
        return record

    def list_subject_scores(
        self,
        subject_id: str,
        actor: ActingSubject,
        filters: AnalyticsFilters | None = None,
    ) -> list[IndicatorBreakdownEntry]:
        """List one subject's records, newest period first, with indicator details.

        Raises:
            SubjectNotFoundError: If the subject is unknown.
            ForbiddenError: If the actor may not read this subject's scores.
        """
        subject = self._get_subject(subject_id)
        if not can_view_subject(actor, subject):
            raise ForbiddenError(
                "You cannot view this subject's scores", reason="subject_scores_denied"
            )
        records = self._scores_repo.list_for_subjects([subject_id], filters)
        indicators = self._indicators_repo.get_many(r.indicator_id for r in records)
        return indicator_breakdown(records, indicators)
