"""Visibility resolver: which subjects' records an actor may aggregate.

    individual -> {target}; a target other than the actor needs org-wide read
    team       -> everyone in the actor's department, actor included
                  (division heads and administrators only)
    org        -> everyone in the organization (administrators only)

Violations raise ForbiddenError; they never degrade to an empty result.
Membership is recomputed on every call and never cached.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from kpiscore.models.analytics import AnalyticsLevel
from kpiscore.models.subject import ActingSubject, Subject, SubjectRole
from kpiscore.services.errors import ForbiddenError

TEAM_READERS: frozenset[SubjectRole] = frozenset(
    {SubjectRole.DIVISION_HEAD, SubjectRole.ADMINISTRATOR}
)
ORG_READERS: frozenset[SubjectRole] = frozenset({SubjectRole.ADMINISTRATOR})


@dataclass(frozen=True)
class VisibilityScope:
    """Resolved scope of one analytics request."""

    level: AnalyticsLevel
    actor: ActingSubject
    member_ids: frozenset[str]
    target_subject_id: str | None = None
    department: str | None = None


def resolve_members(
    actor: ActingSubject,
    level: AnalyticsLevel,
    subjects: Iterable[Subject],
    target_subject_id: str | None = None,
) -> VisibilityScope:
    """Resolve the subject ids an actor may aggregate at a level.

    Args:
        actor: Authenticated acting subject.
        level: Requested aggregation level.
        subjects: Current subjects of the actor's organization.
        target_subject_id: Subject of an individual-level request (defaults to the actor).

    Returns:
        VisibilityScope with the permitted member ids.

    Raises:
        ForbiddenError: If the actor may not read at this level or target.
    """
    if level == AnalyticsLevel.INDIVIDUAL:
        target = target_subject_id or actor.subject_id
        if target != actor.subject_id and actor.role not in ORG_READERS:
            raise ForbiddenError(
                "Individual analytics for another subject require administrator access",
                reason="individual_other_subject",
            )
        return VisibilityScope(
            level=level,
            actor=actor,
            member_ids=frozenset({target}),
            target_subject_id=target,
        )

    if level == AnalyticsLevel.TEAM:
        if actor.role not in TEAM_READERS:
            raise ForbiddenError(
                "Team analytics require division head or administrator access",
                reason="team_level_denied",
            )
        members = {
            s.subject_id
            for s in subjects
            if s.org_id == actor.org_id and s.department == actor.department
        }
        members.add(actor.subject_id)
        return VisibilityScope(
            level=level,
            actor=actor,
            member_ids=frozenset(members),
            department=actor.department,
        )

    if level == AnalyticsLevel.ORG:
        if actor.role not in ORG_READERS:
            raise ForbiddenError(
                "Organization analytics require administrator access",
                reason="org_level_denied",
            )
        members = {s.subject_id for s in subjects if s.org_id == actor.org_id}
        return VisibilityScope(level=level, actor=actor, member_ids=frozenset(members))

    raise ForbiddenError(f"Unknown analytics level: {level}", reason="unknown_level")


def can_view_subject(actor: ActingSubject, subject: Subject) -> bool:
    """Return True if the actor may read a single subject's score records."""
    if actor.org_id != subject.org_id:
        return False
    if actor.is_administrator or actor.subject_id == subject.subject_id:
        return True
    return actor.heads_department_of(subject)
