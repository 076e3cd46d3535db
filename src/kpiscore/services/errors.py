"""Service-layer exception hierarchy.

Every business rejection is a subclass of KpiServiceError and is
recoverable by the caller. Routes translate these into HTTP error envelopes.
"""

from __future__ import annotations


class KpiServiceError(Exception):
    """Base exception for kpiscore service errors."""

    pass


class ScoreValidationError(KpiServiceError):
    """Raised when a submitted value is negative, non-finite or otherwise unusable."""

    def __init__(self, message: str, field: str = "value") -> None:
        self.field = field
        super().__init__(message)


class InvalidIndicatorError(KpiServiceError):
    """Raised when an indicator definition cannot produce a score (e.g. target <= 0)."""

    def __init__(self, message: str, indicator_id: str | None = None) -> None:
        self.indicator_id = indicator_id
        super().__init__(message)


class InvalidPeriodError(KpiServiceError):
    """Raised when a period label or (month, year) pair is out of range."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class WeightExceededError(KpiServiceError):
    """Raised when saving an indicator would push its role's active total above 100."""

    def __init__(self, role: str, current_total: float) -> None:
        self.role = role
        self.current_total = current_total
        super().__init__(
            f"Total weight for {role} role cannot exceed 100%. "
            f"Current total would be {current_total:g}%"
        )


class DuplicatePeriodError(KpiServiceError):
    """Raised when a score already exists for (subject, indicator, period)."""

    def __init__(self, subject_id: str, indicator_id: str, period: str) -> None:
        self.subject_id = subject_id
        self.indicator_id = indicator_id
        self.period = period
        super().__init__(
            f"Score for indicator {indicator_id} already submitted for {period} "
            f"by subject {subject_id}"
        )


class RoleMismatchError(KpiServiceError):
    """Raised when an indicator's role does not apply to the scored subject."""

    def __init__(self, indicator_role: str, subject_role: str) -> None:
        self.indicator_role = indicator_role
        self.subject_role = subject_role
        super().__init__(
            f"Indicator role {indicator_role} does not apply to subjects scored as {subject_role}"
        )


class ForbiddenError(KpiServiceError):
    """Raised when the acting subject may not perform or see what was requested."""

    def __init__(self, message: str, reason: str = "forbidden") -> None:
        self.reason = reason
        super().__init__(message)


class AlreadyVerifiedError(KpiServiceError):
    """Raised when verifying, or correcting the value of, a verified score."""

    def __init__(self, score_id: str) -> None:
        self.score_id = score_id
        super().__init__(f"Score {score_id} is already verified")


class NotFoundError(KpiServiceError):
    """Base for missing-resource errors."""

    resource_type = "resource"

    def __init__(self, resource_id: str, org_id: str) -> None:
        self.resource_id = resource_id
        self.org_id = org_id
        super().__init__(f"{self.resource_type.capitalize()} {resource_id} not found")


class IndicatorNotFoundError(NotFoundError):
    """Raised when an indicator does not exist (or is inactive where activity is required)."""

    resource_type = "indicator"


class ScoreNotFoundError(NotFoundError):
    """Raised when a score record does not exist."""

    resource_type = "score"


class SubjectNotFoundError(NotFoundError):
    """Raised when a subject does not exist in the organization."""

    resource_type = "subject"
