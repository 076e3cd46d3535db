"""kpiscore domain models (pydantic)."""

from kpiscore.models.analytics import (
    AnalyticsFilters,
    AnalyticsLevel,
    AnalyticsReport,
    ComparisonDimension,
    ComparisonReport,
)
from kpiscore.models.indicator import IndicatorDefinition, IndicatorKind, IndicatorRole
from kpiscore.models.notification import (
    NotificationEvent,
    ScoreSubmittedEvent,
    ScoreVerifiedEvent,
)
from kpiscore.models.period import Month, Period
from kpiscore.models.score_record import ScoreRecord, ScoreSource
from kpiscore.models.subject import ActingSubject, Subject, SubjectRole

__all__ = [
    "ActingSubject",
    "AnalyticsFilters",
    "AnalyticsLevel",
    "AnalyticsReport",
    "ComparisonDimension",
    "ComparisonReport",
    "IndicatorDefinition",
    "IndicatorKind",
    "IndicatorRole",
    "Month",
    "NotificationEvent",
    "Period",
    "ScoreRecord",
    "ScoreSource",
    "ScoreSubmittedEvent",
    "ScoreVerifiedEvent",
    "Subject",
    "SubjectRole",
]
