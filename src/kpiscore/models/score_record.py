"""Score record model: one subject's measurement for one indicator in one period."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from kpiscore.models.indicator import IndicatorKind
from kpiscore.models.period import MAX_PERIOD_YEAR, MIN_PERIOD_YEAR, Month


class ScoreSource(StrEnum):
    """Where a measurement came from."""

    MANUAL = "manual"
    SYSTEM = "system"
    E_OFFICE = "e-office"


class ScoreRecord(BaseModel):
    """A stored, derived score.

    final_score is computed at submission (and on value correction) and is
    frozen once the record is verified. At most one record exists per
    (org_id, subject_id, indicator_id, month, year).
    """

    model_config = ConfigDict(frozen=True)

    score_id: str
    org_id: str
    subject_id: str
    indicator_id: str
    value: float = Field(..., ge=0)
    target_snapshot: float = Field(..., gt=0, description="Indicator target at submission")
    month: Month
    year: int = Field(..., ge=MIN_PERIOD_YEAR, le=MAX_PERIOD_YEAR)
    period: str = Field(..., description='Label, e.g. "Jan 2025"')
    final_score: float = Field(..., ge=0, le=100)
    kind: IndicatorKind
    evaluated_by: str | None = None
    notes: str = Field(default="", max_length=500)
    source: ScoreSource = ScoreSource.MANUAL
    verified: bool = False
    verified_by: str | None = None
    verified_at: datetime | None = None
    created_at: datetime
    updated_at: datetime | None = None
