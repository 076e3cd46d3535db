"""Indicator definition model (a weighted KPI scoped to one indicator role)."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class IndicatorRole(StrEnum):
    """Role an indicator applies to. Weight budgets are tracked per value."""

    HQ_STAFF = "HQ_STAFF"
    FIELD_UNIT = "FIELD_UNIT"
    DIVISION_HEAD = "DIVISION_HEAD"


class IndicatorKind(StrEnum):
    """Measurement kind. Stored as metadata; not used by the score formula."""

    QUANTITATIVE = "quantitative"
    QUALITATIVE = "qualitative"


MAX_TOTAL_WEIGHT = 100


class IndicatorDefinition(BaseModel):
    """A named, weighted performance measure for one indicator role.

    Invariant (enforced by the weight ledger, not by this model): for a
    fixed (org_id, role) the weights of all active indicators sum to at
    most 100.
    """

    model_config = ConfigDict(frozen=True)

    indicator_id: str = Field(..., description="UUID of the indicator")
    org_id: str = Field(..., description="Owning organization")
    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)
    weight: float = Field(..., ge=0, le=100, description="Percentage share of the role total")
    kind: IndicatorKind
    unit: str = Field(default="", max_length=50)
    target_value: float = Field(..., gt=0, description="Value at which attainment is 100%")
    role: IndicatorRole
    category: str = Field(..., min_length=1, max_length=100)
    active: bool = True
    created_by: str | None = None
    last_modified_by: str | None = None
    created_at: datetime
    updated_at: datetime | None = None


class RoleIndicatorStats(BaseModel):
    """Active-indicator counts and weight total for one role."""

    role: IndicatorRole
    count: int
    total_weight: float
    quantitative: int
    qualitative: int


class IndicatorStats(BaseModel):
    """Organization-wide indicator statistics (active indicators only)."""

    total_indicators: int
    by_role: list[RoleIndicatorStats]
