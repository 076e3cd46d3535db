"""Notification events handed to the dispatcher after submit/verify.

Events form a closed set discriminated on ``kind``; each carries typed
fields instead of an open metadata map.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field


class _NotificationBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    org_id: str
    recipient_ids: list[str] = Field(..., min_length=1)
    score_id: str
    subject_id: str
    indicator_id: str
    indicator_name: str
    period: str
    occurred_at: datetime


class ScoreSubmittedEvent(_NotificationBase):
    """A subject submitted a measurement; routed to their division head."""

    kind: Literal["score_submitted"] = "score_submitted"
    value: float
    final_score: float
    submitted_by: str
    submitted_by_name: str


class ScoreVerifiedEvent(_NotificationBase):
    """A score was verified; routed to the scored subject."""

    kind: Literal["score_verified"] = "score_verified"
    final_score: float
    verified_by: str
    verified_by_name: str


NotificationEvent = Annotated[
    ScoreSubmittedEvent | ScoreVerifiedEvent,
    Field(discriminator="kind"),
]
