"""Subject models: the people whose performance is scored.

A subject has exactly one role and one department. The department groups
subjects into teams for aggregation; the role (together with the department)
selects which indicator role applies to them.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class SubjectRole(StrEnum):
    """Organizational role of a subject (user)."""

    EMPLOYEE = "EMPLOYEE"
    DIVISION_HEAD = "DIVISION_HEAD"
    ADMINISTRATOR = "ADMINISTRATOR"


class Subject(BaseModel):
    """A scored person within an organization."""

    model_config = ConfigDict(frozen=True)

    subject_id: str = Field(..., min_length=1, description="Stable subject identifier")
    org_id: str = Field(..., min_length=1, description="Owning organization")
    name: str = Field(..., min_length=1, description="Display name")
    role: SubjectRole = Field(..., description="Organizational role")
    department: str = Field(..., min_length=1, description="Department (team partition)")
    active: bool = Field(default=True, description="Inactive subjects are not aggregated")


class ActingSubject(BaseModel):
    """Identity of the caller, resolved by upstream authentication.

    Every core operation receives one of these; nothing downstream trusts
    client-supplied identity fields.
    """

    model_config = ConfigDict(frozen=True)

    org_id: str
    subject_id: str
    name: str
    role: SubjectRole
    department: str

    @property
    def is_administrator(self) -> bool:
        """Return True if the actor has organization-wide read and write."""
        return self.role == SubjectRole.ADMINISTRATOR

    @property
    def is_division_head(self) -> bool:
        """Return True if the actor heads their department."""
        return self.role == SubjectRole.DIVISION_HEAD

    def heads_department_of(self, subject: Subject) -> bool:
        """Return True if the actor is the division head of the subject's department."""
        return self.is_division_head and self.department == subject.department
