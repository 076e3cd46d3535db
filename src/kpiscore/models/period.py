"""Scoring period: a (month, year) cycle with a "<Mon> <YYYY>" label."""

from __future__ import annotations

from enum import StrEnum
from typing import Final

from pydantic import BaseModel, ConfigDict, Field

MIN_PERIOD_YEAR: Final[int] = 2020
MAX_PERIOD_YEAR: Final[int] = 2030


class Month(StrEnum):
    """Calendar month abbreviations, declared in calendar order."""

    JAN = "Jan"
    FEB = "Feb"
    MAR = "Mar"
    APR = "Apr"
    MAY = "May"
    JUN = "Jun"
    JUL = "Jul"
    AUG = "Aug"
    SEP = "Sep"
    OCT = "Oct"
    NOV = "Nov"
    DEC = "Dec"

    @property
    def ordinal(self) -> int:
        """1-based calendar position (Jan=1)."""
        return _MONTH_ORDER[self] + 1


_MONTH_ORDER: dict[Month, int] = {month: i for i, month in enumerate(Month)}


class Period(BaseModel):
    """A scoring cycle."""

    model_config = ConfigDict(frozen=True)

    month: Month
    year: int = Field(..., ge=MIN_PERIOD_YEAR, le=MAX_PERIOD_YEAR)

    @property
    def label(self) -> str:
        """Human-readable label, e.g. "Jan 2025"."""
        return format_period_label(self.month, self.year)

    @classmethod
    def parse(cls, label: str) -> Period:
        """Parse a "<Mon> <YYYY>" label.

        Raises:
            ValueError: If the label is malformed or out of range.
        """
        parts = label.strip().split()
        if len(parts) != 2:
            raise ValueError(f"Period label must look like 'Jan 2025', got '{label}'")
        month_raw, year_raw = parts
        try:
            month = Month(month_raw.capitalize())
        except ValueError as e:
            raise ValueError(f"Unknown month '{month_raw}' in period '{label}'") from e
        if not year_raw.isdigit():
            raise ValueError(f"Year must be numeric in period '{label}'")
        return cls(month=month, year=int(year_raw))


def format_period_label(month: Month | str, year: int) -> str:
    """Build the canonical period label."""
    return f"{Month(month).value} {year}"


def period_sort_key(month: Month | str, year: int) -> tuple[int, int]:
    """Chronological sort key for a raw (month, year) pair."""
    return (year, Month(month).ordinal)
