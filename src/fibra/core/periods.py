"""Clock helpers and reporting-period tags.

Quarterly period tags use the Mexican convention ``{quarter}T{year}``
(``1T2024`` is the first quarter of 2024); annual reports use ``FY{year}``.
"""

from __future__ import annotations

import re
from datetime import UTC, date, datetime
from typing import Protocol

_PERIOD_TAG = re.compile(r"^(?:[1-4]T\d{4}|FY\d{4})$")


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class Clock(Protocol):
    """Time source injected into services so tests can freeze it."""

    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return utcnow()


def quarter_of(day: date) -> int:
    return (day.month - 1) // 3 + 1


def period_tag_for(day: date) -> str:
    """``{quarter}T{year}`` for the quarter containing *day*."""
    return f"{quarter_of(day)}T{day.year}"


def quarter_tag(quarter: int, year: int) -> str:
    """Build a quarter tag, expanding two-digit years into 20xx."""
    if not 1 <= quarter <= 4:
        raise ValueError(f"quarter must be 1-4, got {quarter}")
    if year < 100:
        year += 2000
    return f"{quarter}T{year}"


def is_period_tag(value: str | None) -> bool:
    return bool(value) and _PERIOD_TAG.match(value) is not None


__all__ = [
    "Clock",
    "SystemClock",
    "is_period_tag",
    "period_tag_for",
    "quarter_of",
    "quarter_tag",
    "utcnow",
]
