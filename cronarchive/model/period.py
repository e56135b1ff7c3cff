"""Calendar periods (day, week, month, year, range)."""
import calendar
from datetime import date, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, model_validator


class PeriodKind(str, Enum):
    """Period granularity."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"
    RANGE = "range"


CALENDAR_KINDS = (PeriodKind.DAY, PeriodKind.WEEK, PeriodKind.MONTH, PeriodKind.YEAR)


class Period(BaseModel):
    """An inclusive date interval with a kind."""

    model_config = ConfigDict(frozen=True)

    kind: PeriodKind
    date1: date
    date2: date

    @model_validator(mode="after")
    def check_bounds(self) -> "Period":
        if self.date1 > self.date2:
            raise ValueError(f"Period start {self.date1} is after end {self.date2}")
        return self

    @classmethod
    def build(cls, kind: str | PeriodKind, value: str | date, today: Optional[date] = None) -> "Period":
        """Build a period from a type and a date string.

        ``value`` is ``YYYY-MM-DD``, ``today``/``yesterday`` (resolved against
        ``today``) or, for ranges, ``YYYY-MM-DD,YYYY-MM-DD``.
        """
        kind = PeriodKind(kind)
        if kind is PeriodKind.RANGE:
            if isinstance(value, date):
                return cls(kind=kind, date1=value, date2=value)
            start, sep, end = value.partition(",")
            if not sep:
                raise ValueError(f"Range period needs two dates, got {value!r}")
            return cls(
                kind=kind,
                date1=_parse_date(start.strip(), today),
                date2=_parse_date(end.strip(), today),
            )

        day = value if isinstance(value, date) else _parse_date(value.strip(), today)
        if kind is PeriodKind.DAY:
            return cls(kind=kind, date1=day, date2=day)
        if kind is PeriodKind.WEEK:
            monday = day - timedelta(days=day.weekday())
            return cls(kind=kind, date1=monday, date2=monday + timedelta(days=6))
        if kind is PeriodKind.MONTH:
            last = calendar.monthrange(day.year, day.month)[1]
            return cls(kind=kind, date1=day.replace(day=1), date2=day.replace(day=last))
        return cls(kind=kind, date1=date(day.year, 1, 1), date2=date(day.year, 12, 31))

    @classmethod
    def covering(cls, day: date) -> list["Period"]:
        """Day, week, month and year periods containing ``day``, narrowest first."""
        return [cls.build(kind, day) for kind in CALENDAR_KINDS]

    def contains(self, day: date) -> bool:
        return self.date1 <= day <= self.date2

    def contains_today(self, today: date) -> bool:
        """True if the site-local ``today`` falls inside the period."""
        return self.contains(today)

    def intersects(self, other: "Period") -> bool:
        return self.date1 <= other.date2 and other.date1 <= self.date2

    @property
    def label(self) -> str:
        """Date parameter sent to the report engine."""
        if self.kind is PeriodKind.RANGE:
            return f"{self.date1.isoformat()},{self.date2.isoformat()}"
        return self.date1.isoformat()

    def __str__(self) -> str:
        return f"{self.kind.value}({self.date1.isoformat()} - {self.date2.isoformat()})"


def _parse_date(value: str, today: Optional[date]) -> date:
    if value in ("today", "yesterday"):
        if today is None:
            raise ValueError(f"'{value}' needs a reference date")
        return today if value == "today" else today - timedelta(days=1)
    return date.fromisoformat(value)
