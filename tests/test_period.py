"""Tests for the period model."""
from datetime import date

import pytest

from cronarchive.model.period import Period, PeriodKind


def test_build_day():
    """Test a day period spans a single date."""
    period = Period.build("day", "2019-12-12")
    assert period.date1 == period.date2 == date(2019, 12, 12)
    assert str(period) == "day(2019-12-12 - 2019-12-12)"


def test_build_week_starts_on_monday():
    """Test a Sunday belongs to the week starting the previous Monday."""
    period = Period.build("week", "2020-04-05")
    assert period.date1 == date(2020, 3, 30)
    assert period.date2 == date(2020, 4, 5)


def test_build_month_leap_year():
    """Test month bounds in a leap year."""
    period = Period.build("month", "2020-02-14")
    assert period.date1 == date(2020, 2, 1)
    assert period.date2 == date(2020, 2, 29)


def test_build_year():
    """Test year bounds."""
    period = Period.build(PeriodKind.YEAR, date(2019, 12, 2))
    assert (period.date1, period.date2) == (date(2019, 1, 1), date(2019, 12, 31))
    assert period.label == "2019-01-01"


def test_build_range():
    """Test range parsing and label."""
    period = Period.build("range", "2019-12-01,2019-12-15")
    assert period.kind is PeriodKind.RANGE
    assert period.label == "2019-12-01,2019-12-15"


def test_build_range_requires_two_dates():
    """Test a range without a second date is rejected."""
    with pytest.raises(ValueError):
        Period.build("range", "2019-12-01")


def test_build_relative_dates():
    """Test today/yesterday resolve against the given reference date."""
    today = date(2020, 2, 3)
    assert Period.build("day", "today", today=today).date1 == today
    assert Period.build("day", "yesterday", today=today).date1 == date(2020, 2, 2)
    with pytest.raises(ValueError):
        Period.build("day", "today")


def test_start_after_end_is_rejected():
    """Test the bounds invariant."""
    with pytest.raises(ValueError):
        Period(kind=PeriodKind.RANGE, date1=date(2020, 1, 2), date2=date(2020, 1, 1))


def test_covering_periods():
    """Test day, week, month and year all contain the date."""
    day = date(2019, 12, 10)
    periods = Period.covering(day)
    assert [p.kind for p in periods] == [PeriodKind.DAY, PeriodKind.WEEK, PeriodKind.MONTH, PeriodKind.YEAR]
    assert all(p.contains(day) for p in periods)
    for narrow, wide in zip(periods, periods[1:]):
        assert wide.date1 <= narrow.date1 and narrow.date2 <= wide.date2


def test_contains_today():
    """Test today containment is inclusive on both ends."""
    week = Period.build("week", "2020-04-05")
    assert week.contains_today(date(2020, 3, 30))
    assert week.contains_today(date(2020, 4, 5))
    assert not week.contains_today(date(2020, 4, 6))


def test_intersects():
    """Test overlap detection."""
    week = Period.build("week", "2019-12-02")
    assert week.intersects(Period.build("day", "2019-12-02"))
    assert week.intersects(Period.build("month", "2019-12-02"))
    assert not week.intersects(Period.build("day", "2019-12-10"))


def test_periods_are_hashable_values():
    """Test equal periods collapse in a set."""
    assert len({Period.build("day", "2019-12-12"), Period.build("day", date(2019, 12, 12))}) == 1
