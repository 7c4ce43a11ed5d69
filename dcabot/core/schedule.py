"""Next-run computation for strategy frequencies."""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta

from dcabot.config.constants import Frequency

_FIXED_STEPS: dict[Frequency, timedelta] = {
    Frequency.HOURLY: timedelta(hours=1),
    Frequency.DAILY: timedelta(days=1),
    Frequency.WEEKLY: timedelta(days=7),
}


def add_months(anchor: datetime, months: int = 1) -> datetime:
    """Shift *anchor* by calendar months, clamping the day to the target month.

    ``add_months(Jan 31, 1)`` is Feb 28 (or 29 in leap years).
    """
    month_index = anchor.month - 1 + months
    year = anchor.year + month_index // 12
    month = month_index % 12 + 1
    day = min(anchor.day, calendar.monthrange(year, month)[1])
    return anchor.replace(year=year, month=month, day=day)


def next_run(frequency: Frequency | str, anchor: datetime) -> datetime:
    """Return the next due time for *frequency*, anchored at *anchor*.

    Pure and deterministic: hourly +1h, daily +1d, weekly +7d, monthly
    +1 calendar month with the day-of-month preserved where valid.

    Raises
    ------
    ValueError
        If *frequency* is not a known ``Frequency``.
    """
    freq = Frequency(frequency)
    if freq is Frequency.MONTHLY:
        return add_months(anchor, 1)
    return anchor + _FIXED_STEPS[freq]


def first_run(start_date: datetime, now: datetime) -> datetime:
    """Due time for a strategy that has never run: its start date, or now."""
    return max(start_date, now)
