"""
Module: periods.py
Description: Shared resolution of period tokens into concrete date ranges.

Tokens:
    this_month      1st of current month -> today
    last_month      full previous calendar month
    last_N_months   1st of the month N months back -> today
    this_year       Jan 1 -> today
    last_year       full previous calendar year

Unknown tokens resolve as this_month. Every token also has a previous
period of the same length used for comparisons.

Author: RUPI Assistant Team
"""

import re
import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

DEFAULT_PERIOD = "this_month"

_LAST_N_MONTHS = re.compile(r"^last_(\d{1,2})_months$")


@dataclass(frozen=True)
class Period:
    name: str
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "start_date": self.start.isoformat(),
            "end_date": self.end.isoformat(),
        }


# =============================================================================
# Month arithmetic
# =============================================================================

def shift_months(day: date, months: int) -> date:
    """Move a date by whole months, clamping the day to the target month's length."""
    month_index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(month_index, 12)
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def month_start(day: date) -> date:
    return day.replace(day=1)


def month_end(day: date) -> date:
    return day.replace(day=calendar.monthrange(day.year, day.month)[1])


# =============================================================================
# Resolution
# =============================================================================

def normalize_token(token: Optional[str]) -> str:
    """Return a known token, falling back to this_month."""
    token = (token or "").strip().lower()
    if token in ("this_month", "last_month", "this_year", "last_year"):
        return token
    match = _LAST_N_MONTHS.match(token)
    if match and int(match.group(1)) > 0:
        return token
    return DEFAULT_PERIOD


def resolve_period(token: Optional[str], today: date) -> Period:
    name = normalize_token(token)

    if name == "last_month":
        previous = shift_months(today, -1)
        return Period(name, month_start(previous), month_end(previous))
    if name == "this_year":
        return Period(name, date(today.year, 1, 1), today)
    if name == "last_year":
        return Period(name, date(today.year - 1, 1, 1), date(today.year - 1, 12, 31))

    match = _LAST_N_MONTHS.match(name)
    if match:
        months = int(match.group(1))
        return Period(name, month_start(shift_months(today, -months)), today)

    return Period(name, month_start(today), today)


def previous_period(token: Optional[str], today: date) -> Period:
    """The comparison window immediately preceding resolve_period(token)."""
    name = normalize_token(token)
    label = f"previous_{name}"

    if name == "this_month":
        previous = shift_months(today, -1)
        return Period(label, month_start(previous), month_end(previous))
    if name == "last_month":
        previous = shift_months(today, -2)
        return Period(label, month_start(previous), month_end(previous))
    if name == "this_year":
        return Period(label, date(today.year - 1, 1, 1), date(today.year - 1, 12, 31))
    if name == "last_year":
        return Period(label, date(today.year - 2, 1, 1), date(today.year - 2, 12, 31))

    months = int(_LAST_N_MONTHS.match(name).group(1))
    current = resolve_period(name, today)
    return Period(label, month_start(shift_months(today, -2 * months)), current.start - timedelta(days=1))


def fiscal_year_start(today: date) -> date:
    """Indian financial year begins on April 1."""
    return date(today.year if today.month >= 4 else today.year - 1, 4, 1)
