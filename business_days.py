from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING, Optional

from periods import month_end

if TYPE_CHECKING:  # pragma: no cover
    from holiday_calendars import HolidayProvider


def is_business_day(
    day: date,
    holidays: Optional["HolidayProvider"] = None,
    country_code: Optional[str] = None,
    subdivision_code: Optional[str] = None,
) -> bool:
    if day.weekday() >= 5:
        return False
    if holidays is not None and holidays.is_public_holiday(
        day, country_code, subdivision_code
    ):
        return False
    return True


def last_business_day(
    year: int,
    month: int,
    holidays: Optional["HolidayProvider"] = None,
    country_code: Optional[str] = None,
    subdivision_code: Optional[str] = None,
) -> date:
    """Last weekday of the month that the holiday provider does not flag."""
    cursor = month_end(date(year, month, 1))
    while not is_business_day(cursor, holidays, country_code, subdivision_code):
        cursor -= date.resolution
    return cursor


def last_business_day_of_month(day: date) -> date:
    return last_business_day(day.year, day.month)
