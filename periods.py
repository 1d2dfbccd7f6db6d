from dataclasses import dataclass
from datetime import date
from typing import Iterator, Optional


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def month_start(d: date) -> date:
    return d.replace(day=1)


def month_end(d: date) -> date:
    first = month_start(d)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def iter_months(start: date, end: date) -> Iterator[date]:
    """Yield the first day of every month touched by ``[start, end]``."""
    cursor = month_start(start)
    while cursor <= end:
        yield cursor
        cursor = month_end(cursor) + date.resolution


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if period == "last_month":
        last_month_end = month_start(today) - date.resolution
        return Period("last_month", month_start(last_month_end), last_month_end)
    if period == "this_year":
        return Period("this_year", date(today.year, 1, 1), date(today.year, 12, 31))
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be on or before end date")
        return Period("custom", start_date, end_date)

    return Period("this_month", month_start(today), month_end(today))
