from __future__ import annotations

import json
import logging
from datetime import date
from functools import lru_cache
from http.client import HTTPException
from typing import Optional, Protocol
from urllib.request import Request, urlopen

from config import get_settings
from models import HolidayProviderKind


logger = logging.getLogger(__name__)

NAGER_DATE_BASE_URL = "https://date.nager.at"

_FIXED_HOLIDAYS: dict[str, frozenset[tuple[int, int]]] = {
    "DE": frozenset({(1, 1), (5, 1), (12, 25), (12, 26)}),
    "US": frozenset({(1, 1), (7, 4), (12, 25)}),
    "GB": frozenset({(1, 1), (12, 25), (12, 26)}),
}


class HolidayProvider(Protocol):
    def is_public_holiday(
        self,
        day: date,
        country_code: Optional[str],
        subdivision_code: Optional[str],
    ) -> bool: ...


class InMemoryHolidayProvider:
    """Fixed-date public holidays for a handful of countries."""

    def is_public_holiday(
        self,
        day: date,
        country_code: Optional[str],
        subdivision_code: Optional[str] = None,
    ) -> bool:
        if not country_code or not country_code.strip():
            return False
        return day in _fixed_holidays_for_year(country_code.strip().upper(), day.year)


@lru_cache(maxsize=256)
def _fixed_holidays_for_year(country_code: str, year: int) -> frozenset[date]:
    month_days = _FIXED_HOLIDAYS.get(country_code, frozenset())
    return frozenset(date(year, month, day) for month, day in month_days)


class NagerDateHolidayProvider:
    """Public holidays from the Nager.Date API, cached per country and year.

    A holiday without counties applies nationwide. With a subdivision code a
    day counts when it is nationwide or lists that subdivision; without one
    only nationwide holidays count.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self.timeout = (
            timeout if timeout is not None else get_settings().holiday_timeout_secs
        )

    def is_public_holiday(
        self,
        day: date,
        country_code: Optional[str],
        subdivision_code: Optional[str] = None,
    ) -> bool:
        if not country_code or not country_code.strip():
            return False

        holidays = load_nager_year(
            country_code.strip().upper(), day.year, timeout=self.timeout
        )
        if day not in holidays:
            return False

        counties = holidays[day]
        if not subdivision_code or not subdivision_code.strip():
            return not counties
        if not counties:
            return True
        return subdivision_code.strip().upper() in counties


def load_nager_year(
    country_code: str, year: int, *, timeout: float
) -> dict[date, frozenset[str]]:
    try:
        return _fetch_nager_year(country_code, year, timeout=timeout)
    except RuntimeError:
        logger.warning(
            f"nager_date_unavailable: year={year} country={country_code} "
            "falling back to no holidays",
            exc_info=True,
        )
        return {}


@lru_cache(maxsize=128)
def _fetch_nager_year(
    country_code: str, year: int, *, timeout: float
) -> dict[date, frozenset[str]]:
    url = f"{NAGER_DATE_BASE_URL}/api/v3/PublicHolidays/{year}/{country_code}"
    req = Request(url, headers={"Accept": "application/json"})
    # URLError and timeouts are OSErrors; bad JSON and undecodable bytes are ValueErrors
    try:
        with urlopen(req, timeout=timeout) as resp:
            payload = json.loads(resp.read().decode("utf-8"))
    except (OSError, HTTPException, ValueError) as exc:
        raise RuntimeError(
            f"Failed to fetch holidays from Nager.Date for {country_code}/{year}"
        ) from exc
    return parse_nager_holidays(payload)


def parse_nager_holidays(payload: object) -> dict[date, frozenset[str]]:
    if not isinstance(payload, list):
        raise RuntimeError("Unexpected holiday provider response")

    holidays: dict[date, frozenset[str]] = {}
    for item in payload:
        try:
            day = date.fromisoformat(str(item["date"])[:10])
        except (KeyError, TypeError, ValueError):
            continue
        counties = frozenset(
            str(c).upper() for c in (item.get("counties") or []) if c
        )
        if day not in holidays:
            holidays[day] = counties
        elif not holidays[day] or not counties:
            # one nationwide listing makes the whole day nationwide
            holidays[day] = frozenset()
        else:
            holidays[day] = holidays[day] | counties
    return holidays


_MEMORY_PROVIDER = InMemoryHolidayProvider()


def resolve_holiday_provider(kind: Optional[HolidayProviderKind]) -> HolidayProvider:
    if kind == HolidayProviderKind.nager_date:
        return NagerDateHolidayProvider()
    return _MEMORY_PROVIDER
