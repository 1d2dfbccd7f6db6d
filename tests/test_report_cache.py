from datetime import date, datetime

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import DateBasis, ReportCacheEntry
from report_cache import (
    BUDGET_REPORT_FAMILY,
    ReportCacheService,
    build_cache_key,
    decode_parameter,
)
from schemas import BudgetReportRawData, ReportCacheParameter


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _report(start: date, end: date, basis: DateBasis = DateBasis.booking_date):
    return BudgetReportRawData(start=start, end=end, date_basis=basis)


def _store(session, start, end, *, owner=1, family=BUDGET_REPORT_FAMILY):
    return ReportCacheService(session, family=family).set_budget_report_raw_data(
        owner, start, end, DateBasis.booking_date, _report(start, end)
    )


def test_cache_key_format():
    key = build_cache_key(
        BUDGET_REPORT_FAMILY, date(2024, 1, 1), date(2024, 1, 31), DateBasis.valuta_date
    )
    assert key == "budgetreportraw-20240101-20240131-ValutaDate"


def test_parameter_round_trips_through_json():
    parameter = ReportCacheParameter(
        start=date(2024, 1, 1), end=date(2024, 1, 31), date_basis=DateBasis.booking_date
    )
    assert decode_parameter(parameter.model_dump_json()) == parameter
    assert decode_parameter("") is None
    with pytest.raises(ValidationError):
        decode_parameter("{not json")


def test_parameter_rejects_inverted_range():
    with pytest.raises(ValidationError):
        ReportCacheParameter(
            start=date(2024, 2, 1), end=date(2024, 1, 1), date_basis=DateBasis.booking_date
        )


def test_overlapping_change_marks_entry_dirty():
    with _session() as session:
        entry = _store(session, date(2024, 1, 1), date(2024, 1, 31))

        marked = ReportCacheService(session).mark_budget_report_entries_for_update(
            date(2024, 1, 10), date(2024, 1, 15)
        )

        assert marked == 1
        session.refresh(entry)
        assert entry.needs_refresh is True


def test_disjoint_change_leaves_entry_clean():
    with _session() as session:
        entry = _store(session, date(2024, 1, 1), date(2024, 1, 31))

        marked = ReportCacheService(session).mark_budget_report_entries_for_update(
            date(2024, 2, 1), date(2024, 2, 2)
        )

        assert marked == 0
        session.refresh(entry)
        assert entry.needs_refresh is False


def test_boundary_days_are_inclusive():
    with _session() as session:
        _store(session, date(2024, 1, 1), date(2024, 1, 31))
        service = ReportCacheService(session)

        assert service.mark_budget_report_entries_for_update(
            date(2024, 1, 31), date(2024, 2, 5)
        ) == 1


def test_other_family_is_never_marked():
    with _session() as session:
        other = _store(session, date(2024, 1, 1), date(2024, 1, 31), family="othercache")

        marked = ReportCacheService(session).mark_budget_report_entries_for_update(
            date(2024, 1, 10), date(2024, 1, 15)
        )

        assert marked == 0
        session.refresh(other)
        assert other.cache_key.startswith("othercache-")
        assert other.needs_refresh is False


def test_change_spanning_two_months_marks_both():
    with _session() as session:
        jan = _store(session, date(2024, 1, 1), date(2024, 1, 31))
        feb = _store(session, date(2024, 2, 1), date(2024, 2, 29))
        mar = _store(session, date(2024, 3, 1), date(2024, 3, 31))

        marked = ReportCacheService(session).mark_budget_report_entries_for_update(
            date(2024, 1, 15), date(2024, 2, 10)
        )

        assert marked == 2
        for entry in (jan, feb, mar):
            session.refresh(entry)
        assert jan.needs_refresh and feb.needs_refresh
        assert mar.needs_refresh is False


def test_marking_twice_keeps_entry_dirty():
    with _session() as session:
        entry = _store(session, date(2024, 1, 1), date(2024, 1, 31))
        service = ReportCacheService(session)

        assert service.mark_budget_report_entries_for_update(
            date(2024, 1, 10), date(2024, 1, 15)
        ) == 1
        assert service.mark_budget_report_entries_for_update(
            date(2024, 1, 10), date(2024, 1, 15)
        ) == 0

        session.refresh(entry)
        assert entry.needs_refresh is True


def test_scan_covers_every_owner_unless_scoped():
    with _session() as session:
        mine = _store(session, date(2024, 1, 1), date(2024, 1, 31), owner=1)
        theirs = _store(session, date(2024, 1, 1), date(2024, 1, 31), owner=2)
        service = ReportCacheService(session)

        assert service.mark_budget_report_entries_for_update(
            date(2024, 1, 5), date(2024, 1, 5), owner_user_id=1
        ) == 1
        session.refresh(theirs)
        assert theirs.needs_refresh is False

        assert service.mark_budget_report_entries_for_update(
            date(2024, 1, 5), date(2024, 1, 5)
        ) == 1
        session.refresh(mine)
        session.refresh(theirs)
        assert mine.needs_refresh and theirs.needs_refresh


def test_inverted_change_range_is_rejected():
    with _session() as session:
        with pytest.raises(ValueError, match="on or before"):
            ReportCacheService(session).mark_budget_report_entries_for_update(
                date(2024, 2, 1), date(2024, 1, 1)
            )


def test_malformed_parameter_is_skipped():
    with _session() as session:
        broken = ReportCacheEntry(
            owner_user_id=1,
            cache_key="budgetreportraw-20240101-20240131-BookingDate",
            cache_value="{}",
            parameter="{not json",
        )
        session.add(broken)
        session.commit()
        good = _store(session, date(2024, 1, 1), date(2024, 1, 31), owner=2)

        marked = ReportCacheService(session).mark_budget_report_entries_for_update(
            date(2024, 1, 10), date(2024, 1, 15)
        )

        assert marked == 1
        session.refresh(broken)
        session.refresh(good)
        assert broken.needs_refresh is False
        assert good.needs_refresh is True


def test_marking_updates_modified_timestamp():
    with _session() as session:
        entry = _store(session, date(2024, 1, 1), date(2024, 1, 31))
        stamp = datetime(2030, 5, 1, 12, 0)

        ReportCacheService(session).mark_budget_report_entries_for_update(
            date(2024, 1, 10), date(2024, 1, 15), now=stamp
        )

        session.refresh(entry)
        assert entry.updated_at == stamp


def test_get_returns_data_until_marked():
    with _session() as session:
        service = ReportCacheService(session)
        start, end = date(2024, 1, 1), date(2024, 1, 31)
        _store(session, start, end)

        cached = service.get_budget_report_raw_data(1, start, end, DateBasis.booking_date)
        assert cached == _report(start, end)
        assert service.get_budget_report_raw_data(
            1, start, end, DateBasis.valuta_date
        ) is None

        service.mark_budget_report_entries_for_update(start, start)
        assert service.get_budget_report_raw_data(
            1, start, end, DateBasis.booking_date
        ) is None


def test_set_overwrites_and_clears_dirty_flag():
    with _session() as session:
        service = ReportCacheService(session)
        start, end = date(2024, 1, 1), date(2024, 1, 31)
        _store(session, start, end)
        service.mark_all_entries_for_update(1)

        _store(session, start, end)

        entries = session.scalars(select(ReportCacheEntry)).all()
        assert len(entries) == 1
        assert entries[0].needs_refresh is False


def test_empty_key_or_value_is_rejected():
    with pytest.raises(ValueError):
        ReportCacheEntry(owner_user_id=1, cache_key=" ", cache_value="{}")
    with pytest.raises(ValueError):
        ReportCacheEntry(owner_user_id=1, cache_key="k", cache_value="")


def test_mark_all_and_clear_are_owner_scoped():
    with _session() as session:
        service = ReportCacheService(session)
        _store(session, date(2024, 1, 1), date(2024, 1, 31), owner=1)
        _store(session, date(2024, 2, 1), date(2024, 2, 29), owner=1)
        theirs = _store(session, date(2024, 1, 1), date(2024, 1, 31), owner=2)

        assert service.mark_all_entries_for_update(1) == 2
        session.refresh(theirs)
        assert theirs.needs_refresh is False

        assert service.clear(1) == 2
        remaining = session.scalars(select(ReportCacheEntry)).all()
        assert [entry.owner_user_id for entry in remaining] == [2]


def test_next_entry_to_refresh_picks_oldest_dirty_entry():
    with _session() as session:
        service = ReportCacheService(session)
        assert service.next_entry_to_refresh() is None

        _store(session, date(2024, 1, 1), date(2024, 1, 31), owner=1)
        _store(session, date(2024, 2, 1), date(2024, 2, 29), owner=2)
        service.mark_budget_report_entries_for_update(date(2024, 1, 1), date(2024, 2, 29))

        owner, parameter = service.next_entry_to_refresh()
        assert owner == 1
        assert parameter.start == date(2024, 1, 1)

        owner, parameter = service.next_entry_to_refresh(owner_user_id=2)
        assert owner == 2
        assert parameter.end == date(2024, 2, 29)
        assert service.count_entries_to_refresh() == 2
