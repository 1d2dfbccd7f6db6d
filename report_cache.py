from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Optional

from pydantic import ValidationError
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from models import DateBasis, ReportCacheEntry
from schemas import BudgetReportRawData, ReportCacheParameter


logger = logging.getLogger(__name__)

BUDGET_REPORT_FAMILY = "budgetreportraw"


def build_cache_key(family: str, start: date, end: date, basis: DateBasis) -> str:
    # strftime digits are locale independent; basis uses its canonical value
    return f"{family}-{start.strftime('%Y%m%d')}-{end.strftime('%Y%m%d')}-{basis.value}"


def family_prefix(family: str) -> str:
    return f"{family}-"


def decode_parameter(raw: Optional[str]) -> Optional[ReportCacheParameter]:
    if not raw or not raw.strip():
        return None
    return ReportCacheParameter.model_validate_json(raw)


class ReportCacheService:
    """Database-backed cache of precomputed report payloads.

    Entries are keyed per owner by :func:`build_cache_key`. The JSON parameter
    stored next to each value is the authoritative description of the cached
    range; invalidation decodes it instead of parsing keys.
    """

    def __init__(self, session: Session, family: str = BUDGET_REPORT_FAMILY) -> None:
        self.session = session
        self.family = family

    def _get_entry(self, owner_user_id: int, key: str) -> Optional[ReportCacheEntry]:
        stmt = select(ReportCacheEntry).where(
            ReportCacheEntry.owner_user_id == owner_user_id,
            ReportCacheEntry.cache_key == key,
        )
        return self.session.scalar(stmt)

    def get_budget_report_raw_data(
        self,
        owner_user_id: int,
        start: date,
        end: date,
        date_basis: DateBasis,
    ) -> Optional[BudgetReportRawData]:
        key = build_cache_key(self.family, start, end, date_basis)
        entry = self._get_entry(owner_user_id, key)
        if entry is None or entry.needs_refresh:
            return None

        try:
            parameter = decode_parameter(entry.parameter)
        except ValidationError:
            logger.warning(f"report_cache_bad_parameter: key={key} owner={owner_user_id}")
            return None
        if parameter is None or parameter != ReportCacheParameter(
            start=start, end=end, date_basis=date_basis
        ):
            return None

        try:
            return BudgetReportRawData.model_validate_json(entry.cache_value)
        except ValidationError:
            logger.warning(f"report_cache_bad_value: key={key} owner={owner_user_id}")
            return None

    def set_budget_report_raw_data(
        self,
        owner_user_id: int,
        start: date,
        end: date,
        date_basis: DateBasis,
        data: BudgetReportRawData,
        *,
        needs_refresh: bool = False,
        now: Optional[datetime] = None,
    ) -> ReportCacheEntry:
        key = build_cache_key(self.family, start, end, date_basis)
        value = data.model_dump_json()
        parameter = ReportCacheParameter(
            start=start, end=end, date_basis=date_basis
        ).model_dump_json()

        entry = self._get_entry(owner_user_id, key)
        if entry is None:
            entry = ReportCacheEntry(
                owner_user_id=owner_user_id,
                cache_key=key,
                cache_value=value,
                parameter=parameter,
                needs_refresh=needs_refresh,
            )
            self.session.add(entry)
        else:
            entry.update(value, parameter, needs_refresh, now)

        self.session.commit()
        return entry

    def mark_budget_report_entries_for_update(
        self,
        changed_from: date,
        changed_to: date,
        *,
        owner_user_id: Optional[int] = None,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> int:
        """Mark cached reports whose range intersects ``[changed_from, changed_to]``.

        Both bounds are inclusive calendar days. When ``owner_user_id`` is None
        every owner's entries are scanned. Entries whose parameter cannot be
        decoded are skipped. With ``commit=False`` the marks are only flushed
        and the caller owns the transaction. Returns the number of entries
        marked.
        """
        if changed_from > changed_to:
            raise ValueError("Start date must be on or before end date")

        stmt = select(ReportCacheEntry).where(
            ReportCacheEntry.needs_refresh.is_(False),
            ReportCacheEntry.cache_key.startswith(
                family_prefix(self.family), autoescape=True
            ),
        )
        if owner_user_id is not None:
            stmt = stmt.where(ReportCacheEntry.owner_user_id == owner_user_id)
        entries = self.session.scalars(stmt).all()

        marked = 0
        for entry in entries:
            try:
                parameter = decode_parameter(entry.parameter)
            except ValidationError:
                logger.warning(
                    f"report_cache_skip_entry: id={entry.id} key={entry.cache_key} "
                    "reason=malformed_parameter"
                )
                continue
            if parameter is None:
                logger.warning(
                    f"report_cache_skip_entry: id={entry.id} key={entry.cache_key} "
                    "reason=missing_parameter"
                )
                continue

            if parameter.overlaps(changed_from, changed_to):
                entry.mark_for_refresh(now)
                marked += 1

        if commit:
            self.session.commit()
        else:
            self.session.flush()
        logger.info(
            f"report_cache_invalidated: from={changed_from.isoformat()} "
            f"to={changed_to.isoformat()} scanned={len(entries)} marked={marked}"
        )
        return marked

    def mark_all_entries_for_update(
        self, owner_user_id: int, now: Optional[datetime] = None
    ) -> int:
        stmt = select(ReportCacheEntry).where(
            ReportCacheEntry.owner_user_id == owner_user_id,
            ReportCacheEntry.needs_refresh.is_(False),
            ReportCacheEntry.cache_key.startswith(
                family_prefix(self.family), autoescape=True
            ),
        )
        entries = self.session.scalars(stmt).all()
        if not entries:
            return 0
        for entry in entries:
            entry.mark_for_refresh(now)
        self.session.commit()
        return len(entries)

    def clear(self, owner_user_id: int) -> int:
        result = self.session.execute(
            delete(ReportCacheEntry).where(
                ReportCacheEntry.owner_user_id == owner_user_id
            )
        )
        self.session.commit()
        return result.rowcount or 0

    def count_entries_to_refresh(self, owner_user_id: Optional[int] = None) -> int:
        stmt = select(func.count(ReportCacheEntry.id)).where(
            ReportCacheEntry.needs_refresh.is_(True),
            ReportCacheEntry.cache_key.startswith(
                family_prefix(self.family), autoescape=True
            ),
        )
        if owner_user_id is not None:
            stmt = stmt.where(ReportCacheEntry.owner_user_id == owner_user_id)
        return self.session.scalar(stmt) or 0

    def next_entry_to_refresh(
        self, owner_user_id: Optional[int] = None
    ) -> Optional[tuple[int, ReportCacheParameter]]:
        """Oldest dirty entry as ``(owner_user_id, parameter)``.

        Dirty entries whose parameter cannot be decoded are passed over.
        """
        conditions = [
            ReportCacheEntry.needs_refresh.is_(True),
            ReportCacheEntry.cache_key.startswith(
                family_prefix(self.family), autoescape=True
            ),
        ]
        if owner_user_id is not None:
            conditions.append(ReportCacheEntry.owner_user_id == owner_user_id)
        stmt = (
            select(ReportCacheEntry)
            .where(*conditions)
            .order_by(ReportCacheEntry.created_at.asc(), ReportCacheEntry.id.asc())
        )
        for entry in self.session.scalars(stmt):
            try:
                parameter = decode_parameter(entry.parameter)
            except ValidationError:
                parameter = None
            if parameter is not None:
                return entry.owner_user_id, parameter
            logger.warning(
                f"report_cache_skip_entry: id={entry.id} key={entry.cache_key} "
                "reason=unreadable_parameter"
            )
        return None
