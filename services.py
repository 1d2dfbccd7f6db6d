from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from csv_utils import export_postings
from ip_blocks import (
    block_address,
    counter_of,
    register_failure,
    reset_counters,
    store_counter,
    unblock_address,
)
from models import (
    Account,
    Category,
    DateBasis,
    IpBlock,
    Notification,
    NotificationTarget,
    NotificationType,
    Posting,
    User,
)
from periods import Period, iter_months
from report_cache import ReportCacheService
from schemas import (
    AccountIn,
    BudgetCategoryLine,
    BudgetMonth,
    BudgetReportRawData,
    CategoryIn,
    IpBlockIn,
    IpBlockUpdate,
    NotificationSettingsIn,
    PostingIn,
)


logger = logging.getLogger(__name__)


def get_current_user_id() -> int:
    return get_settings().default_user_id


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(func.lower(Account.name))
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise ValueError("Account not found")
        return account

    def _ensure_unique_name(self, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(Account).where(
            Account.user_id == self.user_id,
            func.lower(Account.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Account.id != exclude_id)
        if self.session.scalar(stmt):
            raise ValueError("Account with this name already exists")

    def create(self, data: AccountIn) -> Account:
        name = data.name.strip()
        if not name:
            raise ValueError("Account name cannot be empty")
        self._ensure_unique_name(name)
        account = Account(
            user_id=self.user_id,
            name=name,
            iban=(data.iban or "").replace(" ", "").upper() or None,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: AccountIn) -> Account:
        account = self.get(account_id)
        name = data.name.strip()
        if not name:
            raise ValueError("Account name cannot be empty")
        self._ensure_unique_name(name, exclude_id=account.id)
        account.name = name
        account.iban = (data.iban or "").replace(" ", "").upper() or None
        self.session.commit()
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        has_postings = self.session.scalar(
            select(Posting.id).where(Posting.account_id == account.id).limit(1)
        )
        if has_postings:
            raise ValueError("Account has postings and cannot be deleted")
        self.session.delete(account)
        self.session.commit()


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, include_archived: bool = False) -> list[Category]:
        stmt = select(Category).where(Category.user_id == self.user_id)
        if not include_archived:
            stmt = stmt.where(Category.archived_at.is_(None))
        return self.session.scalars(stmt.order_by(func.lower(Category.name))).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if not name:
            raise ValueError("Category name cannot be empty")
        exists = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                func.lower(Category.name) == name.lower(),
            )
        )
        if exists:
            raise ValueError("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=name,
            monthly_budget_cents=data.monthly_budget_cents,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def set_budget(self, category_id: int, monthly_budget_cents: Optional[int]) -> Category:
        if monthly_budget_cents is not None and monthly_budget_cents < 0:
            raise ValueError("Budget must be positive")
        category = self.get(category_id)
        category.monthly_budget_cents = monthly_budget_cents
        self.session.commit()
        # budgets are part of every cached report of this owner
        ReportCacheService(self.session).mark_all_entries_for_update(self.user_id)
        return category

    def archive(self, category_id: int) -> None:
        category = self.get(category_id)
        category.archived_at = datetime.utcnow()
        self.session.commit()

    def restore(self, category_id: int) -> None:
        category = self.get(category_id)
        category.archived_at = None
        self.session.commit()


@dataclass
class PostingFilters:
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    query: Optional[str] = None


class PostingService:
    """Posting CRUD. Every mutation invalidates cached reports over its dates."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.report_cache = ReportCacheService(session)

    def _validate_refs(self, data: PostingIn) -> None:
        if data.account_id is not None:
            account = self.session.get(Account, data.account_id)
            if not account or account.user_id != self.user_id:
                raise ValueError("Account not found")
        if data.category_id is not None:
            category = self.session.get(Category, data.category_id)
            if not category or category.user_id != self.user_id:
                raise ValueError("Category not found")

    def _commit_with_invalidation(self, *spans: tuple[date, date]) -> None:
        # the posting change and the dirty flags land in one transaction
        try:
            self.session.flush()
            for start, end in dict.fromkeys(spans):
                self.report_cache.mark_budget_report_entries_for_update(
                    start, end, commit=False
                )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def get(self, posting_id: int) -> Posting:
        posting = self.session.get(Posting, posting_id)
        if not posting or posting.user_id != self.user_id:
            raise ValueError("Posting not found")
        return posting

    def create(self, data: PostingIn) -> Posting:
        self._validate_refs(data)
        posting = Posting(
            user_id=self.user_id,
            account_id=data.account_id,
            category_id=data.category_id,
            booking_date=data.booking_date,
            valuta_date=data.valuta_date or data.booking_date,
            amount_cents=data.amount_cents,
            subject=(data.subject or "").strip() or None,
            recipient_name=(data.recipient_name or "").strip() or None,
            description=data.description,
        )
        self.session.add(posting)
        self._commit_with_invalidation(posting.date_span)
        self.session.refresh(posting)
        return posting

    def update(self, posting_id: int, data: PostingIn) -> Posting:
        posting = self.get(posting_id)
        self._validate_refs(data)
        old_span = posting.date_span

        posting.account_id = data.account_id
        posting.category_id = data.category_id
        posting.booking_date = data.booking_date
        posting.valuta_date = data.valuta_date or data.booking_date
        posting.amount_cents = data.amount_cents
        posting.subject = (data.subject or "").strip() or None
        posting.recipient_name = (data.recipient_name or "").strip() or None
        posting.description = data.description
        self._commit_with_invalidation(old_span, posting.date_span)
        self.session.refresh(posting)
        return posting

    def delete(self, posting_id: int) -> None:
        posting = self.get(posting_id)
        span = posting.date_span
        self.session.delete(posting)
        self._commit_with_invalidation(span)

    def list(
        self,
        period: Period,
        filters: Optional[PostingFilters] = None,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Posting]:
        filters = filters or PostingFilters()
        stmt = (
            select(Posting)
            .options(joinedload(Posting.account), joinedload(Posting.category))
            .where(
                Posting.user_id == self.user_id,
                Posting.booking_date.between(period.start, period.end),
            )
            .order_by(Posting.booking_date.desc(), Posting.id.desc())
        )
        if filters.account_id is not None:
            stmt = stmt.where(Posting.account_id == filters.account_id)
        if filters.category_id is not None:
            stmt = stmt.where(Posting.category_id == filters.category_id)
        if filters.query:
            term = filters.query.strip()
            stmt = stmt.where(
                or_(
                    Posting.subject.icontains(term, autoescape=True),
                    Posting.recipient_name.icontains(term, autoescape=True),
                    Posting.description.icontains(term, autoescape=True),
                )
            )
        if limit is not None:
            stmt = stmt.limit(limit).offset(offset)
        return self.session.scalars(stmt).all()

    def export_csv(self, period: Period, filters: Optional[PostingFilters] = None) -> str:
        return export_postings(self.list(period, filters))


class BudgetReportService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.report_cache = ReportCacheService(session)

    def get_raw_data(
        self,
        start: date,
        end: date,
        date_basis: DateBasis = DateBasis.booking_date,
        *,
        ignore_cache: bool = False,
    ) -> BudgetReportRawData:
        if start > end:
            raise ValueError("Start date must be on or before end date")

        if not ignore_cache:
            cached = self.report_cache.get_budget_report_raw_data(
                self.user_id, start, end, date_basis
            )
            if cached is not None:
                return cached

        data = self._compute(start, end, date_basis)
        self.report_cache.set_budget_report_raw_data(
            self.user_id, start, end, date_basis, data, needs_refresh=False
        )
        return data

    def _compute(
        self, start: date, end: date, date_basis: DateBasis
    ) -> BudgetReportRawData:
        date_column = (
            Posting.valuta_date
            if date_basis == DateBasis.valuta_date
            else Posting.booking_date
        )
        rows = self.session.execute(
            select(date_column, Posting.category_id, Posting.amount_cents).where(
                Posting.user_id == self.user_id,
                date_column.between(start, end),
            )
        ).all()

        spent: dict[tuple[date, Optional[int]], int] = defaultdict(int)
        for day, category_id, amount_cents in rows:
            spent[(day.replace(day=1), category_id)] += amount_cents

        categories = self.session.scalars(
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(func.lower(Category.name))
        ).all()

        months: list[BudgetMonth] = []
        for first in iter_months(start, end):
            lines = [
                BudgetCategoryLine(
                    category_id=category.id,
                    name=category.name,
                    budget_cents=category.monthly_budget_cents,
                    spent_cents=spent.get((first, category.id), 0),
                )
                for category in categories
                if category.archived_at is None or (first, category.id) in spent
            ]
            months.append(
                BudgetMonth(
                    month=first.strftime("%Y-%m"),
                    categories=lines,
                    uncategorized_cents=spent.get((first, None), 0),
                )
            )
        return BudgetReportRawData(
            start=start, end=end, date_basis=date_basis, months=months
        )


class NotificationService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_active(self, as_of: Optional[date] = None) -> list[Notification]:
        as_of = as_of or datetime.utcnow().date()
        stmt = (
            select(Notification)
            .where(
                or_(
                    Notification.owner_user_id == self.user_id,
                    Notification.owner_user_id.is_(None),
                ),
                Notification.is_enabled.is_(True),
                Notification.is_dismissed.is_(False),
                Notification.scheduled_date <= as_of,
            )
            .order_by(Notification.scheduled_date.desc(), Notification.created_at.desc())
        )
        return self.session.scalars(stmt).all()

    def dismiss(self, notification_id: int) -> bool:
        notification = self.session.get(Notification, notification_id)
        if notification is None or notification.owner_user_id not in (
            self.user_id,
            None,
        ):
            return False
        notification.is_dismissed = True
        self.session.commit()
        return True


class NotificationWriter:
    """Creates notifications on behalf of other services.

    A failed write is logged and rolled back; alerting never fails the caller.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _write(self, notifications: list[Notification]) -> None:
        if not notifications:
            return
        try:
            self.session.add_all(notifications)
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.exception("notification_write_failed")

    def create_for_user(
        self,
        owner_user_id: int,
        title: str,
        message: str,
        type: NotificationType,
        scheduled_date: date,
        *,
        target: NotificationTarget = NotificationTarget.home_page,
        trigger_event_key: Optional[str] = None,
    ) -> None:
        self._write(
            [
                Notification(
                    owner_user_id=owner_user_id,
                    title=title,
                    message=message,
                    type=type,
                    target=target,
                    scheduled_date=scheduled_date,
                    trigger_event_key=trigger_event_key,
                )
            ]
        )

    def create_for_admins(
        self,
        title: str,
        message: str,
        type: NotificationType,
        scheduled_date: date,
        *,
        target: NotificationTarget = NotificationTarget.home_page,
        trigger_event_key: Optional[str] = None,
    ) -> None:
        admin_ids = self.session.scalars(
            select(User.id).where(User.is_admin.is_(True), User.active.is_(True))
        ).all()
        self._write(
            [
                Notification(
                    owner_user_id=admin_id,
                    title=title,
                    message=message,
                    type=type,
                    target=target,
                    scheduled_date=scheduled_date,
                    trigger_event_key=trigger_event_key,
                )
                for admin_id in admin_ids
            ]
        )

    def create_global(
        self,
        title: str,
        message: str,
        type: NotificationType,
        scheduled_date: date,
        *,
        target: NotificationTarget = NotificationTarget.home_page,
    ) -> None:
        self._write(
            [
                Notification(
                    owner_user_id=None,
                    title=title,
                    message=message,
                    type=type,
                    target=target,
                    scheduled_date=scheduled_date,
                )
            ]
        )


class UserService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self) -> User:
        user = self.session.get(User, self.user_id)
        if not user:
            raise ValueError("User not found")
        return user

    @staticmethod
    def _normalize_code(value: Optional[str], min_len: int, max_len: int) -> Optional[str]:
        if not value or not value.strip():
            return None
        clean = value.strip()
        if len(clean) < min_len or len(clean) > max_len:
            raise ValueError(f"Code must be between {min_len} and {max_len} characters")
        return clean.upper()

    def update_notification_settings(self, data: NotificationSettingsIn) -> User:
        user = self.get()
        if data.timezone:
            try:
                ZoneInfo(data.timezone)
            except (ZoneInfoNotFoundError, ValueError) as exc:
                raise ValueError("Unknown time zone") from exc

        user.monthly_reminder_enabled = data.monthly_reminder_enabled
        user.monthly_reminder_hour = data.monthly_reminder_hour
        user.monthly_reminder_minute = data.monthly_reminder_minute
        user.timezone = data.timezone or None
        user.holiday_country_code = self._normalize_code(data.holiday_country_code, 2, 10)
        user.holiday_subdivision_code = self._normalize_code(
            data.holiday_subdivision_code, 2, 20
        )
        user.holiday_provider_kind = data.holiday_provider_kind
        self.session.commit()
        self.session.refresh(user)
        return user


class IpBlockService:
    def __init__(self, session: Session) -> None:
        self.session = session
        settings = get_settings()
        self.threshold = settings.ip_block_threshold
        self.reset_window = timedelta(minutes=settings.ip_block_reset_minutes)
        self.notifications = NotificationWriter(session)

    def list(self, only_blocked: bool = False) -> list[IpBlock]:
        stmt = select(IpBlock).order_by(
            IpBlock.is_blocked.desc(),
            IpBlock.unknown_user_last_failed_at.desc(),
            IpBlock.ip_address.asc(),
        )
        if only_blocked:
            stmt = stmt.where(IpBlock.is_blocked.is_(True))
        return self.session.scalars(stmt).all()

    def get(self, block_id: int) -> IpBlock:
        block = self.session.get(IpBlock, block_id)
        if not block:
            raise ValueError("IP block not found")
        return block

    def _by_address(self, ip_address: str) -> Optional[IpBlock]:
        return self.session.scalar(
            select(IpBlock).where(IpBlock.ip_address == ip_address)
        )

    def is_blocked(self, ip_address: str) -> bool:
        block = self._by_address(ip_address.strip())
        return bool(block and block.is_blocked)

    def create(self, data: IpBlockIn, now: Optional[datetime] = None) -> IpBlock:
        ip_address = data.ip_address.strip()
        if not ip_address:
            raise ValueError("IP address cannot be empty")
        if self._by_address(ip_address):
            raise ValueError("IP already exists in block list")
        block = IpBlock(ip_address=ip_address)
        if data.is_blocked:
            block_address(block, now or datetime.utcnow(), data.reason)
        self.session.add(block)
        self.session.commit()
        self.session.refresh(block)
        if block.is_blocked:
            self._notify_admins(block)
        return block

    def update(
        self, block_id: int, data: IpBlockUpdate, now: Optional[datetime] = None
    ) -> IpBlock:
        block = self.get(block_id)
        was_blocked = block.is_blocked
        now = now or datetime.utcnow()
        if data.is_blocked is True and not block.is_blocked:
            block_address(block, now, data.reason)
        elif data.is_blocked is False and block.is_blocked:
            unblock_address(block)
        elif data.is_blocked is None and data.reason is not None and block.is_blocked:
            block_address(block, now, data.reason)
        self.session.commit()
        if block.is_blocked and not was_blocked:
            self._notify_admins(block)
        return block

    def block(
        self, block_id: int, reason: Optional[str] = None, now: Optional[datetime] = None
    ) -> IpBlock:
        block = self.get(block_id)
        if not block.is_blocked:
            block_address(block, now or datetime.utcnow(), reason)
            self.session.commit()
            self._notify_admins(block)
        return block

    def unblock(self, block_id: int) -> IpBlock:
        block = self.get(block_id)
        if block.is_blocked:
            unblock_address(block)
            self.session.commit()
        return block

    def reset_counters(self, block_id: int) -> IpBlock:
        block = self.get(block_id)
        store_counter(block, reset_counters())
        self.session.commit()
        return block

    def delete(self, block_id: int) -> None:
        block = self.get(block_id)
        self.session.delete(block)
        self.session.commit()

    def register_unknown_user_failure(
        self, ip_address: str, now: Optional[datetime] = None
    ) -> Optional[IpBlock]:
        ip_address = (ip_address or "").strip()
        if not ip_address:
            return None
        now = now or datetime.utcnow()
        block = self._by_address(ip_address)
        if block is None:
            block = IpBlock(ip_address=ip_address, unknown_user_failed_attempts=0)
            self.session.add(block)

        state = register_failure(counter_of(block), now, self.reset_window)
        store_counter(block, state)
        newly_blocked = False
        if state.attempts >= self.threshold and not block.is_blocked:
            block_address(block, now, "Unknown user failures threshold reached")
            newly_blocked = True
        self.session.commit()

        if newly_blocked:
            logger.warning(
                f"ip_blocked: ip={ip_address} attempts={state.attempts} "
                "reason=unknown_user_threshold"
            )
            self._notify_admins(block)
        return block

    def block_by_address(
        self, ip_address: str, reason: Optional[str] = None, now: Optional[datetime] = None
    ) -> Optional[IpBlock]:
        ip_address = (ip_address or "").strip()
        if not ip_address:
            return None
        block = self._by_address(ip_address)
        if block is None:
            block = IpBlock(ip_address=ip_address, unknown_user_failed_attempts=0)
            self.session.add(block)
        block_address(block, now or datetime.utcnow(), reason)
        self.session.commit()
        self._notify_admins(block)
        return block

    def _notify_admins(self, block: IpBlock) -> None:
        message = f"The IP address {block.ip_address} has been blocked."
        if block.block_reason:
            message = f"{message} Reason: {block.block_reason}"
        self.notifications.create_for_admins(
            "Security alert: IP blocked",
            message,
            NotificationType.system_alert,
            (block.blocked_at or datetime.utcnow()).date(),
            trigger_event_key=f"setup:ip-blocks?focus={block.ip_address}",
        )
