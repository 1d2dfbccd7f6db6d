from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class DateBasis(str, Enum):
    booking_date = "BookingDate"
    valuta_date = "ValutaDate"


class HolidayProviderKind(str, Enum):
    memory = "memory"
    nager_date = "nager_date"


class NotificationType(str, Enum):
    monthly_reminder = "monthly_reminder"
    system_alert = "system_alert"


class NotificationTarget(str, Enum):
    home_page = "home_page"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    timezone: Mapped[Optional[str]] = mapped_column(String(64))

    monthly_reminder_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    monthly_reminder_hour: Mapped[Optional[int]] = mapped_column(Integer)
    monthly_reminder_minute: Mapped[Optional[int]] = mapped_column(Integer)
    holiday_country_code: Mapped[Optional[str]] = mapped_column(String(10))
    holiday_subdivision_code: Mapped[Optional[str]] = mapped_column(String(20))
    holiday_provider_kind: Mapped[HolidayProviderKind] = mapped_column(
        SAEnum(HolidayProviderKind),
        default=HolidayProviderKind.memory,
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint(
            "monthly_reminder_hour IS NULL OR "
            "(monthly_reminder_hour >= 0 AND monthly_reminder_hour <= 23)",
            name="ck_user_reminder_hour_range",
        ),
        CheckConstraint(
            "monthly_reminder_minute IS NULL OR "
            "(monthly_reminder_minute >= 0 AND monthly_reminder_minute <= 59)",
            name="ck_user_reminder_minute_range",
        ),
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    iban: Mapped[Optional[str]] = mapped_column(String(34))

    postings: Mapped[list["Posting"]] = relationship(
        "Posting", back_populates="account"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_account_user_name"),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    monthly_budget_cents: Mapped[Optional[int]] = mapped_column(Integer)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    postings: Mapped[list["Posting"]] = relationship(
        "Posting", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_category_user_name"),
        CheckConstraint(
            "monthly_budget_cents IS NULL OR monthly_budget_cents >= 0",
            name="ck_category_budget_positive",
        ),
    )


class Posting(Base, TimestampMixin):
    __tablename__ = "postings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    valuta_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(String(200))
    recipient_name: Mapped[Optional[str]] = mapped_column(String(200))
    description: Mapped[Optional[str]] = mapped_column(Text)

    account: Mapped[Optional["Account"]] = relationship(
        "Account", back_populates="postings"
    )
    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="postings"
    )

    __table_args__ = (
        Index("ix_postings_user_booking", "user_id", "booking_date"),
        Index("ix_postings_user_valuta", "user_id", "valuta_date"),
        Index("ix_postings_user_account_booking", "user_id", "account_id", "booking_date"),
    )

    @property
    def date_span(self) -> tuple[date, date]:
        return (
            min(self.booking_date, self.valuta_date),
            max(self.booking_date, self.valuta_date),
        )


class ReportCacheEntry(Base, TimestampMixin):
    """Cached report payload for one owner and one cache key.

    ``parameter`` carries the JSON-encoded range the value was computed for and
    is what invalidation reads; ``cache_key`` is the lookup handle.
    """

    __tablename__ = "report_cache_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    cache_key: Mapped[str] = mapped_column(String(200), nullable=False)
    cache_value: Mapped[str] = mapped_column(Text, nullable=False)
    parameter: Mapped[str] = mapped_column(Text, nullable=False, default="")
    needs_refresh: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("owner_user_id", "cache_key", name="uq_report_cache_owner_key"),
        Index("ix_report_cache_refresh_created", "needs_refresh", "created_at"),
    )

    def __init__(
        self,
        *,
        owner_user_id: int,
        cache_key: str,
        cache_value: str,
        parameter: Optional[str] = None,
        needs_refresh: bool = False,
    ) -> None:
        if not cache_key or not cache_key.strip():
            raise ValueError("Cache key cannot be empty")
        if not cache_value or not cache_value.strip():
            raise ValueError("Cache value cannot be empty")
        super().__init__(
            owner_user_id=owner_user_id,
            cache_key=cache_key,
            cache_value=cache_value,
            parameter=parameter or "",
            needs_refresh=needs_refresh,
        )

    def update(
        self,
        cache_value: str,
        parameter: Optional[str],
        needs_refresh: bool,
        now: Optional[datetime] = None,
    ) -> None:
        if not cache_value or not cache_value.strip():
            raise ValueError("Cache value cannot be empty")
        self.cache_value = cache_value
        self.parameter = parameter or ""
        self.needs_refresh = needs_refresh
        self.updated_at = now or datetime.utcnow()

    def mark_for_refresh(self, now: Optional[datetime] = None) -> None:
        self.needs_refresh = True
        self.updated_at = now or datetime.utcnow()


class Notification(Base, TimestampMixin):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_user_id: Mapped[Optional[int]] = mapped_column(Integer)
    title: Mapped[str] = mapped_column(String(140), nullable=False)
    message: Mapped[str] = mapped_column(String(1000), nullable=False)
    type: Mapped[NotificationType] = mapped_column(
        SAEnum(NotificationType), nullable=False
    )
    target: Mapped[NotificationTarget] = mapped_column(
        SAEnum(NotificationTarget), default=NotificationTarget.home_page, nullable=False
    )
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_dismissed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    trigger_event_key: Mapped[Optional[str]] = mapped_column(String(120))

    __table_args__ = (
        Index(
            "ix_notifications_owner_type_date",
            "owner_user_id",
            "type",
            "scheduled_date",
        ),
    )


class IpBlock(Base, TimestampMixin):
    __tablename__ = "ip_blocks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    is_blocked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    blocked_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    block_reason: Mapped[Optional[str]] = mapped_column(String(200))
    unknown_user_failed_attempts: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    unknown_user_last_failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
