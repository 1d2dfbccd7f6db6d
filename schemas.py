from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import DateBasis, HolidayProviderKind, NotificationTarget, NotificationType


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    iban: Optional[str] = Field(default=None, max_length=34)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    monthly_budget_cents: Optional[int] = Field(default=None, ge=0)


class CategoryBudgetIn(BaseModel):
    monthly_budget_cents: Optional[int] = Field(default=None, ge=0)


class PostingIn(BaseModel):
    booking_date: date
    valuta_date: Optional[date] = None
    amount_cents: int
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    subject: Optional[str] = Field(default=None, max_length=200)
    recipient_name: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)


class PostingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    booking_date: date
    valuta_date: date
    amount_cents: int
    account_id: Optional[int]
    category_id: Optional[int]
    subject: Optional[str]
    recipient_name: Optional[str]
    description: Optional[str]


class ReportCacheParameter(BaseModel):
    """Range and date basis a cached report was computed for."""

    model_config = ConfigDict(frozen=True)

    start: date
    end: date
    date_basis: DateBasis

    @model_validator(mode="after")
    def _check_order(self) -> "ReportCacheParameter":
        if self.start > self.end:
            raise ValueError("Start date must be on or before end date")
        return self

    def overlaps(self, start: date, end: date) -> bool:
        return self.start <= end and start <= self.end


class BudgetCategoryLine(BaseModel):
    category_id: int
    name: str
    budget_cents: Optional[int] = None
    spent_cents: int = 0


class BudgetMonth(BaseModel):
    month: str
    categories: list[BudgetCategoryLine] = Field(default_factory=list)
    uncategorized_cents: int = 0


class BudgetReportRawData(BaseModel):
    start: date
    end: date
    date_basis: DateBasis
    months: list[BudgetMonth] = Field(default_factory=list)


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    message: str
    type: NotificationType
    target: NotificationTarget
    scheduled_date: date
    is_dismissed: bool
    created_at: datetime
    trigger_event_key: Optional[str]


class NotificationSettingsIn(BaseModel):
    monthly_reminder_enabled: bool = False
    monthly_reminder_hour: Optional[int] = Field(default=None, ge=0, le=23)
    monthly_reminder_minute: Optional[int] = Field(default=None, ge=0, le=59)
    timezone: Optional[str] = Field(default=None, max_length=64)
    holiday_country_code: Optional[str] = Field(default=None, max_length=10)
    holiday_subdivision_code: Optional[str] = Field(default=None, max_length=20)
    holiday_provider_kind: HolidayProviderKind = HolidayProviderKind.memory


class AnnouncementIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=140)
    message: str = Field(..., min_length=1, max_length=1000)
    scheduled_date: Optional[date] = None


class IpBlockIn(BaseModel):
    ip_address: str = Field(..., min_length=1, max_length=64)
    reason: Optional[str] = Field(default=None, max_length=200)
    is_blocked: bool = True


class IpBlockUpdate(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=200)
    is_blocked: Optional[bool] = None


class IpBlockOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ip_address: str
    is_blocked: bool
    blocked_at: Optional[datetime]
    block_reason: Optional[str]
    unknown_user_failed_attempts: int
    unknown_user_last_failed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime
