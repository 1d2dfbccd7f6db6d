from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.orm import Session

from business_days import last_business_day
from holiday_calendars import HolidayProvider, resolve_holiday_provider
from models import (
    HolidayProviderKind,
    Notification,
    NotificationTarget,
    NotificationType,
    User,
)


logger = logging.getLogger(__name__)

MONTHLY_REMINDER_KEY = "monthly-reminder"
DEFAULT_REMINDER_HOUR = 9
DEFAULT_REMINDER_MINUTE = 0

REMINDER_TITLE = "Monthly closing reminder"
REMINDER_MESSAGE = (
    "Today is the last business day of the month. "
    "Review this month's postings and budgets before the month closes."
)


def user_zone(name: Optional[str]) -> ZoneInfo:
    if not name or not name.strip():
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"monthly_reminder_bad_timezone: tz={name} using=UTC")
        return ZoneInfo("UTC")


class MonthlyReminderJob:
    """Creates one reminder per user on the last business day of each month.

    The check runs in each user's local time. A reminder is created once the
    local clock has reached the user's trigger time on that day; repeated runs
    on the same local date find the existing notification and do nothing.
    """

    def __init__(
        self,
        holiday_resolver: Callable[
            [Optional[HolidayProviderKind]], HolidayProvider
        ] = resolve_holiday_provider,
    ) -> None:
        self.holiday_resolver = holiday_resolver

    def run(self, session: Session, now_utc: Optional[datetime] = None) -> int:
        now_utc = now_utc or datetime.now(timezone.utc)
        if now_utc.tzinfo is None:
            now_utc = now_utc.replace(tzinfo=timezone.utc)

        users = session.scalars(
            select(User).where(
                User.active.is_(True),
                User.monthly_reminder_enabled.is_(True),
            )
        ).all()

        created = 0
        for user in users:
            if self._remind(session, user, now_utc):
                created += 1

        if created:
            session.commit()
        logger.info(
            f"monthly_reminder_run: users={len(users)} created={created} "
            f"at={now_utc.isoformat()}"
        )
        return created

    def _remind(self, session: Session, user: User, now_utc: datetime) -> bool:
        local_now = now_utc.astimezone(user_zone(user.timezone))
        today = local_now.date()

        provider = self.holiday_resolver(user.holiday_provider_kind)
        due_day = last_business_day(
            today.year,
            today.month,
            provider,
            user.holiday_country_code,
            user.holiday_subdivision_code,
        )
        if today != due_day:
            return False

        hour = (
            user.monthly_reminder_hour
            if user.monthly_reminder_hour is not None
            else DEFAULT_REMINDER_HOUR
        )
        minute = (
            user.monthly_reminder_minute
            if user.monthly_reminder_minute is not None
            else DEFAULT_REMINDER_MINUTE
        )
        if (local_now.hour, local_now.minute) < (hour, minute):
            return False

        if self._already_sent(session, user.id, today):
            return False

        session.add(
            Notification(
                owner_user_id=user.id,
                title=REMINDER_TITLE,
                message=REMINDER_MESSAGE,
                type=NotificationType.monthly_reminder,
                target=NotificationTarget.home_page,
                scheduled_date=today,
                is_enabled=True,
                is_dismissed=False,
                trigger_event_key=MONTHLY_REMINDER_KEY,
            )
        )
        session.flush()
        return True

    @staticmethod
    def _already_sent(session: Session, user_id: int, day: date) -> bool:
        stmt = select(Notification.id).where(
            Notification.owner_user_id == user_id,
            Notification.type == NotificationType.monthly_reminder,
            Notification.scheduled_date == day,
            Notification.trigger_event_key == MONTHLY_REMINDER_KEY,
        )
        return session.scalar(stmt.limit(1)) is not None
