import logging
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from reminders import MonthlyReminderJob
from tasks import BackgroundTaskManager, TaskType


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, task_manager: BackgroundTaskManager) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.task_manager = task_manager
        self.cache_refresh_minutes = settings.cache_refresh_minutes
        self.reminder_job = MonthlyReminderJob()

    def _run_reminders(self, source: str = "manual", now: Optional[datetime] = None) -> int:
        logger.info(f"reminder_run: source={source}")
        try:
            with session_scope() as session:
                count = self.reminder_job.run(session, now or datetime.now(timezone.utc))
        except Exception:
            logger.exception(f"reminder_run_failed: source={source}")
            return 0
        logger.info(f"reminder_run: source={source} created={count}")
        return count

    def _refresh_cache(self, source: str = "manual") -> None:
        status = self.task_manager.enqueue(TaskType.refresh_report_cache, None)
        logger.info(f"cache_refresh: source={source} task={status.id}")
        # drains this sweep and anything the API queued meanwhile
        while self.task_manager.run_next() is not None:
            pass

    def start(self) -> None:
        self._run_reminders("startup")

        # a reminder goes out on the first run at or after the user's local time
        trigger = CronTrigger(minute="*/15")
        self.scheduler.add_job(
            self._run_reminders,
            trigger,
            args=["quarter_hourly"],
            id="monthly_reminders",
            replace_existing=True,
            misfire_grace_time=600,
        )

        trigger = IntervalTrigger(minutes=self.cache_refresh_minutes)
        self.scheduler.add_job(
            self._refresh_cache,
            trigger,
            args=["interval"],
            id="report_cache_refresh",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started: reminders every 15 minutes, cache refresh every "
            f"{self.cache_refresh_minutes} minutes"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
