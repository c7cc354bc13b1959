import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import Store
from services import perform_monthly_rollover, post_recurring_expenses


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Owns the background jobs; both are safe to run more often than needed."""

    def __init__(self, store: Store) -> None:
        settings = get_settings()
        self.store = store
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_rollover(self, source: str = "manual") -> None:
        logger.info(f"rollover_run: source={source}")
        try:
            result = perform_monthly_rollover(self.store)
        except Exception:
            logger.exception(f"rollover_run_failed: source={source}")
            return
        logger.info(
            f"rollover_run: source={source} reset={result.reset_count} "
            f"created={result.created_count} errors={len(result.errors)}"
        )

    def _run_recurring(self, source: str = "manual") -> None:
        logger.info(f"recurring_run: source={source}")
        try:
            count = post_recurring_expenses(self.store)
        except Exception:
            logger.exception(f"recurring_run_failed: source={source}")
            return
        logger.info(f"recurring_run: source={source} occurrences_posted={count}")

    def start(self) -> None:
        self._run_rollover("startup")
        self._run_recurring("startup")

        self.scheduler.add_job(
            self._run_rollover,
            CronTrigger(day=1, hour=0, minute=5),
            args=["monthly_day1"],
            id="rollover_monthly",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._run_recurring,
            CronTrigger(hour=3, minute=15),
            args=["daily_03:15"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._run_rollover,
            IntervalTrigger(hours=1),
            args=["hourly_safety_net"],
            id="rollover_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with monthly rollover, daily recurring and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
