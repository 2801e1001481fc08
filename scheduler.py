import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from errors import LedgerError
from periods import local_today, month_of
from services import ServiceContainer


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, services: ServiceContainer) -> None:
        self.services = services
        self.scheduler = AsyncIOScheduler(timezone=services.settings.timezone)

    async def run_job(self, source: str = "manual") -> Optional[int]:
        month = month_of(local_today(self.services.settings.timezone))
        logger.info(f"scheduler_run: source={source} month={month}")
        ledger = await self.services.months.get_month(month)
        if ledger is None or ledger.is_read_only:
            logger.info(f"scheduler_run: source={source} month={month} skipped=1")
            return None
        try:
            added = await self.services.months.sync_month(month)
        except LedgerError:
            logger.exception(f"scheduler_run_failed: source={source} month={month}")
            return None
        logger.info(f"scheduler_run: source={source} month={month} instances_added={len(added)}")
        return len(added)

    def start(self) -> None:
        self.scheduler.add_job(
            self.run_job, args=["startup"], id="month_sync_startup", replace_existing=True
        )

        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self.run_job,
            trigger,
            args=["daily_03:15"],
            id="month_sync_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self.run_job,
            trigger,
            args=["hourly_safety_net"],
            id="month_sync_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 03:15 and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler shutdown requested")
