import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from config import get_settings
from database import session_scope
from recurrence import local_today
from services import refresh_stale_aggregates


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Background refresh of the current month's dashboard snapshots."""

    def __init__(self, session_factory: sessionmaker) -> None:
        settings = get_settings()
        self.session_factory = session_factory
        self.interval_minutes = settings.aggregate_refresh_minutes
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual", now: Optional[datetime] = None) -> int:
        today = local_today()
        logger.info(f"scheduler_run: source={source}")
        with session_scope(self.session_factory) as session:
            count = refresh_stale_aggregates(session, today.year, today.month, now=now)
        logger.info(f"scheduler_run: source={source} snapshots_rebuilt={count}")
        return count

    def start(self) -> None:
        trigger = IntervalTrigger(minutes=self.interval_minutes)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval"],
            id="aggregate_refresh",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with aggregate refresh every {self.interval_minutes} min"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
