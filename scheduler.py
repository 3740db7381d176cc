import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from balances import BalanceAggregator
from config import get_settings
from database import session_scope


logger = logging.getLogger(__name__)


class SchedulerManager:
    """Periodic repair of cached wallet balances.

    Nothing in this package starts it; the embedding application calls
    ``start()`` on boot and ``stop()`` on shutdown.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        settings = get_settings()
        self.session_factory = session_factory
        self.interval_minutes = settings.reconcile_interval_minutes
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"reconcile_run: source={source}")
        with session_scope(self.session_factory) as session:
            repaired = BalanceAggregator(session).repair_stale()
        logger.info(f"reconcile_run: source={source} wallets_repaired={repaired}")
        return repaired

    def start(self) -> None:
        self._run_job("startup")

        trigger = IntervalTrigger(minutes=self.interval_minutes)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval"],
            id="reconcile_balances",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with balance reconcile every {self.interval_minutes} minutes"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
