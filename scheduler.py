import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from services import AuditService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Runs the ledger consistency audit in the background. Read-only."""

    def __init__(self) -> None:
        settings = get_settings()
        self.interval_minutes = settings.audit_interval_minutes
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_audit(self, source: str = "manual") -> int:
        logger.info(f"audit_run: source={source}")
        found = 0
        with session_scope(readonly=True) as session:
            for user_id in AuditService.owners(session):
                problems = AuditService(session, user_id).audit()
                for problem in problems:
                    logger.warning(f"audit_violation: user={user_id} {problem}")
                found += len(problems)
        logger.info(f"audit_run: source={source} violations={found}")
        return found

    def start(self) -> None:
        self._run_audit("startup")

        trigger = IntervalTrigger(minutes=self.interval_minutes)
        self.scheduler.add_job(
            self._run_audit,
            trigger,
            args=["interval"],
            id="ledger_audit",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with ledger audit every {self.interval_minutes} minutes"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
