import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from notifications import NotificationSweep, WebPushSender


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        self.settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        if not self.settings.push_enabled:
            logger.info(f"scheduler_run: source={source} skipped=vapid_keys_missing")
            return
        logger.info(f"scheduler_run: source={source}")
        try:
            with session_scope() as session:
                sweep = NotificationSweep.from_settings(
                    session, WebPushSender(self.settings), self.settings
                )
                result = sweep.run()
        except Exception:
            logger.exception(f"scheduler_run: source={source} sweep_failed")
            return
        logger.info(f"scheduler_run: source={source} sent={result.sent}")

    def start(self) -> None:
        self._run_job("startup")

        trigger = IntervalTrigger(minutes=self.settings.sweep_interval_minutes)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval"],
            id="notification_sweep",
            replace_existing=True,
            misfire_grace_time=300,
            max_instances=1,
        )

        self.scheduler.start()
        logger.info(
            "Scheduler started with notification sweep every "
            f"{self.settings.sweep_interval_minutes} minutes"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
