"""Cron jobs: the daily digest."""
import logging
from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from .logging_config import log_app_error
from .models import utcnow
from .services.digest import DigestGenerator

logger = logging.getLogger('callqc.scheduler')

DAILY_DIGEST_JOB_ID = "daily-digest"


def send_yesterdays_digest(digest: DigestGenerator) -> Optional[dict]:
    """Send the digest for the previous UTC day once per channel."""
    target = (utcnow() - timedelta(days=1)).date().isoformat()
    try:
        return digest.send_daily(target, dedupe=True)
    except Exception as e:
        log_app_error(logger, e, f"daily digest for {target}")
        return None


class DigestScheduler:
    """Runs the daily digest at a fixed UTC time."""

    def __init__(self, digest: DigestGenerator, hour: int = 9, minute: int = 0):
        self.digest = digest
        self.hour = hour
        self.minute = minute
        self.scheduler = BackgroundScheduler(
            timezone="UTC",
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 3600},
        )

    def start(self) -> None:
        if self.scheduler.running:
            return
        self.scheduler.add_job(
            send_yesterdays_digest,
            CronTrigger(hour=self.hour, minute=self.minute, timezone="UTC"),
            args=[self.digest],
            id=DAILY_DIGEST_JOB_ID,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Daily digest scheduled at {self.hour:02d}:{self.minute:02d} UTC")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def next_run(self) -> Optional[str]:
        job = self.scheduler.get_job(DAILY_DIGEST_JOB_ID)
        if job is None or job.next_run_time is None:
            return None
        return job.next_run_time.isoformat()
