"""
Ticker: named interval tasks on an APScheduler BackgroundScheduler.

Each task runs at most one instance at a time and missed runs are coalesced,
so a slow tick never piles up behind itself.
"""
from datetime import datetime
from typing import Callable, Dict, Optional

import pytz
import structlog
from apscheduler.schedulers.background import BackgroundScheduler

from ..config import settings

logger = structlog.get_logger(__name__)


class Ticker:
    def __init__(self, scheduler: Optional[BackgroundScheduler] = None, timezone: Optional[str] = None):
        self.tz = pytz.timezone(timezone or settings.tz_default)
        self.scheduler = scheduler or BackgroundScheduler(
            timezone=self.tz,
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 300,
            },
        )

    def every(self, name: str, minutes: int, fn: Callable[[], object], run_immediately: bool = False) -> None:
        kwargs = {}
        if run_immediately:
            kwargs["next_run_time"] = datetime.now(self.tz)
        self.scheduler.add_job(
            self._wrap(name, fn),
            "interval",
            minutes=minutes,
            id=name,
            name=name,
            replace_existing=True,
            **kwargs,
        )
        logger.info("Task scheduled", task=name, interval_minutes=minutes)

    def cancel(self, name: str) -> bool:
        """Remove a task; a tick already running finishes."""
        if self.scheduler.get_job(name) is None:
            return False
        self.scheduler.remove_job(name)
        logger.info("Task cancelled", task=name)
        return True

    def _wrap(self, name: str, fn: Callable[[], object]) -> Callable[[], None]:
        def _run():
            try:
                fn()
            except Exception:
                logger.exception("Scheduled task failed", task=name)
        _run.__name__ = f"tick_{name}"
        return _run

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()

    def shutdown(self, wait: bool = True) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)

    @property
    def running(self) -> bool:
        return bool(self.scheduler.running)

    def jobs(self) -> Dict[str, Optional[str]]:
        """Scheduled task names with their next run time."""
        result = {}
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            result[job.id] = next_run.isoformat() if next_run else None
        return result
