"""
Overlapping-window poller for the terminal punch source.

Each tick fetches [now - retrieval, now]. With retrieval >= 2 x interval the
window always re-covers the tail of the previous one, so a record that shows
up late at the source is still picked up. Duplicates from the overlap are
dropped by the duplicate preventer.
"""
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..exceptions import LedgerConflictError, PunchSourceError, TransientSourceError
from .events import FaultBus
from .ingest import IngestResult, PunchIngestor
from .punch_source import PunchEvent, PunchSource
from .time_rules import now_local

logger = structlog.get_logger(__name__)


@dataclass
class PollWindow:
    window_start: datetime
    window_end: datetime
    overlap_minutes: int
    executed_at: datetime
    records_returned: int = 0

    def to_dict(self) -> dict:
        return {
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "overlap_minutes": self.overlap_minutes,
            "executed_at": self.executed_at.isoformat(),
            "records_returned": self.records_returned,
        }


class Poller:
    def __init__(
        self,
        source: PunchSource,
        ingestor: PunchIngestor,
        fault_bus: FaultBus,
        clock: Callable[[], datetime] = now_local,
        sleep: Callable[[float], None] = time.sleep,
        interval_minutes: Optional[int] = None,
        overlap_minutes: Optional[int] = None,
        retrieval_minutes: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_delay_ms: Optional[int] = None,
        max_catchup_hours: Optional[int] = None,
    ):
        self.source = source
        self.ingestor = ingestor
        self.fault_bus = fault_bus
        self.clock = clock
        self.sleep = sleep
        self.interval_minutes = interval_minutes or settings.poll_interval_min
        self.overlap_minutes = overlap_minutes or settings.poll_overlap_min
        self.retrieval_minutes = retrieval_minutes or settings.poll_retrieval_min
        self.max_retries = settings.poll_max_retries if max_retries is None else max_retries
        self.retry_delay_ms = settings.poll_retry_delay_ms if retry_delay_ms is None else retry_delay_ms
        self.max_catchup_hours = max_catchup_hours or settings.poll_max_catchup_hours

        self.last_window: Optional[PollWindow] = None
        self.last_successful_end: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.consecutive_failures = 0
        self.total_polls = 0
        self.total_failures = 0
        self.totals = IngestResult()
        self._lock = threading.Lock()

    def next_window(self, now: datetime):
        """
        Window for a tick at `now`.

        Normally [now - retrieval, now]. After missed or failed ticks the start
        moves back to just before the last successful window's end, but never
        further than max_catchup_hours.
        """
        start = now - timedelta(minutes=self.retrieval_minutes)
        if self.last_successful_end is not None:
            resume_from = self.last_successful_end - timedelta(minutes=self.overlap_minutes)
            if resume_from < start:
                start = max(resume_from, now - timedelta(hours=self.max_catchup_hours))
        return start, now

    def _fetch_with_retry(self, start: datetime, end: datetime) -> List[PunchEvent]:
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.source.fetch_by_time_range(start, end)
            except TransientSourceError as e:
                if attempt > self.max_retries:
                    raise
                logger.warning(
                    "Poll attempt failed, retrying",
                    attempt=attempt,
                    max_retries=self.max_retries,
                    retry_delay_ms=self.retry_delay_ms,
                    error=str(e),
                )
                self.sleep(self.retry_delay_ms / 1000.0)

    def tick(self) -> Optional[PollWindow]:
        """Run one poll. Never raises; a failed poll is deferred to the next tick."""
        if not self._lock.acquire(blocking=False):
            logger.info("Poll skipped, previous tick still running")
            return None
        try:
            now = self.clock()
            start, end = self.next_window(now)
            self.total_polls += 1

            try:
                events = self._fetch_with_retry(start, end)
                result = self.ingestor.ingest(events, source="poll")
            except (PunchSourceError, SQLAlchemyError, LedgerConflictError) as e:
                self._record_failure(start, end, e)
                return None

            window = PollWindow(
                window_start=start,
                window_end=end,
                overlap_minutes=self.overlap_minutes,
                executed_at=now,
                records_returned=len(events),
            )
            self.last_window = window
            self.last_successful_end = end
            self.consecutive_failures = 0
            self.last_error = None
            self.totals.add(result)

            logger.info(
                "Poll completed",
                window_start=start.isoformat(),
                window_end=end.isoformat(),
                records=len(events),
                admitted=result.admitted,
                duplicates=result.duplicates,
            )
            return window
        finally:
            self._lock.release()

    def _record_failure(self, start: datetime, end: datetime, error: Exception) -> None:
        self.consecutive_failures += 1
        self.total_failures += 1
        self.last_error = str(error)
        logger.error(
            "Poll deferred",
            window_start=start.isoformat(),
            window_end=end.isoformat(),
            consecutive_failures=self.consecutive_failures,
            error_type=type(error).__name__,
            error=str(error),
        )
        self.fault_bus.publish(
            "poll_deferred",
            f"Poll of {start.isoformat()} - {end.isoformat()} deferred: {error}",
            window_start=start.isoformat(),
            window_end=end.isoformat(),
            consecutive_failures=self.consecutive_failures,
        )

    def get_status(self) -> dict:
        return {
            "config": {
                "interval_minutes": self.interval_minutes,
                "overlap_minutes": self.overlap_minutes,
                "retrieval_minutes": self.retrieval_minutes,
                "max_retries": self.max_retries,
                "retry_delay_ms": self.retry_delay_ms,
                "max_catchup_hours": self.max_catchup_hours,
            },
            "last_window": self.last_window.to_dict() if self.last_window else None,
            "last_successful_end": self.last_successful_end.isoformat() if self.last_successful_end else None,
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
            "total_polls": self.total_polls,
            "total_failures": self.total_failures,
            "totals": self.totals.as_dict(),
        }
