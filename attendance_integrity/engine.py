from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.orm import Session
from starlette.requests import Request

from .config import settings
from .db import SessionLocal
from .exceptions import SourceNotConfigured
from .services.biotime_client import BioTimeClient
from .services.cache import TTLCache, build_cache
from .services.consistency import ConsistencyMonitor
from .services.duplicates import DuplicatePreventer
from .services.events import FaultBus
from .services.gaps import GapDetector, TargetedHealer
from .services.geofence import ClusterTableLearner, GeofenceLearner
from .services.ingest import PunchIngestor
from .services.ledger import Ledger
from .services.mobile_punch import MobilePunchValidator, MobileThresholds
from .services.poller import Poller
from .services.punch_source import PunchSource
from .services.scheduler import Ticker
from .services.time_rules import now_local

logger = structlog.get_logger(__name__)

POLL_TASK = "poller"
GAP_TASK = "gap_scan"
CONSISTENCY_TASK = "consistency"
DUPLICATE_TASK = "duplicate_cleanup"


@dataclass
class IntegrityEngine:
    session_factory: Callable[[], Session]
    fault_bus: FaultBus
    cache: TTLCache
    ledger: Ledger
    preventer: DuplicatePreventer
    ingestor: PunchIngestor
    detector: GapDetector
    consistency: ConsistencyMonitor
    validator: MobilePunchValidator
    ticker: Ticker
    executor: ThreadPoolExecutor
    source: Optional[PunchSource] = None
    poller: Optional[Poller] = None
    healer: Optional[TargetedHealer] = None

    def start(self) -> None:
        if self.poller is not None:
            self.ticker.every(POLL_TASK, settings.poll_interval_min, self.poller.tick, run_immediately=True)
        if self.healer is not None:
            self.ticker.every(GAP_TASK, settings.gap_scan_interval_min, self.healer.scan_and_heal)
        self.ticker.every(CONSISTENCY_TASK, settings.consistency_interval_min, self.consistency.run_check)
        self.ticker.every(DUPLICATE_TASK, settings.duplicate_cleanup_interval_min, self.run_duplicate_cleanup)
        self.ticker.start()
        logger.info("Integrity engine started", tasks=list(self.ticker.jobs()))

    def stop(self) -> None:
        self.ticker.shutdown(wait=True)
        self.executor.shutdown(wait=True)
        logger.info("Integrity engine stopped")

    def _require_healer(self) -> TargetedHealer:
        if self.healer is None:
            raise SourceNotConfigured("Punch source is not configured")
        return self.healer

    def _require_poller(self) -> Poller:
        if self.poller is None:
            raise SourceNotConfigured("Punch source is not configured")
        return self.poller

    def submit_mobile_punch(
        self,
        employee_code: str,
        punch_type: str,
        lat: Optional[float],
        lon: Optional[float],
        punch_time: Optional[datetime] = None,
        accuracy: Optional[float] = None,
        device_id: Optional[str] = None,
    ) -> dict:
        return self.validator.submit_punch(employee_code, punch_type, lat, lon, punch_time, accuracy, device_id)

    def get_consistency_status(self) -> dict:
        return self.consistency.get_status()

    def run_consistency_check(self) -> dict:
        return self.consistency.run_check()

    def get_gap_summary(self, days: int = 7) -> dict:
        return self.detector.get_gap_summary(days)

    def analyze_gaps(self, dates: List[date]) -> List[dict]:
        return self.detector.analyze_gaps(dates)

    def trigger_targeted_heal(
        self,
        dates: List[date],
        bounds: Optional[Dict[date, Tuple[int, int]]] = None,
        actor_id: Optional[str] = None,
    ) -> List[dict]:
        reports = self._require_healer().trigger_targeted_heal(dates, bounds, actor_id=actor_id)
        return [r.to_dict() for r in reports]

    def run_poll(self) -> Optional[dict]:
        window = self._require_poller().tick()
        return window.to_dict() if window else None

    def get_poller_status(self) -> dict:
        if self.poller is None:
            return {"configured": False, "running": False}
        status = self.poller.get_status()
        status["configured"] = True
        status["running"] = self.ticker.running and POLL_TASK in self.ticker.jobs()
        return status

    def run_duplicate_cleanup(self, hours: Optional[int] = None, actor_id: Optional[str] = None) -> dict:
        db = self.session_factory()
        try:
            return self.preventer.cleanup(db, hours=hours, actor_id=actor_id)
        finally:
            db.close()

    def task_states(self) -> dict:
        return {"scheduler_running": self.ticker.running, "tasks": self.ticker.jobs()}


def build_engine(
    session_factory: Callable[[], Session] = SessionLocal,
    source: Optional[PunchSource] = None,
    learner: Optional[GeofenceLearner] = None,
    cache: Optional[TTLCache] = None,
    ticker: Optional[Ticker] = None,
    fault_bus: Optional[FaultBus] = None,
    clock: Callable[[], datetime] = now_local,
    sleep: Optional[Callable[[float], None]] = None,
    thresholds: Optional[MobileThresholds] = None,
) -> IntegrityEngine:
    cache = cache or build_cache(settings.cache_backend, session_factory)
    fault_bus = fault_bus or FaultBus()
    if source is None and settings.biotime_username and settings.biotime_password:
        source = BioTimeClient(cache=cache)
    if source is None:
        logger.warning("No punch source configured; poller and healer disabled")

    ledger = Ledger()
    preventer = DuplicatePreventer()
    ingestor = PunchIngestor(session_factory, preventer, ledger)
    detector = GapDetector(session_factory, fault_bus, cache=cache, clock=clock)
    executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="geofence")

    poller = None
    healer = None
    if source is not None:
        poller_kwargs = {"sleep": sleep} if sleep is not None else {}
        poller = Poller(source, ingestor, fault_bus, clock=clock, **poller_kwargs)
        healer = TargetedHealer(detector, source, ingestor, fault_bus)

    return IntegrityEngine(
        session_factory=session_factory,
        fault_bus=fault_bus,
        cache=cache,
        ledger=ledger,
        preventer=preventer,
        ingestor=ingestor,
        detector=detector,
        consistency=ConsistencyMonitor(session_factory, fault_bus, clock=clock),
        validator=MobilePunchValidator(
            session_factory,
            learner or ClusterTableLearner(session_factory),
            ingestor,
            ledger,
            clock=clock,
            executor=executor,
            thresholds=thresholds,
        ),
        ticker=ticker or Ticker(),
        executor=executor,
        source=source,
        poller=poller,
        healer=healer,
    )


def get_engine(request: Request) -> IntegrityEngine:
    """FastAPI dependency: the engine built at app creation."""
    return request.app.state.engine
