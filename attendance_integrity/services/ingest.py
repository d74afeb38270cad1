"""
Shared ingestion path: admit, store the raw punch, merge into the ledger.

Admission and merge for one punch happen in the same transaction, so a punch
is either stored and folded exactly once or not at all.
"""
from dataclasses import dataclass, asdict
from typing import Callable, Iterable, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from ..models.models import RawPunchEvent
from .duplicates import Admission, DuplicatePreventer
from .ledger import Ledger, MergeOutcome
from .punch_source import PunchEvent

logger = structlog.get_logger(__name__)


@dataclass
class IngestResult:
    received: int = 0
    admitted: int = 0
    duplicates: int = 0
    merged: int = 0
    ignored: int = 0
    skipped: int = 0

    def add(self, other: "IngestResult") -> None:
        for key, value in asdict(other).items():
            setattr(self, key, getattr(self, key) + value)

    def as_dict(self) -> dict:
        return asdict(self)


class PunchIngestor:
    def __init__(self, session_factory: Callable[[], Session], preventer: DuplicatePreventer, ledger: Ledger):
        self.session_factory = session_factory
        self.preventer = preventer
        self.ledger = ledger

    def ingest(self, events: Iterable[PunchEvent], source: str) -> IngestResult:
        events = list(events)
        result = IngestResult(received=len(events))
        if not events:
            return result

        db = self.session_factory()
        try:
            checked = self.preventer.admit_many(db, events)
            db.rollback()
            for event, admission in checked:
                if not admission.accepted:
                    result.duplicates += 1
                    continue
                admission, _, outcome = self.ingest_one(db, event, source)
                if not admission.accepted:
                    result.duplicates += 1
                    continue
                result.admitted += 1
                if outcome.status == "applied":
                    result.merged += 1
                elif outcome.status == "ignored":
                    result.ignored += 1
                else:
                    result.skipped += 1
        finally:
            db.close()

        logger.info("Punches ingested", source=source, **result.as_dict())
        return result

    def ingest_one(
        self,
        db: Session,
        event: PunchEvent,
        source: str,
        lat: Optional[float] = None,
        lon: Optional[float] = None,
    ) -> Tuple[Admission, Optional[RawPunchEvent], Optional[MergeOutcome]]:
        """Admit, store and merge one punch in its own transaction."""
        def _work():
            admission = self.preventer.admit(db, event)
            if not admission.accepted:
                return admission, None, None

            raw = RawPunchEvent(
                external_id=event.external_id,
                dedup_key=admission.dedup_key,
                employee_code=event.employee_code,
                punch_time=event.punch_time,
                direction=event.direction,
                ingest_source=source,
                terminal_sn=event.terminal_sn,
                terminal_alias=event.terminal_alias,
                is_access_control=event.is_access_control,
                payload=event.payload,
            )
            db.add(raw)
            db.flush()

            if event.is_access_control:
                outcome = MergeOutcome("skipped", "access_control")
            else:
                outcome = self.ledger.merge_punch(
                    db,
                    employee_code=event.employee_code,
                    direction=event.direction,
                    punch_time=event.punch_time,
                    source=source,
                    lat=lat,
                    lon=lon,
                )
            return admission, raw, outcome

        return self.ledger.run_in_transaction(db, _work)
