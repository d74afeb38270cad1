"""
Duplicate prevention for raw punch ingestion.

Vendor punches are identified by their transaction id. Mobile punches have
no id and are identified by (employee, direction, 5-minute bucket), which is
coarse enough to absorb client clock skew and double taps.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import RawPunchEvent
from .audit import create_audit_log
from .punch_source import PunchEvent
from .time_rules import bucket_index, now_local

logger = structlog.get_logger(__name__)

_IN_CHUNK = 500


@dataclass
class Admission:
    accepted: bool
    reason: str  # new|duplicate_external_id|duplicate_mobile_bucket|duplicate_in_batch
    dedup_key: str


class DuplicatePreventer:
    def __init__(self, bucket_minutes: Optional[int] = None):
        self.bucket_minutes = bucket_minutes or settings.mobile_bucket_min

    def dedup_key(self, event: PunchEvent) -> str:
        if event.external_id is not None:
            return f"ext:{event.external_id}"
        bucket = bucket_index(event.punch_time, self.bucket_minutes)
        return f"mob:{event.employee_code}:{event.direction}:{bucket}"

    def _duplicate_reason(self, event: PunchEvent) -> str:
        return "duplicate_external_id" if event.external_id is not None else "duplicate_mobile_bucket"

    def admit(self, db: Session, event: PunchEvent) -> Admission:
        key = self.dedup_key(event)
        exists = db.query(RawPunchEvent.id).filter(RawPunchEvent.dedup_key == key).first()
        if exists is None and event.external_id is not None:
            exists = db.query(RawPunchEvent.id).filter(RawPunchEvent.external_id == event.external_id).first()
        if exists is not None:
            return Admission(False, self._duplicate_reason(event), key)
        return Admission(True, "new", key)

    def admit_many(self, db: Session, events: Iterable[PunchEvent]) -> List[Tuple[PunchEvent, Admission]]:
        """Batch admission check; one IN query per chunk instead of one query per event."""
        events = list(events)
        keys = [self.dedup_key(e) for e in events]

        known = set()
        for i in range(0, len(keys), _IN_CHUNK):
            chunk = keys[i:i + _IN_CHUNK]
            rows = db.query(RawPunchEvent.dedup_key).filter(RawPunchEvent.dedup_key.in_(chunk)).all()
            known.update(r[0] for r in rows)

        results = []
        seen = set()
        for event, key in zip(events, keys):
            if key in known:
                results.append((event, Admission(False, self._duplicate_reason(event), key)))
            elif key in seen:
                results.append((event, Admission(False, "duplicate_in_batch", key)))
            else:
                seen.add(key)
                results.append((event, Admission(True, "new", key)))
        return results

    def cleanup(self, db: Session, hours: Optional[int] = None, now: Optional[datetime] = None, actor_id: Optional[str] = None) -> dict:
        """
        Annotate near-duplicate mobile punches from the last `hours`.

        Two same-direction punches from one employee closer than the bucket
        width can still land in adjacent buckets; the later one is marked with
        duplicate_of_id. Rows are never deleted.

        Returns:
            Dict with scanned/marked counts
        """
        hours = hours or settings.duplicate_cleanup_hours
        now = now or now_local()
        since = now - timedelta(hours=hours)
        window = timedelta(minutes=self.bucket_minutes)

        rows = (
            db.query(RawPunchEvent)
            .filter(
                RawPunchEvent.external_id.is_(None),
                RawPunchEvent.duplicate_of_id.is_(None),
                RawPunchEvent.punch_time >= since,
            )
            .order_by(RawPunchEvent.employee_code, RawPunchEvent.direction, RawPunchEvent.punch_time, RawPunchEvent.id)
            .all()
        )

        marked = []
        anchor = None
        for row in rows:
            if (
                anchor is not None
                and anchor.employee_code == row.employee_code
                and anchor.direction == row.direction
                and row.punch_time - anchor.punch_time < window
            ):
                row.duplicate_of_id = anchor.id
                marked.append(row.id)
                continue
            anchor = row

        if marked:
            create_audit_log(
                db,
                entity_type="raw_punch",
                entity_id="mobile",
                action="DUPLICATE_SWEEP",
                actor_id=actor_id,
                actor_role="operator" if actor_id else "system",
                source="api" if actor_id else "scheduler",
                context={"hours": hours, "marked_ids": marked},
                commit=False,
            )
        db.commit()

        logger.info("Duplicate sweep finished", hours=hours, scanned=len(rows), marked=len(marked))
        return {"hours": hours, "scanned": len(rows), "marked": len(marked), "marked_ids": marked}
