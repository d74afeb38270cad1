"""
Gap detection and targeted healing.

The vendor assigns transaction ids from one monotonic sequence, so a hole in
the ids stored for a day means the poller missed records. The detector
derives per-day coverage from raw_punch_events; the healer re-fetches the
missing ids in small chunks and feeds them through the normal ingestion path.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import GapRemnant, PunchSourceError
from ..models.models import ConfirmedIdGap, RawPunchEvent
from .audit import create_audit_log
from .cache import TTLCache
from .events import FaultBus
from .ingest import IngestResult, PunchIngestor
from .punch_source import PunchSource
from .time_rules import day_bounds, iter_days, now_local

logger = structlog.get_logger(__name__)

DAY_START_LIMIT = time(0, 1)
DAY_END_LIMIT = time(23, 59)


def calculate_gap_priority(gap_count: int, expected_count: int) -> str:
    """
    Rank a day's id gap by share of missing records and absolute size.

    Args:
        gap_count: Number of missing ids
        expected_count: Ids spanned by the day (max - min + 1)

    Returns:
        critical|high|medium|low|none
    """
    if gap_count <= 0:
        return "none"
    pct = gap_count / expected_count * 100 if expected_count else 100.0
    if pct > 50 or gap_count > 100:
        return "critical"
    if pct > 25 or gap_count > 50:
        return "high"
    if pct > 10 or gap_count > 20:
        return "medium"
    return "low"


@dataclass
class DayCoverage:
    day: date
    min_id: Optional[int] = None
    max_id: Optional[int] = None
    observed_count: int = 0
    missing_ranges: List[Tuple[int, int]] = field(default_factory=list)
    confirmed_absent: List[Tuple[int, int]] = field(default_factory=list)
    first_punch: Optional[datetime] = None
    last_punch: Optional[datetime] = None

    @property
    def expected_count(self) -> int:
        if self.min_id is None or self.max_id is None:
            return 0
        return self.max_id - self.min_id + 1

    @property
    def has_full_timestamp_continuity(self) -> bool:
        if self.first_punch is None or self.last_punch is None:
            return False
        return self.first_punch.time() <= DAY_START_LIMIT and self.last_punch.time() >= DAY_END_LIMIT

    @property
    def has_id_gap(self) -> bool:
        return bool(self.missing_ranges)

    @property
    def has_timestamp_gap(self) -> bool:
        return not self.has_full_timestamp_continuity

    def has_id(self, external_id: int) -> bool:
        if self.min_id is None or not self.min_id <= external_id <= self.max_id:
            return False
        return not any(start <= external_id <= end for start, end in self.missing_ranges)

    @property
    def gap_count(self) -> int:
        return sum(end - start + 1 for start, end in self.missing_ranges)

    @property
    def completeness(self) -> float:
        if not self.expected_count:
            return 0.0
        return round(min(100.0, self.observed_count / self.expected_count * 100), 1)

    @property
    def priority(self) -> str:
        if self.observed_count == 0:
            return "critical"
        if self.has_id_gap:
            return calculate_gap_priority(self.gap_count, self.expected_count)
        return "low" if self.has_timestamp_gap else "none"

    def to_dict(self) -> dict:
        return {
            "date": self.day.isoformat(),
            "min_id": self.min_id,
            "max_id": self.max_id,
            "observed_count": self.observed_count,
            "expected_count": self.expected_count,
            "gap_count": self.gap_count,
            "missing_ranges": [list(r) for r in self.missing_ranges],
            "confirmed_absent": [list(r) for r in self.confirmed_absent],
            "completeness": self.completeness,
            "has_id_gap": self.has_id_gap,
            "has_full_timestamp_continuity": self.has_full_timestamp_continuity,
            "first_punch": self.first_punch.isoformat() if self.first_punch else None,
            "last_punch": self.last_punch.isoformat() if self.last_punch else None,
            "priority": self.priority,
        }


def collapse_ids(ids) -> List[Tuple[int, int]]:
    """Sorted inclusive ranges covering the given ids."""
    ranges: List[Tuple[int, int]] = []
    for i in sorted(set(ids)):
        if ranges and i == ranges[-1][1] + 1:
            ranges[-1] = (ranges[-1][0], i)
        else:
            ranges.append((i, i))
    return ranges


def subtract_ranges(ranges: List[Tuple[int, int]], removed: List[Tuple[int, int]]) -> List[Tuple[int, int]]:
    result = []
    for start, end in ranges:
        pieces = [(start, end)]
        for r_start, r_end in removed:
            remaining = []
            for p_start, p_end in pieces:
                if r_end < p_start or r_start > p_end:
                    remaining.append((p_start, p_end))
                    continue
                if p_start < r_start:
                    remaining.append((p_start, r_start - 1))
                if r_end < p_end:
                    remaining.append((r_end + 1, p_end))
            pieces = remaining
        result.extend(pieces)
    return result


def build_coverage(day: date, rows: List[Tuple[int, datetime]]) -> DayCoverage:
    """Coverage for one day from (external_id, punch_time) pairs."""
    coverage = DayCoverage(day=day)
    if not rows:
        return coverage

    ids = sorted({external_id for external_id, _ in rows})
    times = [punch_time for _, punch_time in rows]
    coverage.min_id = ids[0]
    coverage.max_id = ids[-1]
    coverage.observed_count = len(ids)
    coverage.first_punch = min(times)
    coverage.last_punch = max(times)
    for prev_id, next_id in zip(ids, ids[1:]):
        if next_id - prev_id > 1:
            coverage.missing_ranges.append((prev_id + 1, next_id - 1))
    return coverage


@dataclass
class HealPlan:
    day: date
    ranges: List[Tuple[int, int]] = field(default_factory=list)
    remnant: Optional[str] = None
    verified_empty: bool = False


class GapDetector:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        fault_bus: FaultBus,
        cache: Optional[TTLCache] = None,
        clock: Callable[[], datetime] = now_local,
    ):
        self.session_factory = session_factory
        self.fault_bus = fault_bus
        self.cache = cache
        self.clock = clock
        self._summary_keys = set()

    def coverage_for_range(self, db: Session, start: date, end: date) -> Dict[date, DayCoverage]:
        """Per-day coverage for start..end inclusive, queried once for the whole span."""
        range_start, _ = day_bounds(start)
        _, range_end = day_bounds(end)
        rows = (
            db.query(RawPunchEvent.external_id, RawPunchEvent.punch_time)
            .filter(
                RawPunchEvent.external_id.isnot(None),
                RawPunchEvent.punch_time >= range_start,
                RawPunchEvent.punch_time <= range_end,
            )
            .all()
        )
        by_day: Dict[date, List[Tuple[int, datetime]]] = {d: [] for d in iter_days(start, end)}
        for external_id, punch_time in rows:
            by_day[punch_time.date()].append((external_id, punch_time))
        coverage = {d: build_coverage(d, day_rows) for d, day_rows in by_day.items()}

        confirmed = (
            db.query(ConfirmedIdGap)
            .filter(ConfirmedIdGap.calendar_date >= start, ConfirmedIdGap.calendar_date <= end)
            .order_by(ConfirmedIdGap.start_id)
            .all()
        )
        for gap in confirmed:
            coverage[gap.calendar_date].confirmed_absent.append((gap.start_id, gap.end_id))
        return coverage

    def plan_heal(
        self,
        coverage: DayCoverage,
        prev_day: Optional[DayCoverage],
        next_day: Optional[DayCoverage],
        bounds: Optional[Tuple[int, int]] = None,
    ) -> HealPlan:
        """
        Decide which id ranges to re-fetch for a day.

        Operator bounds win. Empty days take their range from the neighbours
        (previous day's max + 1 through next day's min - 1). Days with events
        heal their internal holes, plus the edge ranges toward the neighbours
        when the timestamps do not cover the whole day. Ids an earlier heal
        already confirmed absent are not fetched again unless an operator
        asks for them.
        """
        plan = HealPlan(day=coverage.day)
        if bounds is not None:
            start, end = bounds
            if end < start:
                plan.remnant = f"Invalid operator bounds {start}-{end}"
            else:
                plan.ranges.append((start, end))
            return plan

        prev_max = prev_day.max_id if prev_day else None
        next_min = next_day.min_id if next_day else None

        if coverage.observed_count == 0:
            if prev_max is None or next_min is None:
                plan.remnant = "No id bounds available from neighbouring days"
                return plan
            start, end = prev_max + 1, next_min - 1
            if end == start - 1:
                # Neighbours are contiguous: nothing is missing, the day really had no punches
                plan.verified_empty = True
            elif end < start:
                plan.remnant = f"Neighbouring id bounds overlap ({start} > {end})"
            else:
                plan.ranges = subtract_ranges([(start, end)], coverage.confirmed_absent)
                # Every id between the neighbours was fetched and none belonged to this day
                plan.verified_empty = not plan.ranges
            return plan

        ranges = list(coverage.missing_ranges)
        if coverage.has_timestamp_gap:
            if prev_max is not None and prev_max + 1 <= coverage.min_id - 1:
                ranges.insert(0, (prev_max + 1, coverage.min_id - 1))
            if next_min is not None and coverage.max_id + 1 <= next_min - 1:
                ranges.append((coverage.max_id + 1, next_min - 1))
        plan.ranges = subtract_ranges(ranges, coverage.confirmed_absent)
        return plan

    def analyze_gaps(self, dates: List[date]) -> List[dict]:
        """Coverage plus heal plan for each requested date."""
        if not dates:
            return []
        db = self.session_factory()
        try:
            coverage = self.coverage_for_range(db, min(dates) - timedelta(days=1), max(dates) + timedelta(days=1))
        finally:
            db.close()

        results = []
        for day in sorted(set(dates)):
            cov = coverage[day]
            plan = self.plan_heal(cov, coverage.get(day - timedelta(days=1)), coverage.get(day + timedelta(days=1)))
            entry = cov.to_dict()
            entry["heal_ranges"] = [list(r) for r in plan.ranges]
            entry["missing_estimate"] = sum(end - start + 1 for start, end in plan.ranges)
            entry["remnant"] = plan.remnant
            entry["verified_empty"] = plan.verified_empty
            results.append(entry)
        return results

    def get_gap_summary(self, days: int = 7) -> dict:
        """
        Summary over the last `days` complete days (today is still filling up).
        Cached for GAP_SUMMARY_CACHE_S seconds.
        """
        end = self.clock().date() - timedelta(days=1)
        start = end - timedelta(days=days - 1)
        key = f"gaps:summary:{start.isoformat()}:{end.isoformat()}"
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        entries = self.analyze_gaps(list(iter_days(start, end)))
        gapped = [e for e in entries if e["has_id_gap"] or e["heal_ranges"] or e["remnant"]]
        priority_counts: Dict[str, int] = {}
        for entry in gapped:
            priority_counts[entry["priority"]] = priority_counts.get(entry["priority"], 0) + 1
        populated = [e["completeness"] for e in entries if e["observed_count"]]

        summary = {
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "days": days,
            "days_with_gaps": len(gapped),
            "total_missing_ids": sum(e["gap_count"] for e in entries),
            "average_completeness": round(sum(populated) / len(populated), 1) if populated else 0.0,
            "priority_counts": priority_counts,
            "remnants": [{"date": e["date"], "reason": e["remnant"]} for e in entries if e["remnant"]],
            "coverage": entries,
        }
        if self.cache is not None:
            self.cache.set(key, summary, settings.gap_summary_cache_s)
            self._summary_keys.add(key)
        return summary

    def invalidate_summary(self) -> None:
        if self.cache is None:
            return
        for key in list(self._summary_keys):
            self.cache.delete(key)
        self._summary_keys.clear()


@dataclass
class HealReport:
    day: date
    ranges: List[Tuple[int, int]] = field(default_factory=list)
    fetched: int = 0
    in_day: int = 0
    ingest: IngestResult = field(default_factory=IngestResult)
    completeness_before: float = 0.0
    completeness_after: float = 0.0
    remnant: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    confirmed_absent: List[Tuple[int, int]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "date": self.day.isoformat(),
            "ranges": [list(r) for r in self.ranges],
            "fetched": self.fetched,
            "in_day": self.in_day,
            "ingest": self.ingest.as_dict(),
            "completeness_before": self.completeness_before,
            "completeness_after": self.completeness_after,
            "remnant": self.remnant,
            "errors": self.errors,
            "confirmed_absent": [list(r) for r in self.confirmed_absent],
        }


class TargetedHealer:
    def __init__(
        self,
        detector: GapDetector,
        source: PunchSource,
        ingestor: PunchIngestor,
        fault_bus: FaultBus,
        chunk_size: Optional[int] = None,
    ):
        self.detector = detector
        self.source = source
        self.ingestor = ingestor
        self.fault_bus = fault_bus
        self.chunk_size = chunk_size or settings.heal_chunk_size

    def _coverage_around(self, day: date) -> Dict[date, DayCoverage]:
        db = self.detector.session_factory()
        try:
            return self.detector.coverage_for_range(db, day - timedelta(days=1), day + timedelta(days=1))
        finally:
            db.close()

    def heal_day(self, day: date, bounds: Optional[Tuple[int, int]] = None, actor_id: Optional[str] = None) -> HealReport:
        coverage = self._coverage_around(day)
        current = coverage[day]
        plan = self.detector.plan_heal(
            current,
            coverage.get(day - timedelta(days=1)),
            coverage.get(day + timedelta(days=1)),
            bounds=bounds,
        )
        report = HealReport(day=day, ranges=plan.ranges, completeness_before=current.completeness)

        if plan.remnant:
            remnant = GapRemnant(day, plan.remnant)
            report.remnant = remnant.reason
            report.completeness_after = current.completeness
            logger.warning("Gap remnant", date=day.isoformat(), reason=remnant.reason)
            self.fault_bus.publish("gap_remnant", str(remnant), date=day.isoformat(), reason=remnant.reason)
            return report

        absent: List[Tuple[int, int]] = []
        for start, end in plan.ranges:
            for chunk_start in range(start, end + 1, self.chunk_size):
                chunk_end = min(chunk_start + self.chunk_size - 1, end)
                try:
                    events = self.source.fetch_by_id_range(chunk_start, chunk_end)
                except PunchSourceError as e:
                    report.errors.append(f"{chunk_start}-{chunk_end}: {e}")
                    logger.warning("Heal chunk failed", date=day.isoformat(), start_id=chunk_start, end_id=chunk_end, error=str(e))
                    continue
                # An id chunk can straddle midnight
                in_day = [e for e in events if e.punch_time.date() == day]
                report.fetched += len(events)
                report.in_day += len(in_day)
                report.ingest.add(self.ingestor.ingest(in_day, source="heal"))
                found = {e.external_id for e in in_day}
                absent.extend(collapse_ids(
                    i for i in range(chunk_start, chunk_end + 1) if i not in found and not current.has_id(i)
                ))
        report.confirmed_absent = subtract_ranges(absent, current.confirmed_absent)

        if report.ingest.admitted:
            report.completeness_after = self._coverage_around(day)[day].completeness
        else:
            report.completeness_after = current.completeness

        # Nothing is written when a pass found nothing new and every fetch succeeded
        if report.ingest.admitted or report.confirmed_absent or report.errors:
            db = self.detector.session_factory()
            try:
                for start, end in report.confirmed_absent:
                    db.add(ConfirmedIdGap(calendar_date=day, start_id=start, end_id=end))
                create_audit_log(
                    db,
                    entity_type="gap",
                    entity_id=day.isoformat(),
                    action="HEAL",
                    actor_id=actor_id,
                    actor_role="operator" if actor_id else "system",
                    source="api" if actor_id else "scheduler",
                    context=report.to_dict(),
                    commit=False,
                )
                db.commit()
            finally:
                db.close()
            self.detector.invalidate_summary()

        logger.info(
            "Heal finished",
            date=day.isoformat(),
            ranges=len(plan.ranges),
            fetched=report.fetched,
            admitted=report.ingest.admitted,
            completeness_before=report.completeness_before,
            completeness_after=report.completeness_after,
        )
        return report

    def trigger_targeted_heal(
        self,
        dates: List[date],
        bounds: Optional[Dict[date, Tuple[int, int]]] = None,
        actor_id: Optional[str] = None,
    ) -> List[HealReport]:
        bounds = bounds or {}
        return [self.heal_day(day, bounds.get(day), actor_id=actor_id) for day in sorted(set(dates))]

    def scan_and_heal(self, lookback_days: Optional[int] = None) -> List[HealReport]:
        """Scheduled pass: heal every recent complete day that shows a gap."""
        lookback_days = lookback_days or settings.gap_scan_lookback_days
        end = self.detector.clock().date() - timedelta(days=1)
        start = end - timedelta(days=lookback_days - 1)
        entries = self.detector.analyze_gaps(list(iter_days(start, end)))
        targets = [date.fromisoformat(e["date"]) for e in entries if e["heal_ranges"] or e["remnant"]]
        if not targets:
            logger.info("Gap scan clean", start=start.isoformat(), end=end.isoformat())
            return []
        logger.info("Gap scan found days to heal", days=[d.isoformat() for d in targets])
        return self.trigger_targeted_heal(targets)
