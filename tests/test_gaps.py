from datetime import date, datetime, timedelta

import pytest

from attendance_integrity.models.models import AuditLog, ConfirmedIdGap, RawPunchEvent
from attendance_integrity.services.cache import MemoryTTLCache
from attendance_integrity.services.duplicates import DuplicatePreventer
from attendance_integrity.services.gaps import (
    DayCoverage, GapDetector, TargetedHealer, build_coverage, calculate_gap_priority, collapse_ids,
    subtract_ranges,
)
from attendance_integrity.services.ingest import PunchIngestor
from attendance_integrity.services.ledger import Ledger

from conftest import FakePunchSource, at, vendor_punch

DAY = date(2024, 3, 5)
PREV = DAY - timedelta(days=1)
NEXT = DAY + timedelta(days=1)


@pytest.fixture
def ingestor(session_factory):
    return PunchIngestor(session_factory, DuplicatePreventer(bucket_minutes=5), Ledger())


@pytest.fixture
def detector(session_factory, fault_bus, clock):
    return GapDetector(session_factory, fault_bus, cache=MemoryTTLCache(), clock=clock)


@pytest.fixture
def source():
    return FakePunchSource()


@pytest.fixture
def healer(detector, source, ingestor, fault_bus):
    return TargetedHealer(detector, source, ingestor, fault_bus, chunk_size=100)


def seed(db, *events):
    for event in events:
        db.add(RawPunchEvent(
            external_id=event.external_id,
            dedup_key=f"ext:{event.external_id}",
            employee_code=event.employee_code,
            punch_time=event.punch_time,
            direction=event.direction,
            ingest_source="poll",
        ))
    db.commit()


def day_punches(ids, day=DAY, start_hour=8):
    return [vendor_punch(i, "E1", at(day, start_hour) + timedelta(minutes=10 * n)) for n, i in enumerate(ids)]


def raw_count(db, day):
    start = datetime.combine(day, datetime.min.time())
    return db.query(RawPunchEvent).filter(
        RawPunchEvent.punch_time >= start, RawPunchEvent.punch_time < start + timedelta(days=1),
    ).count()


def test_priority_bands():
    assert calculate_gap_priority(0, 10) == "none"
    assert calculate_gap_priority(1, 11) == "low"
    assert calculate_gap_priority(15, 100) == "medium"
    assert calculate_gap_priority(30, 100) == "high"
    assert calculate_gap_priority(101, 1000) == "critical"
    assert DayCoverage(day=DAY).priority == "critical"


def test_coverage_finds_missing_ids_and_continuity():
    rows = [(i, at(DAY, 8)) for i in range(100, 111) if i != 105]
    coverage = build_coverage(DAY, rows)
    assert coverage.expected_count == 11
    assert coverage.missing_ranges == [(105, 105)]
    assert coverage.gap_count == 1
    assert coverage.completeness == 90.9
    assert not coverage.has_full_timestamp_continuity

    full = build_coverage(DAY, [(1, at(DAY, 0, 0, 30)), (2, at(DAY, 23, 59, 30))])
    assert full.has_full_timestamp_continuity
    assert full.priority == "none"


def test_heal_fills_single_missing_id(healer, source, db, add_employees):
    add_employees("E1")
    everything = day_punches(range(100, 111))
    source.add(*everything)
    seed(db, *[e for e in everything if e.external_id != 105])

    report = healer.heal_day(DAY)
    assert report.ranges == [(105, 105)]
    assert source.id_calls == [(105, 105)]
    assert report.ingest.admitted == 1
    assert report.completeness_before == 90.9
    assert report.completeness_after == 100.0
    assert db.query(AuditLog).filter(AuditLog.action == "HEAL").count() == 1

    # Nothing left to heal: no fetch, no writes
    again = healer.heal_day(DAY)
    assert again.ranges == []
    assert source.id_calls == [(105, 105)]
    assert raw_count(db, DAY) == 11
    assert db.query(AuditLog).filter(AuditLog.action == "HEAL").count() == 1


def test_empty_day_range_comes_from_neighbours(healer, source, db, detector):
    seed(db, *day_punches([198, 199, 200], day=PREV), *day_punches([211, 212], day=NEXT))
    source.add(*day_punches(range(201, 211)))

    entry = detector.analyze_gaps([DAY])[0]
    assert entry["observed_count"] == 0
    assert entry["priority"] == "critical"
    assert entry["heal_ranges"] == [[201, 210]]
    assert entry["missing_estimate"] == 10

    report = healer.heal_day(DAY)
    assert report.ingest.admitted == 10
    assert report.completeness_after == 100.0


def test_contiguous_neighbours_mean_verified_empty_day(db, detector):
    seed(db, *day_punches([400], day=PREV), *day_punches([401], day=NEXT))
    entry = detector.analyze_gaps([DAY])[0]
    assert entry["verified_empty"] is True
    assert entry["heal_ranges"] == []
    assert entry["remnant"] is None


def test_empty_day_without_neighbours_is_a_remnant(healer, source, fault_log):
    report = healer.heal_day(DAY)
    assert report.remnant == "No id bounds available from neighbouring days"
    assert source.id_calls == []
    assert fault_log[-1].kind == "gap_remnant"
    assert fault_log[-1].details["date"] == DAY.isoformat()


def test_operator_bounds_override_inference(healer, source):
    source.add(*day_punches([500, 501, 502]))
    report = healer.heal_day(DAY, bounds=(500, 502), actor_id="ops")
    assert report.remnant is None
    assert source.id_calls == [(500, 502)]
    assert report.ingest.admitted == 3


def test_chunk_straddling_midnight_only_ingests_the_target_day(healer, source, db):
    seed(db, *day_punches(range(300, 306)), *day_punches([320], day=NEXT, start_hour=9))
    late = [vendor_punch(i, "E2", at(DAY, 22) + timedelta(minutes=n)) for n, i in enumerate(range(306, 311))]
    early = [vendor_punch(i, "E3", at(NEXT, 0, 30) + timedelta(minutes=n)) for n, i in enumerate(range(311, 320))]
    source.add(*late, *early)

    report = healer.heal_day(DAY)
    assert (306, 319) in report.ranges
    assert report.fetched == 14
    assert report.in_day == 5
    assert report.ingest.admitted == 5
    assert raw_count(db, NEXT) == 1


def test_ranges_are_fetched_in_chunks(detector, source, ingestor, fault_bus, db):
    seed(db, *day_punches([200], day=PREV), *day_punches([211], day=NEXT))
    healer = TargetedHealer(detector, source, ingestor, fault_bus, chunk_size=4)
    healer.heal_day(DAY)
    assert source.id_calls == [(201, 204), (205, 208), (209, 210)]


def test_failed_chunk_is_reported_and_others_continue(detector, source, ingestor, fault_bus, db):
    seed(db, *day_punches([200], day=PREV), *day_punches([211], day=NEXT))
    source.add(*day_punches(range(201, 211)))
    source.fail_next = 1
    healer = TargetedHealer(detector, source, ingestor, fault_bus, chunk_size=5)
    report = healer.heal_day(DAY)
    assert len(report.errors) == 1
    assert report.errors[0].startswith("201-205")
    assert report.ingest.admitted == 5


def test_gap_summary_is_cached_until_invalidated(detector, db):
    # clock is 2024-03-06 10:00, so the summary ends on 2024-03-05
    seed(db, *day_punches([1, 2, 4], day=DAY))
    first = detector.get_gap_summary(days=1)
    assert first["end_date"] == DAY.isoformat()
    assert first["total_missing_ids"] == 1

    seed(db, *day_punches([3], day=DAY, start_hour=12))
    assert detector.get_gap_summary(days=1)["total_missing_ids"] == 1

    detector.invalidate_summary()
    assert detector.get_gap_summary(days=1)["total_missing_ids"] == 0


def test_scan_and_heal_targets_gapped_days(healer, source, db, clock):
    everything = day_punches(range(100, 111))
    source.add(*everything)
    seed(db, *[e for e in everything if e.external_id not in (104, 105)])
    seed(db, *day_punches([111], day=NEXT))

    reports = healer.scan_and_heal(lookback_days=1)
    assert [r.day for r in reports] == [DAY]
    assert reports[0].ingest.admitted == 2


def test_range_helpers():
    assert collapse_ids([7, 3, 4, 5, 9, 8]) == [(3, 5), (7, 9)]
    assert collapse_ids([]) == []
    assert subtract_ranges([(1, 10)], [(3, 4), (8, 12)]) == [(1, 2), (5, 7)]
    assert subtract_ranges([(1, 3), (5, 6)], [(1, 6)]) == []


def test_hole_the_source_never_had_is_fetched_once(healer, source, db, detector):
    everything = day_punches(range(100, 111))
    source.add(*[e for e in everything if e.external_id != 105])
    seed(db, *[e for e in everything if e.external_id != 105])

    first = healer.heal_day(DAY)
    assert first.ingest.admitted == 0
    assert first.confirmed_absent == [(105, 105)]
    for _ in range(2):
        again = healer.heal_day(DAY)
        assert again.ranges == []

    assert source.id_calls == [(105, 105)]
    assert db.query(AuditLog).filter(AuditLog.action == "HEAL").count() == 1
    assert db.query(ConfirmedIdGap).count() == 1

    entry = detector.analyze_gaps([DAY])[0]
    assert entry["missing_ranges"] == [[105, 105]]
    assert entry["confirmed_absent"] == [[105, 105]]
    assert entry["heal_ranges"] == []
    assert healer.scan_and_heal(lookback_days=1) == []


def test_empty_day_is_verified_once_its_range_comes_back_empty(healer, source, db, detector):
    seed(db, *day_punches([200], day=PREV), *day_punches([204], day=NEXT))
    healer.heal_day(DAY)
    assert source.id_calls == [(201, 203)]

    entry = detector.analyze_gaps([DAY])[0]
    assert entry["verified_empty"] is True
    assert entry["remnant"] is None


def test_operator_bounds_refetch_confirmed_ids_without_new_writes(healer, source, db):
    punches = day_punches([100, 102])
    source.add(*punches)
    seed(db, *punches)
    healer.heal_day(DAY)
    healer.heal_day(DAY, bounds=(100, 102), actor_id="ops")
    assert source.id_calls == [(101, 101), (100, 102)]
    assert db.query(ConfirmedIdGap).count() == 1
    assert db.query(AuditLog).filter(AuditLog.action == "HEAL").count() == 1
