from datetime import date, datetime

import pytest

from attendance_integrity.models.models import AttendanceRecord, RawPunchEvent
from attendance_integrity.services.duplicates import DuplicatePreventer
from attendance_integrity.services.ingest import PunchIngestor
from attendance_integrity.services.ledger import Ledger
from attendance_integrity.services.poller import Poller

from conftest import FakePunchSource, at, vendor_punch

DAY = date(2024, 3, 6)


@pytest.fixture
def ingestor(session_factory):
    return PunchIngestor(session_factory, DuplicatePreventer(bucket_minutes=5), Ledger())


@pytest.fixture
def source():
    return FakePunchSource()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def poller(source, ingestor, fault_bus, clock, sleeps):
    return Poller(
        source,
        ingestor,
        fault_bus,
        clock=clock,
        sleep=sleeps.append,
        interval_minutes=5,
        overlap_minutes=2,
        retrieval_minutes=10,
        max_retries=3,
        retry_delay_ms=30000,
        max_catchup_hours=24,
    )


def test_overlapping_windows_ingest_each_punch_once(poller, source, clock, session_factory, add_employees):
    add_employees("E1", "E2", "E3")
    source.add(
        vendor_punch(1, "E1", at(DAY, 9, 52)),
        vendor_punch(2, "E2", at(DAY, 9, 57)),
    )
    first = poller.tick()
    assert first.window_start == at(DAY, 9, 50)
    assert first.window_end == at(DAY, 10, 0)
    assert first.records_returned == 2

    # Punch 3 shows up at the source after the first poll, stamped inside its window
    source.add(vendor_punch(3, "E3", at(DAY, 9, 58)))
    clock.advance(minutes=5)
    second = poller.tick()
    assert second.window_start == at(DAY, 9, 55)
    assert second.records_returned == 2

    db = session_factory()
    try:
        assert db.query(RawPunchEvent).count() == 3
        assert db.query(AttendanceRecord).count() == 3
    finally:
        db.close()
    assert poller.totals.admitted == 3
    assert poller.totals.duplicates == 1


def test_transient_failures_are_retried(poller, source, sleeps, add_employees):
    add_employees("E1")
    source.add(vendor_punch(1, "E1", at(DAY, 9, 55)))
    source.fail_next = 2

    window = poller.tick()
    assert window is not None
    assert window.records_returned == 1
    assert sleeps == [30.0, 30.0]
    assert len(source.time_calls) == 3
    assert poller.consecutive_failures == 0


def test_exhausted_retries_defer_the_window(poller, source, sleeps, fault_log):
    source.fail_next = 10

    assert poller.tick() is None
    assert len(source.time_calls) == 4
    assert len(sleeps) == 3
    assert poller.last_successful_end is None
    assert poller.consecutive_failures == 1
    assert [e.kind for e in fault_log] == ["poll_deferred"]
    assert fault_log[0].details["consecutive_failures"] == 1


def test_window_reaches_back_after_missed_ticks(poller, clock):
    assert poller.tick() is not None
    clock.advance(hours=1)
    start, end = poller.next_window(clock())
    assert start == at(DAY, 9, 58)
    assert end == at(DAY, 11, 0)


def test_catchup_is_capped(source, ingestor, fault_bus, clock, sleeps):
    poller = Poller(
        source, ingestor, fault_bus, clock=clock, sleep=sleeps.append,
        interval_minutes=5, overlap_minutes=2, retrieval_minutes=10, max_catchup_hours=1,
    )
    poller.tick()
    clock.advance(hours=3)
    start, _ = poller.next_window(clock())
    assert start == at(DAY, 12, 0)


def test_deferred_window_is_recovered_by_next_tick(poller, source, clock, add_employees):
    add_employees("E1")
    assert poller.tick() is not None

    clock.advance(minutes=5)
    source.fail_next = 10
    assert poller.tick() is None

    source.fail_next = 0
    # Stamped inside the failed window, but older than a plain retrieval window at 10:20
    source.add(vendor_punch(1, "E1", at(DAY, 10, 4)))
    clock.advance(minutes=15)
    window = poller.tick()
    assert window.window_start == at(DAY, 9, 58)
    assert window.records_returned == 1
    assert poller.totals.admitted == 1


def test_empty_window_still_advances(poller):
    window = poller.tick()
    assert window.records_returned == 0
    assert poller.last_successful_end == at(DAY, 10, 0)
    status = poller.get_status()
    assert status["total_polls"] == 1
    assert status["last_window"]["records_returned"] == 0


def test_access_control_punches_are_stored_but_not_merged(poller, source, session_factory, add_employees):
    add_employees("E1")
    source.add(vendor_punch(1, "E1", at(DAY, 9, 55), alias="Server Room Lock"))
    poller.tick()
    db = session_factory()
    try:
        assert db.query(RawPunchEvent).one().is_access_control
        assert db.query(AttendanceRecord).count() == 0
    finally:
        db.close()
    assert poller.totals.skipped == 1


def test_late_tick_window_lines_up_with_overlap(poller, source, clock, add_employees):
    add_employees("A", "B", "C")
    clock.now = at(DAY, 10, 10)
    source.add(vendor_punch(1, "A", at(DAY, 10, 1)), vendor_punch(2, "B", at(DAY, 10, 9)))
    first = poller.tick()
    assert (first.window_start, first.window_end) == (at(DAY, 10, 0), at(DAY, 10, 10))

    source.add(vendor_punch(3, "C", at(DAY, 10, 15)))
    clock.advance(minutes=8)
    second = poller.tick()
    assert (second.window_start, second.window_end) == (at(DAY, 10, 8), at(DAY, 10, 18))
    assert second.records_returned == 2
    assert poller.totals.admitted == 3
    assert poller.totals.duplicates == 1
