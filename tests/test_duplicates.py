from datetime import date, datetime

from attendance_integrity.models.models import AuditLog, RawPunchEvent
from attendance_integrity.services.duplicates import DuplicatePreventer
from attendance_integrity.services.punch_source import PunchEvent

from conftest import at, vendor_punch

DAY = date(2024, 3, 6)


def store(db, preventer, event, source="poll"):
    admission = preventer.admit(db, event)
    db.add(RawPunchEvent(
        external_id=event.external_id,
        dedup_key=admission.dedup_key,
        employee_code=event.employee_code,
        punch_time=event.punch_time,
        direction=event.direction,
        ingest_source=source,
    ))
    db.commit()


def mobile(code, when, direction="in"):
    return PunchEvent(employee_code=code, punch_time=when, direction=direction)


def test_dedup_keys():
    preventer = DuplicatePreventer(bucket_minutes=5)
    assert preventer.dedup_key(vendor_punch(42, "E1", at(DAY, 9))) == "ext:42"
    key = preventer.dedup_key(mobile("E1", at(DAY, 9, 2)))
    assert key.startswith("mob:E1:in:")
    assert key == preventer.dedup_key(mobile("E1", at(DAY, 9, 4, 59)))
    assert key != preventer.dedup_key(mobile("E1", at(DAY, 9, 2), direction="out"))


def test_admit_rejects_known_external_id(db):
    preventer = DuplicatePreventer(bucket_minutes=5)
    store(db, preventer, vendor_punch(42, "E1", at(DAY, 9)))

    again = preventer.admit(db, vendor_punch(42, "E1", at(DAY, 9)))
    assert not again.accepted
    assert again.reason == "duplicate_external_id"
    assert preventer.admit(db, vendor_punch(43, "E1", at(DAY, 9))).accepted


def test_admit_rejects_mobile_punch_in_same_bucket(db):
    preventer = DuplicatePreventer(bucket_minutes=5)
    store(db, preventer, mobile("E1", at(DAY, 9, 1)), source="mobile")

    same_bucket = preventer.admit(db, mobile("E1", at(DAY, 9, 3)))
    assert not same_bucket.accepted
    assert same_bucket.reason == "duplicate_mobile_bucket"
    assert preventer.admit(db, mobile("E1", at(DAY, 9, 6))).accepted
    assert preventer.admit(db, mobile("E2", at(DAY, 9, 3))).accepted


def test_admit_many_flags_repeats_inside_one_batch(db):
    preventer = DuplicatePreventer(bucket_minutes=5)
    store(db, preventer, vendor_punch(1, "E1", at(DAY, 8)))

    batch = [
        vendor_punch(1, "E1", at(DAY, 8)),
        vendor_punch(2, "E2", at(DAY, 8, 5)),
        vendor_punch(2, "E2", at(DAY, 8, 5)),
        vendor_punch(3, "E3", at(DAY, 8, 7)),
    ]
    reasons = [admission.reason for _, admission in preventer.admit_many(db, batch)]
    assert reasons == ["duplicate_external_id", "new", "duplicate_in_batch", "new"]


def test_cleanup_marks_near_duplicates_without_deleting(db):
    preventer = DuplicatePreventer(bucket_minutes=5)
    # 09:04 and 09:06 sit in adjacent buckets but are two minutes apart
    store(db, preventer, mobile("E1", at(DAY, 9, 4)), source="mobile")
    store(db, preventer, mobile("E1", at(DAY, 9, 6)), source="mobile")
    store(db, preventer, mobile("E1", at(DAY, 9, 20)), source="mobile")
    store(db, preventer, mobile("E1", at(DAY, 9, 7), direction="out"), source="mobile")
    store(db, preventer, vendor_punch(7, "E1", at(DAY, 9, 5)))

    result = preventer.cleanup(db, hours=24, now=datetime(2024, 3, 6, 10, 0), actor_id="ops")
    assert result["scanned"] == 4
    assert result["marked"] == 1

    rows = {r.punch_time: r for r in db.query(RawPunchEvent).all()}
    assert db.query(RawPunchEvent).count() == 5
    assert rows[at(DAY, 9, 6)].duplicate_of_id == rows[at(DAY, 9, 4)].id
    assert rows[at(DAY, 9, 20)].duplicate_of_id is None

    log = db.query(AuditLog).filter(AuditLog.action == "DUPLICATE_SWEEP").one()
    assert log.context["marked_ids"] == result["marked_ids"]


def test_cleanup_is_idempotent(db):
    preventer = DuplicatePreventer(bucket_minutes=5)
    store(db, preventer, mobile("E1", at(DAY, 9, 4)), source="mobile")
    store(db, preventer, mobile("E1", at(DAY, 9, 6)), source="mobile")
    now = datetime(2024, 3, 6, 10, 0)
    assert preventer.cleanup(db, hours=24, now=now)["marked"] == 1
    assert preventer.cleanup(db, hours=24, now=now)["marked"] == 0
