"""
Attendance ledger service.

Every writer (poller, healer, mobile validator, operators) folds punches
into AttendanceRecord through Ledger.merge_punch:

- check_in keeps the earliest punch of the day, check_out the latest
- an unknown direction becomes a check-in when it is the earliest punch,
  otherwise a check-out
- a punch that would make check_out < check_in is not folded
- merges into a soft-deleted record are ignored

Rows are read FOR UPDATE and carry a version counter, so a concurrent
writer that slips past the lock surfaces as StaleDataError and the
transaction is retried.
"""
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Optional, TypeVar

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..config import settings
from ..exceptions import LedgerConflictError
from ..models.models import AttendanceRecord, Employee
from .audit import create_audit_log, compute_diff
from .time_rules import hours_between

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class MergeOutcome:
    status: str  # applied|ignored|skipped
    reason: str
    record_id: Optional[int] = None

    @property
    def applied(self) -> bool:
        return self.status == "applied"


def record_snapshot(record: AttendanceRecord) -> dict:
    return {
        "check_in": record.check_in.isoformat() if record.check_in else None,
        "check_out": record.check_out.isoformat() if record.check_out else None,
        "total_hours": record.total_hours,
        "status": record.status,
        "punch_source": record.punch_source,
        "forced_checkout_by": record.forced_checkout_by,
    }


def record_to_dict(record: AttendanceRecord) -> dict:
    data = record_snapshot(record)
    data.update({
        "id": record.id,
        "employee_code": record.employee_code,
        "calendar_date": record.calendar_date.isoformat(),
        "geo_lat": record.geo_lat,
        "geo_lon": record.geo_lon,
    })
    return data


class Ledger:
    def __init__(self, max_retries: Optional[int] = None):
        self.max_retries = max_retries or settings.ledger_merge_retries

    def get_employee(self, db: Session, employee_code: str) -> Optional[Employee]:
        return db.query(Employee).filter(Employee.employee_code == employee_code).first()

    def get_record(self, db: Session, employee_code: str, day: date) -> Optional[AttendanceRecord]:
        return (
            db.query(AttendanceRecord)
            .filter(AttendanceRecord.employee_code == employee_code, AttendanceRecord.calendar_date == day)
            .first()
        )

    def _lock_record(self, db: Session, employee: Employee, day: date) -> AttendanceRecord:
        record = (
            db.query(AttendanceRecord)
            .filter(AttendanceRecord.employee_id == employee.id, AttendanceRecord.calendar_date == day)
            .with_for_update()
            .one_or_none()
        )
        if record is None:
            # A concurrent insert of the same (employee, date) fails the unique
            # constraint at flush and the whole transaction is retried
            record = AttendanceRecord(
                employee_id=employee.id,
                employee_code=employee.employee_code,
                calendar_date=day,
                status="incomplete",
                total_hours=0.0,
            )
            db.add(record)
            db.flush()
        return record

    def merge_punch(
        self,
        db: Session,
        employee_code: str,
        direction: str,
        punch_time: datetime,
        source: str,
        lat: Optional[float] = None,
        lon: Optional[float] = None,
    ) -> MergeOutcome:
        """
        Fold one punch into the employee's record for the punch's calendar date.

        Args:
            db: Session whose transaction the caller commits
            employee_code: Employee code as reported by the source
            direction: in|out|unknown
            punch_time: Naive local punch time
            source: poll|heal|mobile
            lat: Latitude for mobile punches
            lon: Longitude for mobile punches

        Returns:
            MergeOutcome describing whether the record changed
        """
        employee = self.get_employee(db, employee_code)
        if employee is None:
            return MergeOutcome("skipped", "unknown_employee")
        if not employee.is_active or employee.system_account:
            return MergeOutcome("skipped", "inactive_employee")

        record = self._lock_record(db, employee, punch_time.date())
        if record.status == "deleted":
            return MergeOutcome("ignored", "record_deleted", record.id)

        if direction not in ("in", "out"):
            direction = "in" if record.check_in is None or punch_time < record.check_in else "out"

        if direction == "in":
            if record.check_in is not None and punch_time >= record.check_in:
                return MergeOutcome("ignored", "not_earliest_check_in", record.id)
            if record.check_out is not None and punch_time > record.check_out:
                return MergeOutcome("ignored", "check_in_after_check_out", record.id)
            record.check_in = punch_time
        else:
            if record.check_in is not None and punch_time < record.check_in:
                return MergeOutcome("ignored", "check_out_before_check_in", record.id)
            if record.check_out is not None and punch_time <= record.check_out:
                return MergeOutcome("ignored", "not_latest_check_out", record.id)
            record.check_out = punch_time

        self._recompute(record)
        record.punch_source = source
        if lat is not None and lon is not None:
            record.geo_lat = lat
            record.geo_lon = lon
        db.flush()
        return MergeOutcome("applied", f"check_{direction}", record.id)

    def _recompute(self, record: AttendanceRecord) -> None:
        if record.check_in is not None and record.check_out is not None:
            record.total_hours = hours_between(record.check_in, record.check_out)
            record.status = "complete"
        else:
            record.total_hours = 0.0
            record.status = "incomplete"

    def run_in_transaction(self, db: Session, work: Callable[[], T]) -> T:
        """Run work() and commit, retrying on lost updates and unique-key races."""
        last_error = None
        for attempt in range(1, self.max_retries + 1):
            try:
                result = work()
                db.commit()
                return result
            except (IntegrityError, StaleDataError) as e:
                db.rollback()
                last_error = e
                logger.warning("Ledger write conflict, retrying", attempt=attempt, error=str(e))
        raise LedgerConflictError(f"Ledger write failed after {self.max_retries} attempts: {last_error}")

    def force_checkout(
        self,
        db: Session,
        employee_code: str,
        day: date,
        checkout_time: datetime,
        actor_id: str,
        actor_role: str = "operator",
        reason: Optional[str] = None,
    ) -> Optional[AttendanceRecord]:
        """
        Close an open record on operator instruction.

        Returns None when there is no record for the day; raises ValueError when
        the record cannot be closed at the given time.
        """
        def _work():
            record = self.get_record(db, employee_code, day)
            if record is None:
                return None
            if record.status == "deleted":
                raise ValueError("Record has been deleted")
            if record.check_in is None:
                raise ValueError("Record has no check-in")
            if record.check_out is not None:
                raise ValueError("Record already has a check-out")
            if checkout_time < record.check_in:
                raise ValueError("Check-out cannot be before check-in")

            before = record_snapshot(record)
            record.check_out = checkout_time
            record.forced_checkout_by = actor_id
            record.punch_source = "operator"
            self._recompute(record)
            db.flush()
            create_audit_log(
                db,
                entity_type="attendance",
                entity_id=str(record.id),
                action="FORCE_CHECKOUT",
                actor_id=actor_id,
                actor_role=actor_role,
                source="api",
                changes_json=compute_diff(before, record_snapshot(record)),
                context={"employee_code": employee_code, "date": day.isoformat(), "reason": reason},
                commit=False,
            )
            return record

        record = self.run_in_transaction(db, _work)
        if record is not None:
            logger.info("Forced checkout", employee_code=employee_code, date=day.isoformat(), actor_id=actor_id)
        return record

    def void_record(
        self,
        db: Session,
        employee_code: str,
        day: date,
        actor_id: str,
        actor_role: str = "operator",
        reason: Optional[str] = None,
    ) -> Optional[AttendanceRecord]:
        """Soft-delete a record. Later punches for that day are no longer folded in."""
        def _work():
            record = self.get_record(db, employee_code, day)
            if record is None:
                return None
            if record.status == "deleted":
                return record
            before = record_snapshot(record)
            record.status = "deleted"
            db.flush()
            create_audit_log(
                db,
                entity_type="attendance",
                entity_id=str(record.id),
                action="DELETE",
                actor_id=actor_id,
                actor_role=actor_role,
                source="api",
                changes_json=compute_diff(before, record_snapshot(record)),
                context={"employee_code": employee_code, "date": day.isoformat(), "reason": reason},
                commit=False,
            )
            return record

        return self.run_in_transaction(db, _work)
