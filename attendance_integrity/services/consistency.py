"""
Consistency monitor.

Catches silent pipeline failure: if the poller stops bringing data in, the
day's attendance rate drops and a snapshot is flagged. Read-only with respect
to the ledger; only consistency_snapshots rows are written.
"""
from datetime import date, datetime
from typing import Callable, List, Optional, Tuple

import structlog
from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import DataIntegrityFault
from ..models.models import AttendanceRecord, BiometricExemption, ConsistencySnapshot, Employee
from .events import FaultBus
from .time_rules import now_local

logger = structlog.get_logger(__name__)


def snapshot_to_dict(snapshot: ConsistencySnapshot) -> dict:
    return {
        "id": snapshot.id,
        "checked_at": snapshot.checked_at.isoformat(),
        "check_date": snapshot.check_date.isoformat(),
        "total_employees": snapshot.total_employees,
        "unique_attendees": snapshot.unique_attendees,
        "non_bio_exempt": snapshot.non_bio_exempt,
        "total_attendance": snapshot.total_attendance,
        "absentees": snapshot.absentees,
        "attendance_rate": snapshot.attendance_rate,
        "is_consistent": snapshot.is_consistent,
        "issues": list(snapshot.issues or []),
        "consecutive_failures": snapshot.consecutive_failures,
    }


class ConsistencyMonitor:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        fault_bus: FaultBus,
        clock: Callable[[], datetime] = now_local,
        min_attendance_rate: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.fault_bus = fault_bus
        self.clock = clock
        self.min_attendance_rate = settings.min_attendance_rate if min_attendance_rate is None else min_attendance_rate
        self.consecutive_failures = 0
        self.last_snapshot: Optional[dict] = None

    def measure(self, db: Session, day: date) -> dict:
        total_employees = (
            db.query(func.count(Employee.id))
            .filter(Employee.is_active.is_(True), Employee.system_account.is_(False))
            .scalar()
        ) or 0
        unique_attendees = (
            db.query(func.count(func.distinct(AttendanceRecord.employee_id)))
            .filter(
                AttendanceRecord.calendar_date == day,
                AttendanceRecord.status != "deleted",
                or_(AttendanceRecord.check_in.isnot(None), AttendanceRecord.check_out.isnot(None)),
            )
            .scalar()
        ) or 0
        non_bio_exempt = (
            db.query(func.count(func.distinct(BiometricExemption.employee_code)))
            .filter(BiometricExemption.is_active.is_(True), BiometricExemption.exemption_type == "individual")
            .scalar()
        ) or 0

        total_attendance = unique_attendees + non_bio_exempt
        attendance_rate = round(total_attendance / total_employees * 100, 2) if total_employees else 0.0
        return {
            "total_employees": total_employees,
            "unique_attendees": unique_attendees,
            "non_bio_exempt": non_bio_exempt,
            "total_attendance": total_attendance,
            "absentees": max(0, total_employees - total_attendance),
            "attendance_rate": attendance_rate,
        }

    def evaluate(self, counts: dict) -> Tuple[List[str], List[DataIntegrityFault]]:
        """Issues for a measurement; integrity faults are also returned separately."""
        issues = []
        faults = []
        if counts["attendance_rate"] < self.min_attendance_rate:
            issues.append(
                f"Low attendance rate: {counts['attendance_rate']:.2f}% (expected >={self.min_attendance_rate:g}%)"
            )
        if counts["unique_attendees"] == 0 and counts["non_bio_exempt"] == 0:
            issues.append("No attendance data found - potential sync failure")
        if counts["total_employees"] == 0:
            faults.append(DataIntegrityFault("No active employees found in database"))
        if counts["unique_attendees"] > counts["total_employees"]:
            faults.append(DataIntegrityFault(
                f"Attendance records exceed total employees: {counts['unique_attendees']} > {counts['total_employees']}"
            ))
        issues.extend(str(f) for f in faults)
        return issues, faults

    def run_check(self) -> dict:
        """One consistency tick for today. Database errors are recorded as a failed snapshot."""
        now = self.clock()
        day = now.date()
        counts = {
            "total_employees": 0,
            "unique_attendees": 0,
            "non_bio_exempt": 0,
            "total_attendance": 0,
            "absentees": 0,
            "attendance_rate": 0.0,
        }
        faults: List[DataIntegrityFault] = []

        db = self.session_factory()
        try:
            try:
                counts = self.measure(db, day)
                issues, faults = self.evaluate(counts)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("Consistency check failed", error=str(e))
                issues = [f"Check failed: {e}"]

            is_consistent = not issues
            self.consecutive_failures = 0 if is_consistent else self.consecutive_failures + 1

            snapshot = ConsistencySnapshot(
                checked_at=now,
                check_date=day,
                is_consistent=is_consistent,
                issues=issues,
                consecutive_failures=self.consecutive_failures,
                **counts,
            )
            db.add(snapshot)
            db.commit()
            db.refresh(snapshot)
            result = snapshot_to_dict(snapshot)
        finally:
            db.close()

        self.last_snapshot = result
        if is_consistent:
            logger.info("Consistency check passed", attendance_rate=counts["attendance_rate"], date=day.isoformat())
        else:
            logger.warning(
                "Consistency check failed",
                attendance_rate=counts["attendance_rate"],
                issues=issues,
                consecutive_failures=self.consecutive_failures,
            )
            self.fault_bus.publish(
                "consistency_failure",
                "; ".join(issues),
                date=day.isoformat(),
                consecutive_failures=self.consecutive_failures,
            )
        for fault in faults:
            self.fault_bus.publish("data_integrity_fault", str(fault), date=day.isoformat())
        return result

    def get_status(self) -> dict:
        last = self.last_snapshot
        if last is None:
            db = self.session_factory()
            try:
                snapshot = db.query(ConsistencySnapshot).order_by(ConsistencySnapshot.checked_at.desc(), ConsistencySnapshot.id.desc()).first()
                last = snapshot_to_dict(snapshot) if snapshot else None
            finally:
                db.close()
        return {
            "min_attendance_rate": self.min_attendance_rate,
            "interval_minutes": settings.consistency_interval_min,
            "consecutive_failures": self.consecutive_failures,
            "last_snapshot": last,
        }

    def history(self, limit: int = 50) -> List[dict]:
        db = self.session_factory()
        try:
            rows = db.query(ConsistencySnapshot).order_by(ConsistencySnapshot.checked_at.desc(), ConsistencySnapshot.id.desc()).limit(limit).all()
            return [snapshot_to_dict(r) for r in rows]
        finally:
            db.close()
