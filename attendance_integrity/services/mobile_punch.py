"""
Mobile punch validation.

Each submission is checked for GPS presence and accuracy, distance to the
employee's learned geofence clusters, submission timing, daily hour caps
and recent duplicates. The decision trail is always written to
punch_validation_records, in its own transaction, before anything touches
the ledger. Accepted punches go through the same admission and merge path
as terminal punches.
"""
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import ValidationRejection
from ..models.models import AttendanceRecord, GeofenceViolation, PunchValidationRecord, RawPunchEvent
from .audit import create_audit_log
from .geofence import ClusterMatch, GeofenceLearner
from .ingest import PunchIngestor
from .ledger import Ledger
from .punch_source import PunchEvent
from .time_rules import hours_ago, now_local, to_local_naive

logger = structlog.get_logger(__name__)

PUNCH_DIRECTIONS = {"checkin": "in", "checkout": "out"}


@dataclass
class MobileThresholds:
    max_punch_distance_m: float
    suspicious_distance_m: float
    high_severity_distance_m: float
    max_accuracy_m: float
    max_daily_hours: float
    standard_day_hours: float
    max_overtime_hours: float
    duplicate_window_min: int
    late_submission_hours: float
    max_age_hours: float

    @classmethod
    def from_settings(cls, **overrides) -> "MobileThresholds":
        values = dict(
            max_punch_distance_m=settings.mobile_max_punch_distance_m,
            suspicious_distance_m=settings.mobile_suspicious_distance_m,
            high_severity_distance_m=settings.mobile_high_severity_distance_m,
            max_accuracy_m=settings.mobile_max_accuracy_m,
            max_daily_hours=settings.mobile_max_daily_hours,
            standard_day_hours=settings.mobile_standard_day_hours,
            max_overtime_hours=settings.mobile_max_overtime_hours,
            duplicate_window_min=settings.mobile_duplicate_window_min,
            late_submission_hours=settings.mobile_late_submission_hours,
            max_age_hours=settings.mobile_max_age_hours,
        )
        values.update(overrides)
        return cls(**values)


class _Decision:
    """Accumulates violations, warnings and reason codes for one submission."""

    def __init__(self):
        self.violations = []
        self.warnings = []
        self.reason_codes = []
        self.requires_approval = False

    def reject(self, code: str, message: str) -> None:
        self.reason_codes.append(code)
        self.violations.append(message)

    def warn(self, code: str, message: str, needs_approval: bool = True) -> None:
        self.reason_codes.append(code)
        self.warnings.append(message)
        if needs_approval:
            self.requires_approval = True


def violation_severity(distance_m: float, thresholds: MobileThresholds) -> str:
    if distance_m > thresholds.high_severity_distance_m:
        return "high"
    if distance_m > thresholds.suspicious_distance_m:
        return "medium"
    return "low"


class MobilePunchValidator:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        learner: GeofenceLearner,
        ingestor: PunchIngestor,
        ledger: Ledger,
        clock: Callable[[], datetime] = now_local,
        executor: Optional[Executor] = None,
        thresholds: Optional[MobileThresholds] = None,
    ):
        self.session_factory = session_factory
        self.learner = learner
        self.ingestor = ingestor
        self.ledger = ledger
        self.clock = clock
        self.executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="geofence")
        self.thresholds = thresholds or MobileThresholds.from_settings()

    def submit_punch(
        self,
        employee_code: str,
        punch_type: str,
        lat: Optional[float],
        lon: Optional[float],
        punch_time: Optional[datetime] = None,
        accuracy: Optional[float] = None,
        device_id: Optional[str] = None,
        raise_on_reject: bool = False,
    ) -> dict:
        """
        Validate a mobile punch and, when it passes, commit it to the ledger.

        Args:
            employee_code: Authenticated employee code
            punch_type: checkin|checkout
            lat: Latitude reported by the device
            lon: Longitude reported by the device
            punch_time: Time of the punch (defaults to now; aware values are converted to local time)
            accuracy: Reported GPS accuracy in meters
            device_id: Client device identifier
            raise_on_reject: Raise ValidationRejection instead of returning a rejected result

        Returns:
            Result dict with is_valid, can_punch, location_type, distance_m, confidence,
            violations, warnings, requires_approval and record ids
        """
        if punch_type not in PUNCH_DIRECTIONS:
            raise ValueError(f"Unknown punch type: {punch_type}")
        t = self.thresholds
        now = self.clock()
        punch_time = to_local_naive(punch_time) if punch_time else now
        direction = PUNCH_DIRECTIONS[punch_type]
        decision = _Decision()

        match = self._check_location(decision, employee_code, lat, lon, accuracy, punch_type)
        self._check_timing(decision, punch_time, now)

        db = self.session_factory()
        try:
            try:
                employee = self.ledger.get_employee(db, employee_code)
                if employee is None or not employee.is_active:
                    decision.reject("unknown_employee", "Employee not found or inactive")
                record = self.ledger.get_record(db, employee_code, punch_time.date())
                if record is not None and record.status == "deleted":
                    record = None
                self._check_hours(decision, record, punch_type, punch_time)
                self._check_duplicate(db, decision, employee_code, direction, record, punch_time)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("Mobile punch lookup failed", employee_code=employee_code, punch_type=punch_type, error=str(e))
                decision.reject("lookup_failed", "Punch could not be checked against attendance records")

            is_valid = not decision.violations
            location_in_range = match is not None and match.distance_m <= t.max_punch_distance_m
            validation = PunchValidationRecord(
                employee_code=employee_code,
                lat=lat,
                lon=lon,
                accuracy_m=accuracy,
                punch_type=punch_type,
                punch_time=punch_time,
                device_id=device_id,
                is_valid=is_valid,
                can_punch=is_valid,
                requires_approval=decision.requires_approval,
                location_type=match.location_type if location_in_range else "unknown",
                distance_m=round(match.distance_m, 1) if match else None,
                matched_cluster_id=match.cluster_id if location_in_range else None,
                confidence=match.confidence if location_in_range else 0.0,
                reason_codes=decision.reason_codes,
                violations=decision.violations,
                warnings=decision.warnings,
            )
            db.add(validation)
            db.flush()
            if match is not None and match.distance_m > t.suspicious_distance_m:
                db.add(GeofenceViolation(
                    validation_id=validation.id,
                    employee_code=employee_code,
                    lat=lat,
                    lon=lon,
                    punch_type=punch_type,
                    violation_type="suspicious_distance",
                    distance_m=round(match.distance_m, 1),
                    severity=violation_severity(match.distance_m, t),
                    punch_time=punch_time,
                ))
            db.commit()

            result = {
                "is_valid": is_valid,
                "can_punch": is_valid,
                "location_type": validation.location_type,
                "distance_m": validation.distance_m,
                "confidence": validation.confidence,
                "violations": list(decision.violations),
                "warnings": list(decision.warnings),
                "reason_codes": list(decision.reason_codes),
                "requires_approval": decision.requires_approval,
                "validation_id": validation.id,
                "attendance_record_id": None,
            }

            if not is_valid:
                create_audit_log(
                    db,
                    entity_type="validation",
                    entity_id=str(validation.id),
                    action="REJECT",
                    actor_id=employee_code,
                    actor_role="employee",
                    source="api",
                    context={
                        "punch_type": punch_type,
                        "punch_time": punch_time.isoformat(),
                        "violations": decision.violations,
                        "reason_codes": decision.reason_codes,
                        "lat": lat,
                        "lon": lon,
                    },
                )
                logger.info("Mobile punch rejected", employee_code=employee_code, punch_type=punch_type, violations=decision.violations)
                if raise_on_reject:
                    raise ValidationRejection(result)
                return result

            event = PunchEvent(employee_code=employee_code, punch_time=punch_time, direction=direction)
            admission, _, outcome = self.ingestor.ingest_one(db, event, "mobile", lat=lat, lon=lon)
            if not admission.accepted:
                result["warnings"].append("Punch already recorded")
                existing = self.ledger.get_record(db, employee_code, punch_time.date())
                result["attendance_record_id"] = existing.id if existing else None
            else:
                result["attendance_record_id"] = outcome.record_id
                if not outcome.applied:
                    result["warnings"].append(f"Punch stored but not applied to attendance: {outcome.reason}")
        finally:
            db.close()

        if location_in_range:
            self._schedule_reinforce(employee_code, match, lat, lon, punch_type)
        logger.info(
            "Mobile punch accepted",
            employee_code=employee_code,
            punch_type=punch_type,
            location_type=result["location_type"],
            requires_approval=result["requires_approval"],
        )
        return result

    def _check_location(
        self,
        decision: _Decision,
        employee_code: str,
        lat: Optional[float],
        lon: Optional[float],
        accuracy: Optional[float],
        punch_type: str,
    ) -> Optional[ClusterMatch]:
        t = self.thresholds
        if lat is None or lon is None:
            decision.reject("gps_missing", "GPS coordinates are required")
            return None

        if accuracy is not None and accuracy > t.max_accuracy_m:
            decision.warn("low_accuracy", f"GPS accuracy too low: {accuracy:.0f}m (maximum: {t.max_accuracy_m:.0f}m)")

        try:
            match = self.learner.resolve_nearest_cluster(employee_code, lat, lon, punch_type)
        except Exception as e:
            logger.error("Geofence lookup failed", employee_code=employee_code, error=str(e))
            decision.reject("location_lookup_failed", "Location could not be verified")
            return None
        if match is None:
            decision.warn("location_unknown", "Location not recognized - punch from unknown location")
            return None

        if match.distance_m > t.max_punch_distance_m:
            decision.reject("too_far", f"Too far from recognized location: {match.distance_m:.1f}m")
        else:
            decision.reason_codes.append("location_matched")
        if match.distance_m > t.suspicious_distance_m:
            decision.reject("suspicious_distance", f"Suspicious distance detected: {match.distance_m:.1f}m")
        return match

    def _check_timing(self, decision: _Decision, punch_time: datetime, now: datetime) -> None:
        t = self.thresholds
        if punch_time > now:
            decision.reject("future_time", "Punch time cannot be in the future")
            return
        age = hours_ago(punch_time, now)
        if age > t.max_age_hours:
            decision.reject("too_old", f"Punch time too old: {age:.1f} hours ago")
        elif age > t.late_submission_hours:
            decision.warn("late_submission", f"Late punch submission: {age:.1f} hours ago")

    def _check_hours(
        self,
        decision: _Decision,
        record: Optional[AttendanceRecord],
        punch_type: str,
        punch_time: datetime,
    ) -> None:
        t = self.thresholds
        if punch_type == "checkin":
            if record is not None and record.check_in is not None and record.check_out is None:
                decision.reject("open_checkin", "Cannot punch in - already punched in without punch out")
            return

        if record is None or record.check_in is None:
            decision.warn("checkout_without_checkin", "No punch in found for today - checkout requires approval")
            return
        if punch_time < record.check_in:
            decision.reject("checkout_before_checkin", "Punch out cannot be before punch in")
            return

        hours = (punch_time - record.check_in).total_seconds() / 3600
        if hours > t.max_daily_hours:
            decision.reject("max_daily_hours", f"Maximum {t.max_daily_hours:g} hours per day exceeded")
        elif hours - t.standard_day_hours > t.max_overtime_hours:
            decision.reject("max_overtime", f"Maximum {t.max_overtime_hours:g} hours overtime exceeded")

    def _check_duplicate(
        self,
        db: Session,
        decision: _Decision,
        employee_code: str,
        direction: str,
        record: Optional[AttendanceRecord],
        punch_time: datetime,
    ) -> None:
        window = timedelta(minutes=self.thresholds.duplicate_window_min)
        recent = (
            db.query(func.count(RawPunchEvent.id))
            .filter(
                RawPunchEvent.employee_code == employee_code,
                RawPunchEvent.direction == direction,
                RawPunchEvent.is_access_control.is_(False),
                RawPunchEvent.punch_time >= punch_time - window,
                RawPunchEvent.punch_time <= punch_time + window,
            )
            .scalar()
        ) or 0
        if not recent and record is not None:
            stamp = record.check_in if direction == "in" else record.check_out
            recent = int(stamp is not None and abs(stamp - punch_time) <= window)
        if recent:
            decision.reject("duplicate", "Duplicate punch detected - already punched recently")

    def _schedule_reinforce(self, employee_code: str, match: ClusterMatch, lat: float, lon: float, punch_type: str) -> None:
        self.executor.submit(self._reinforce, employee_code, match.cluster_id, lat, lon, punch_type)

    def _reinforce(self, employee_code, cluster_id, lat, lon, punch_type) -> None:
        # Runs after the response is decided; a learner failure never affects the punch
        try:
            self.learner.reinforce_cluster(employee_code, cluster_id, lat, lon, punch_type)
        except Exception as e:
            logger.error("Geofence reinforcement failed", employee_code=employee_code, cluster_id=cluster_id, error=str(e))

    def get_validation_stats(self, employee_code: Optional[str] = None, days: Optional[int] = None) -> dict:
        db = self.session_factory()
        try:
            query = db.query(PunchValidationRecord)
            if employee_code:
                query = query.filter(PunchValidationRecord.employee_code == employee_code)
            if days:
                query = query.filter(PunchValidationRecord.punch_time >= self.clock() - timedelta(days=days))
            rows = query.all()
        finally:
            db.close()

        total = len(rows)
        valid = sum(1 for r in rows if r.is_valid)
        by_reason = {}
        for row in rows:
            for code in row.reason_codes or []:
                by_reason[code] = by_reason.get(code, 0) + 1
        distances = [r.distance_m for r in rows if r.distance_m is not None]
        confidences = [r.confidence for r in rows if r.confidence]
        return {
            "total": total,
            "valid": valid,
            "rejected": total - valid,
            "requires_approval": sum(1 for r in rows if r.requires_approval),
            "success_rate": round(valid / total * 100, 2) if total else 0.0,
            "reason_counts": by_reason,
            "average_distance_m": round(sum(distances) / len(distances), 1) if distances else None,
            "average_confidence": round(sum(confidences) / len(confidences), 3) if confidences else None,
        }
