from datetime import datetime, date
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Integer,
    Float,
    JSON,
    UniqueConstraint,
    BigInteger,
    Text,
    Index,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


# Punch times are naive wall-clock values in settings.tz_default (the terminals report local time).
# Bookkeeping columns (ingested_at, created_at, ...) are UTC.


class Employee(Base):
    """Employee reference data (owned by HR; read by the engine)"""
    __tablename__ = "employee_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(255))
    department: Mapped[Optional[str]] = mapped_column(String(100))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    system_account: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)  # service / admin logins, never counted
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class BiometricExemption(Base):
    """Employees allowed to skip biometric capture; counted present by exemption"""
    __tablename__ = "biometric_exemptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_code: Mapped[Optional[str]] = mapped_column(String(50), index=True)
    department: Mapped[Optional[str]] = mapped_column(String(100))
    exemption_type: Mapped[str] = mapped_column(String(20), default="individual", nullable=False)  # individual|department
    reason: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class RawPunchEvent(Base):
    """Immutable punch as received from a terminal poll, a heal, or a mobile client"""
    __tablename__ = "raw_punch_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[Optional[int]] = mapped_column(BigInteger, unique=True)  # vendor transaction id; null for mobile
    dedup_key: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)  # ext:<id> | mob:<code>:<dir>:<bucket>
    employee_code: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    punch_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)  # in|out|unknown
    ingest_source: Mapped[str] = mapped_column(String(10), nullable=False)  # poll|heal|mobile
    terminal_sn: Mapped[Optional[str]] = mapped_column(String(100))
    terminal_alias: Mapped[Optional[str]] = mapped_column(String(255))
    is_access_control: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payload: Mapped[Optional[dict]] = mapped_column(JSON)
    duplicate_of_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("raw_punch_events.id", ondelete="SET NULL"))
    ingested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('idx_raw_punch_time', 'punch_time'),
        Index('idx_raw_punch_employee_time', 'employee_code', 'punch_time'),
    )


class ConfirmedIdGap(Base):
    """Id range a heal fetched successfully without finding any punch for the day"""
    __tablename__ = "confirmed_id_gaps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    calendar_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    start_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    end_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    confirmed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('calendar_date', 'start_id', 'end_id', name='uq_confirmed_gap_range'),
    )


class AttendanceRecord(Base):
    """Canonical per-employee, per-day attendance projection"""
    __tablename__ = "attendance_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_id: Mapped[int] = mapped_column(Integer, ForeignKey("employee_records.id", ondelete="CASCADE"), nullable=False, index=True)
    employee_code: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    calendar_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    check_in: Mapped[Optional[datetime]] = mapped_column(DateTime)
    check_out: Mapped[Optional[datetime]] = mapped_column(DateTime)
    total_hours: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="incomplete", nullable=False)  # present|complete|incomplete|absent|non_bio|deleted
    punch_source: Mapped[Optional[str]] = mapped_column(String(10))  # poll|heal|mobile|operator
    geo_lat: Mapped[Optional[float]] = mapped_column(Float)
    geo_lon: Mapped[Optional[float]] = mapped_column(Float)
    forced_checkout_by: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=datetime.utcnow)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    employee = relationship("Employee")

    __table_args__ = (
        UniqueConstraint("employee_id", "calendar_date", name="uq_attendance_employee_date"),
        Index('idx_attendance_date_status', 'calendar_date', 'status'),
    )
    __mapper_args__ = {"version_id_col": version_id}


class GeofenceCluster(Base):
    """Learned punch location for an employee (maintained by the geofence learner)"""
    __tablename__ = "geofence_clusters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_code: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    center_lat: Mapped[float] = mapped_column(Float, nullable=False)
    center_lon: Mapped[float] = mapped_column(Float, nullable=False)
    radius_m: Mapped[float] = mapped_column(Float, default=200.0, nullable=False)
    location_type: Mapped[str] = mapped_column(String(20), default="office", nullable=False)  # home|office|field_site
    confidence: Mapped[float] = mapped_column(Float, default=0.5, nullable=False)  # 0..1
    punch_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class PunchValidationRecord(Base):
    """Decision trail for every evaluated mobile punch, accepted or not"""
    __tablename__ = "punch_validation_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_code: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    lat: Mapped[Optional[float]] = mapped_column(Float)
    lon: Mapped[Optional[float]] = mapped_column(Float)
    accuracy_m: Mapped[Optional[float]] = mapped_column(Float)
    punch_type: Mapped[str] = mapped_column(String(10), nullable=False)  # checkin|checkout
    punch_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    device_id: Mapped[Optional[str]] = mapped_column(String(100))
    is_valid: Mapped[bool] = mapped_column(Boolean, nullable=False)
    can_punch: Mapped[bool] = mapped_column(Boolean, nullable=False)
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    location_type: Mapped[str] = mapped_column(String(20), nullable=False)  # home|office|field_site|unknown
    distance_m: Mapped[Optional[float]] = mapped_column(Float)
    matched_cluster_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("geofence_clusters.id", ondelete="SET NULL"))
    confidence: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    reason_codes: Mapped[list] = mapped_column(JSON, default=list)
    violations: Mapped[list] = mapped_column(JSON, default=list)
    warnings: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, index=True)

    __table_args__ = (
        Index('idx_validation_employee_time', 'employee_code', 'punch_time'),
    )


class GeofenceViolation(Base):
    """Suspicious-distance punches, kept regardless of the punch outcome"""
    __tablename__ = "geofence_violations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    validation_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("punch_validation_records.id", ondelete="SET NULL"))
    employee_code: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lon: Mapped[float] = mapped_column(Float, nullable=False)
    punch_type: Mapped[str] = mapped_column(String(10), nullable=False)
    violation_type: Mapped[str] = mapped_column(String(40), nullable=False)
    distance_m: Mapped[float] = mapped_column(Float, nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False)  # low|medium|high
    punch_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class ConsistencySnapshot(Base):
    """Result of one consistency check"""
    __tablename__ = "consistency_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    checked_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    check_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_employees: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unique_attendees: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    non_bio_exempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_attendance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    absentees: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    attendance_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    is_consistent: Mapped[bool] = mapped_column(Boolean, nullable=False)
    issues: Mapped[list] = mapped_column(JSON, default=list)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class AuditLog(Base):
    """Append-only audit log for heals, sweeps and operator ledger actions"""
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # attendance|raw_punch|gap|validation
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # HEAL|FORCE_CHECKOUT|DELETE|DUPLICATE_SWEEP|REJECT
    actor_id: Mapped[Optional[str]] = mapped_column(String(100), index=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))  # admin|operator|employee|system
    source: Mapped[Optional[str]] = mapped_column(String(50))  # api|scheduler|cli|system
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)  # Before/after diff
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
    )


class CacheEntry(Base):
    """Shared TTL cache rows (CACHE_BACKEND=database)"""
    __tablename__ = "cache_entries"

    key: Mapped[str] = mapped_column(String(200), primary_key=True)
    value: Mapped[Optional[dict]] = mapped_column(JSON)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
