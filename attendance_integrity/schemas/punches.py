from datetime import date, datetime
from typing import List, Optional
from enum import Enum

from pydantic import BaseModel, Field


class PunchType(str, Enum):
    checkin = "checkin"
    checkout = "checkout"


class LocationType(str, Enum):
    home = "home"
    office = "office"
    field_site = "field_site"
    unknown = "unknown"


class MobilePunchIn(BaseModel):
    punch_type: PunchType
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    accuracy: Optional[float] = Field(default=None, ge=0)
    timestamp: Optional[datetime] = None  # defaults to server time
    device_id: Optional[str] = Field(default=None, max_length=100)


class MobilePunchResult(BaseModel):
    is_valid: bool
    can_punch: bool
    location_type: LocationType
    distance_m: Optional[float] = None
    confidence: float = 0.0
    violations: List[str] = []
    warnings: List[str] = []
    reason_codes: List[str] = []
    requires_approval: bool = False
    validation_id: Optional[int] = None
    attendance_record_id: Optional[int] = None


class AttendanceRecordOut(BaseModel):
    id: int
    employee_code: str
    calendar_date: date
    check_in: Optional[datetime] = None
    check_out: Optional[datetime] = None
    total_hours: float
    status: str
    punch_source: Optional[str] = None
    geo_lat: Optional[float] = None
    geo_lon: Optional[float] = None
    forced_checkout_by: Optional[str] = None

    class Config:
        from_attributes = True


class ForceCheckoutIn(BaseModel):
    checkout_time: datetime
    reason: Optional[str] = None


class VoidRecordIn(BaseModel):
    reason: Optional[str] = None
