from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENABLE_BACKGROUND_TASKS", "false")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("TZ_DEFAULT", "Asia/Karachi")

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from attendance_integrity.db import Base
from attendance_integrity.exceptions import TransientSourceError
from attendance_integrity.models.models import BiometricExemption, Employee
from attendance_integrity.services.events import FaultBus
from attendance_integrity.services.geofence import ClusterMatch, GeofenceLearner, haversine_distance
from attendance_integrity.services.punch_source import PunchEvent, PunchSource


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakePunchSource(PunchSource):
    """Serves punches from memory; can be told to fail the next N calls."""

    def __init__(self, events: Optional[List[PunchEvent]] = None):
        self.events: List[PunchEvent] = list(events or [])
        self.fail_next = 0
        self.time_calls = []
        self.id_calls = []

    def add(self, *events: PunchEvent) -> None:
        self.events.extend(events)

    def _maybe_fail(self):
        if self.fail_next:
            self.fail_next -= 1
            raise TransientSourceError("source unavailable", status_code=503)

    def fetch_by_time_range(self, start, end):
        self.time_calls.append((start, end))
        self._maybe_fail()
        return [e for e in self.events if start <= e.punch_time <= end]

    def fetch_by_id_range(self, start_id, end_id):
        self.id_calls.append((start_id, end_id))
        self._maybe_fail()
        return [e for e in self.events if e.external_id is not None and start_id <= e.external_id <= end_id]


@dataclass
class FakeCluster:
    cluster_id: int
    employee_code: str
    lat: float
    lon: float
    location_type: str = "office"
    confidence: float = 0.9
    radius_m: float = 200.0


@dataclass
class FakeLearner(GeofenceLearner):
    clusters: List[FakeCluster] = field(default_factory=list)
    reinforced: List[tuple] = field(default_factory=list)

    def resolve_nearest_cluster(self, employee_code, lat, lon, punch_type):
        best = None
        for c in self.clusters:
            if c.employee_code != employee_code:
                continue
            d = haversine_distance(lat, lon, c.lat, c.lon)
            if best is None or d < best.distance_m:
                best = ClusterMatch(c.cluster_id, c.location_type, c.lat, c.lon, c.radius_m, c.confidence, d)
        return best

    def reinforce_cluster(self, employee_code, cluster_id, lat, lon, punch_type):
        self.reinforced.append((employee_code, cluster_id))


class ImmediateExecutor:
    """Runs submitted work inline so background effects are visible to assertions."""

    def submit(self, fn, *args, **kwargs):
        fn(*args, **kwargs)


def vendor_punch(external_id: int, code: str, when: datetime, direction: str = "in", alias: str = "Main Gate") -> PunchEvent:
    return PunchEvent(
        employee_code=code,
        punch_time=when,
        direction=direction,
        external_id=external_id,
        terminal_sn="T-1",
        terminal_alias=alias,
        payload={"id": external_id, "emp_code": code},
    )


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 3, 6, 10, 0, 0))


@pytest.fixture
def fault_bus():
    return FaultBus()


@pytest.fixture
def fault_log(fault_bus):
    events = []
    fault_bus.subscribe(events.append)
    return events


@pytest.fixture
def add_employees(session_factory):
    def _add(*codes: str, active: bool = True, system_account: bool = False) -> Dict[str, int]:
        session = session_factory()
        try:
            ids = {}
            for code in codes:
                emp = Employee(employee_code=code, full_name=f"Employee {code}", is_active=active, system_account=system_account)
                session.add(emp)
                session.flush()
                ids[code] = emp.id
            session.commit()
            return ids
        finally:
            session.close()

    return _add


@pytest.fixture
def add_exemption(session_factory):
    def _add(code: str, exemption_type: str = "individual", active: bool = True) -> None:
        session = session_factory()
        try:
            session.add(BiometricExemption(employee_code=code, exemption_type=exemption_type, is_active=active))
            session.commit()
        finally:
            session.close()

    return _add


def at(day: date, hour: int, minute: int = 0, second: int = 0) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, second)
