"""
Geofence service.
Haversine distance plus the learner interface the mobile validator reads from.
The clustering that builds GeofenceCluster rows lives outside this service.
"""
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Callable

import structlog
from sqlalchemy.orm import Session

from ..models.models import GeofenceCluster

logger = structlog.get_logger(__name__)


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in meters
    """
    # Earth radius in meters
    R = 6371000

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return R * c


@dataclass
class ClusterMatch:
    cluster_id: Optional[int]
    location_type: str
    center_lat: float
    center_lon: float
    radius_m: float
    confidence: float
    distance_m: float


class GeofenceLearner:
    def resolve_nearest_cluster(
        self, employee_code: str, lat: float, lon: float, punch_type: str
    ) -> Optional[ClusterMatch]:
        raise NotImplementedError

    def reinforce_cluster(
        self, employee_code: str, cluster_id: Optional[int], lat: float, lon: float, punch_type: str
    ) -> None:
        raise NotImplementedError


class ClusterTableLearner(GeofenceLearner):
    """Resolves against the geofence_clusters table; reinforcement bumps usage counters."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def resolve_nearest_cluster(self, employee_code, lat, lon, punch_type):
        db = self.session_factory()
        try:
            clusters = (
                db.query(GeofenceCluster)
                .filter(GeofenceCluster.employee_code == employee_code, GeofenceCluster.is_active.is_(True))
                .all()
            )
            best = None
            for cluster in clusters:
                distance = haversine_distance(lat, lon, cluster.center_lat, cluster.center_lon)
                if best is None or distance < best.distance_m:
                    best = ClusterMatch(
                        cluster_id=cluster.id,
                        location_type=cluster.location_type,
                        center_lat=cluster.center_lat,
                        center_lon=cluster.center_lon,
                        radius_m=cluster.radius_m,
                        confidence=cluster.confidence,
                        distance_m=distance,
                    )
            return best
        finally:
            db.close()

    def reinforce_cluster(self, employee_code, cluster_id, lat, lon, punch_type):
        if cluster_id is None:
            return
        db = self.session_factory()
        try:
            cluster = db.get(GeofenceCluster, cluster_id)
            if cluster is None or cluster.employee_code != employee_code:
                return
            cluster.punch_count = (cluster.punch_count or 0) + 1
            cluster.confidence = min(1.0, round((cluster.confidence or 0.0) + 0.01, 4))
            cluster.last_seen_at = datetime.utcnow()
            db.commit()
            logger.info("Geofence cluster reinforced", cluster_id=cluster_id, employee_code=employee_code)
        finally:
            db.close()
