import math
from dataclasses import dataclass

from backend.config import DEFAULT_ALLOWED_RADIUS_METERS
from backend.schemas import ScanResult, finite_float

EARTH_RADIUS_METERS = 6_371_000.0
GUARD_LOCATION_MISSING = "Guard location missing"


@dataclass(frozen=True)
class GeofenceVerdict:
    result: ScanResult
    failure_reason: str | None
    distance_meters: float | None = None
    effective_distance_meters: float | None = None
    accuracy_meters: float = 0.0
    allowed_radius: float | None = None

    @property
    def passed(self) -> bool:
        return self.result == "passed"


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def _format_radius(radius: float) -> str:
    return f"{radius:.1f}".rstrip("0").rstrip(".")


def _normalize_accuracy(accuracy: float | None) -> float:
    value = finite_float(accuracy)
    if value is None or value < 0:
        return 0.0
    return value


def evaluate_geofence(
    *,
    guard_latitude: float | None,
    guard_longitude: float | None,
    accuracy: float | None,
    checkpoint_latitude: float | None,
    checkpoint_longitude: float | None,
    allowed_radius: float | None = None,
) -> GeofenceVerdict:
    """
    Decide whether a reported position is inside a checkpoint's geofence.

    Reported GPS accuracy is an error margin subtracted from the distance, so
    a poor fix can only widen the tolerance. Checkpoints without coordinates
    are not geofenced at all.
    """
    cp_lat = finite_float(checkpoint_latitude)
    cp_lon = finite_float(checkpoint_longitude)
    radius = finite_float(allowed_radius)
    if radius is None or radius < 0:
        radius = DEFAULT_ALLOWED_RADIUS_METERS
    acc = _normalize_accuracy(accuracy)

    if cp_lat is None or cp_lon is None:
        return GeofenceVerdict(result="passed", failure_reason=None, accuracy_meters=acc, allowed_radius=radius)

    lat = finite_float(guard_latitude)
    lon = finite_float(guard_longitude)
    if lat is None or lon is None:
        return GeofenceVerdict(
            result="failed",
            failure_reason=GUARD_LOCATION_MISSING,
            accuracy_meters=acc,
            allowed_radius=radius,
        )

    distance = haversine_meters(lat, lon, cp_lat, cp_lon)
    effective = max(0.0, distance - acc)
    if effective <= radius:
        return GeofenceVerdict(
            result="passed",
            failure_reason=None,
            distance_meters=distance,
            effective_distance_meters=effective,
            accuracy_meters=acc,
            allowed_radius=radius,
        )

    reason = (
        f"Out of range: effective distance {effective:.1f}m "
        f"(accuracy {acc:.1f}m) exceeds allowed radius of {_format_radius(radius)}m"
    )
    return GeofenceVerdict(
        result="failed",
        failure_reason=reason,
        distance_meters=distance,
        effective_distance_meters=effective,
        accuracy_meters=acc,
        allowed_radius=radius,
    )
