from __future__ import annotations

from dataclasses import dataclass
from math import asin, cos, degrees, pi, radians, sin, sqrt

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE = EARTH_RADIUS_KM * pi / 180
# Added to each half-width to absorb float rounding at exactly the radius.
BOX_SLACK_DEGREES = 1e-9


def normalize_coordinate(lat: float, lon: float) -> tuple[float, float]:
    """Canonical form of a point: longitude in [-180, 180), longitude 0 at the poles."""
    if abs(lat) >= 90.0:
        return (90.0 if lat > 0 else -90.0), 0.0
    lon = (lon + 180.0) % 360.0 - 180.0
    return lat, lon


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in km.

    Coordinates naming the same physical point (either pole at any longitude,
    or longitude 180 and -180) are equal and return exactly 0.
    """
    if normalize_coordinate(lat1, lon1) == normalize_coordinate(lat2, lon2):
        return 0.0
    lon1, lat1, lon2, lat2 = map(radians, [lon1, lat1, lon2, lat2])
    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * asin(sqrt(min(1.0, a)))


@dataclass(frozen=True, slots=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    # Empty when every longitude qualifies; two ranges when the box crosses the antimeridian.
    lon_ranges: tuple[tuple[float, float], ...]

    @property
    def any_longitude(self) -> bool:
        return not self.lon_ranges

    def contains(self, lat: float, lon: float) -> bool:
        if not self.min_lat <= lat <= self.max_lat:
            return False
        if self.any_longitude:
            return True
        _, lon = normalize_coordinate(lat, lon)
        if lon == -180.0:
            lon_options = (-180.0, 180.0)
        else:
            lon_options = (lon,)
        return any(low <= value <= high for low, high in self.lon_ranges for value in lon_options)


def bounding_box(lat: float, lon: float, radius_km: float) -> BoundingBox:
    """Pre-filter box around a point; callers still confirm with haversine_km.

    The longitude half-width is the exact extent of a spherical cap,
    asin(sin(r) / cos(lat)). When the cap reaches a pole every longitude
    qualifies, and a box crossing the antimeridian is split in two.
    """
    angular = radius_km / EARTH_RADIUS_KM
    lat_delta = degrees(angular) + BOX_SLACK_DEGREES
    min_lat, max_lat = lat - lat_delta, lat + lat_delta
    if min_lat <= -90.0 or max_lat >= 90.0:
        return BoundingBox(max(min_lat, -90.0), min(max_lat, 90.0), ())

    ratio = sin(angular) / cos(radians(lat))
    if ratio >= 1.0:
        return BoundingBox(min_lat, max_lat, ())
    lon_delta = degrees(asin(ratio)) + BOX_SLACK_DEGREES
    if lon_delta >= 180.0:
        return BoundingBox(min_lat, max_lat, ())

    _, lon = normalize_coordinate(lat, lon)
    low, high = lon - lon_delta, lon + lon_delta
    if low <= -180.0:
        ranges = ((low + 360.0, 180.0), (-180.0, high))
    elif high >= 180.0:
        ranges = ((low, 180.0), (-180.0, high - 360.0))
    else:
        ranges = ((low, high),)
    return BoundingBox(min_lat, max_lat, ranges)
