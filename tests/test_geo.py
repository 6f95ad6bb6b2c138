from math import asin, atan2, cos, degrees, radians, sin

import pytest

from listing_trust.services.geo import EARTH_RADIUS_KM, bounding_box, haversine_km, normalize_coordinate


def test_haversine_is_symmetric() -> None:
    pairs = [
        ((6.4281, 3.4219), (6.4285, 3.4223)),
        ((51.5007, -0.1246), (48.8584, 2.2945)),
        ((-33.8568, 151.2153), (35.6586, 139.7454)),
    ]
    for (lat1, lon1), (lat2, lon2) in pairs:
        assert haversine_km(lat1, lon1, lat2, lon2) == pytest.approx(haversine_km(lat2, lon2, lat1, lon1))


def test_haversine_is_zero_only_for_identical_points() -> None:
    assert haversine_km(6.4281, 3.4219, 6.4281, 3.4219) == 0.0
    assert haversine_km(6.4281, 3.4219, 6.4281, 3.42191) > 0.0


@pytest.mark.parametrize(
    ("first", "second"),
    [
        ((90.0, 0.0), (90.0, 180.0)),
        ((-90.0, 45.0), (-90.0, -120.0)),
        ((0.0, 180.0), (0.0, -180.0)),
        ((12.5, 190.0), (12.5, -170.0)),
    ],
)
def test_haversine_treats_equivalent_coordinates_as_the_same_point(first, second) -> None:
    assert normalize_coordinate(*first) == normalize_coordinate(*second)
    assert haversine_km(*first, *second) == 0.0


def test_haversine_is_positive_across_the_antimeridian() -> None:
    assert haversine_km(0.0, 179.9998, 0.0, -179.9998) == pytest.approx(0.0445, abs=0.001)


def test_haversine_matches_known_distance() -> None:
    # London to Paris is roughly 340 km.
    assert haversine_km(51.5007, -0.1246, 48.8584, 2.2945) == pytest.approx(340.0, abs=5.0)


def test_bounding_box_contains_points_at_the_radius() -> None:
    lat, lon = 60.0, 10.0
    box = bounding_box(lat, lon, 1.0)

    assert box.min_lat < lat < box.max_lat
    assert len(box.lon_ranges) == 1
    # A point 0.99 km due east at 60N must stay inside the longitude bounds.
    east = lon + 0.99 / (111.195 * 0.5)
    assert haversine_km(lat, lon, lat, east) < 1.0
    assert box.contains(lat, east)
    assert not box.contains(lat, lon + 0.1)


def test_bounding_box_splits_across_the_antimeridian() -> None:
    box = bounding_box(0.0, -179.9998, 0.1)

    assert len(box.lon_ranges) == 2
    assert haversine_km(0.0, -179.9998, 0.0, 179.9998) <= 0.1
    assert box.contains(0.0, 179.9998)
    assert box.contains(0.0, -179.9999)
    assert box.contains(0.0, 180.0)
    assert not box.contains(0.0, 179.0)


def test_bounding_box_drops_longitude_filter_near_poles() -> None:
    box = bounding_box(89.9996, 0.0, 0.1)

    assert box.any_longitude
    assert box.max_lat == 90.0
    assert haversine_km(89.9996, 0.0, 89.9996, 180.0) <= 0.1
    assert box.contains(89.9996, 180.0)
    assert not box.contains(89.99, 180.0)


@pytest.mark.parametrize(
    ("lat", "lon", "radius_km"),
    [(0.0, 179.9995, 0.1), (-33.8568, 151.2153, 10.0), (70.0, -179.99, 5.0), (-89.95, 20.0, 10.0)],
)
def test_bounding_box_keeps_every_point_on_the_circle(lat: float, lon: float, radius_km: float) -> None:
    box = bounding_box(lat, lon, radius_km)
    angular = radius_km * 0.999 / EARTH_RADIUS_KM
    for step in range(72):
        bearing = radians(step * 5)
        point_lat = asin(sin(radians(lat)) * cos(angular) + cos(radians(lat)) * sin(angular) * cos(bearing))
        point_lon = radians(lon) + atan2(
            sin(bearing) * sin(angular) * cos(radians(lat)),
            cos(angular) - sin(radians(lat)) * sin(point_lat),
        )
        target = (degrees(point_lat), (degrees(point_lon) + 180.0) % 360.0 - 180.0)
        assert haversine_km(lat, lon, *target) <= radius_km
        assert box.contains(*target), target
