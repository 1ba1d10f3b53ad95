"""
Geolocation utilities

Great-circle distance and radius filtering over anything that exposes
``latitude``/``longitude`` attributes, or plain ``(lat, lng)`` tuples.
"""

import math
from typing import Any, Iterable, List, Sequence, Tuple, TypeVar

# Mean Earth radius (IUGG), meters
EARTH_RADIUS_M = 6371008.8

T = TypeVar("T")


def coordinates_of(point: Any) -> Tuple[float, float]:
    """Extract (latitude, longitude) from a point-like value"""
    if isinstance(point, Sequence) and not isinstance(point, str) and len(point) == 2:
        return float(point[0]), float(point[1])
    return float(point.latitude), float(point.longitude)


def distance_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Haversine distance between two coordinates in meters"""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = (math.sin(d_phi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2)
    # Rounding can push a slightly above 1 for antipodal points
    a = min(1.0, max(0.0, a))
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))


def distance_between(a: Any, b: Any) -> float:
    lat1, lng1 = coordinates_of(a)
    lat2, lng2 = coordinates_of(b)
    return distance_meters(lat1, lng1, lat2, lng2)


def within(radius_m: float, center: Any, points: Iterable[T]) -> List[T]:
    """Points no farther than ``radius_m`` from ``center``, in input order"""
    return [point for point in points if distance_between(center, point) <= radius_m]


def nearest_first(center: Any, points: Iterable[T]) -> List[T]:
    """Points sorted by ascending distance from ``center``; ties keep input order"""
    return sorted(points, key=lambda point: distance_between(center, point))
