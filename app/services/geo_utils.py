"""Small geometry helpers for candidate placement."""

from __future__ import annotations

import math
from typing import Iterable, List, Optional, Sequence, Tuple

EARTH_RADIUS_M = 6371000.0
# Rough conversion from squared degrees to km² at mid latitudes.
AREA_DEGREE_FACTOR = 12400.0


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in metres."""

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def polygon_centroid(ring: Sequence[Sequence[float]]) -> Tuple[float, float]:
    """Mean of ``[lng, lat]`` ring coordinates, returned as ``(lat, lng)``."""

    if not ring:
        raise ValueError("Polygon ring is empty")
    points = list(ring)
    if len(points) > 1 and list(points[0]) == list(points[-1]):
        points = points[:-1]
    lng = sum(point[0] for point in points) / len(points)
    lat = sum(point[1] for point in points) / len(points)
    return lat, lng


def polygon_area_km2(ring: Sequence[Sequence[float]]) -> float:
    """Shoelace area of a ``[lng, lat]`` ring, scaled to an approximate km²."""

    if len(ring) < 3:
        return 0.0
    total = 0.0
    for index in range(len(ring)):
        x1, y1 = ring[index][0], ring[index][1]
        x2, y2 = ring[(index + 1) % len(ring)][0], ring[(index + 1) % len(ring)][1]
        total += x1 * y2 - x2 * y1
    return abs(total) / 2 * AREA_DEGREE_FACTOR


def point_in_bounds(lat: float, lng: float, north: float, south: float, east: float, west: float) -> bool:
    if not south <= lat <= north:
        return False
    if west <= east:
        return west <= lng <= east
    # Bounds crossing the antimeridian.
    return lng >= west or lng <= east


def nearest_distance_m(lat: float, lng: float, points: Iterable[Tuple[float, float]]) -> Optional[float]:
    distances = [haversine_m(lat, lng, other_lat, other_lng) for other_lat, other_lng in points]
    return min(distances) if distances else None


def mean_pairwise_distance_m(points: Sequence[Tuple[float, float]]) -> float:
    distances: List[float] = []
    for i in range(len(points)):
        for j in range(i + 1, len(points)):
            distances.append(haversine_m(points[i][0], points[i][1], points[j][0], points[j][1]))
    return sum(distances) / len(distances) if distances else 0.0


__all__ = [
    "EARTH_RADIUS_M",
    "haversine_m",
    "mean_pairwise_distance_m",
    "nearest_distance_m",
    "point_in_bounds",
    "polygon_area_km2",
    "polygon_centroid",
]
