"""
Great-circle distance and travel-time estimates.

Assumption
----------
Distances are Haversine (straight-line) distances, not road distances;
durations derive from a configured average speed.  Routing is owned by an
external collaborator and can replace ``estimate_duration_min`` without
touching callers.

Complexity: O(1) per call.
"""

import math

EARTH_RADIUS_KM = 6_371.0


def haversine_km(
    lat1: float, lng1: float, lat2: float, lng2: float
) -> float:
    """Return the great-circle distance in **km** between two points."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lng2 - lng1)

    h = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


def estimate_duration_min(distance_km: float, average_speed_kmh: float) -> float:
    """Travel time in minutes at a constant average speed."""
    if average_speed_kmh <= 0:
        raise ValueError("average_speed_kmh must be positive")
    return distance_km / average_speed_kmh * 60.0


def offset_point(
    lat: float, lng: float, north_km: float, east_km: float
) -> tuple[float, float]:
    """Shift a coordinate by a small north/east displacement (flat-earth approx.)."""
    dlat = north_km / 111.32
    dlng = east_km / (111.32 * math.cos(math.radians(lat)))
    return lat + dlat, lng + dlng
