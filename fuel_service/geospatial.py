"""
Geospatial helpers for live delivery tracking.

Distances are great-circle kilometres (haversine, spherical Earth).
Nothing here validates coordinates; out-of-range input gives garbage out.
"""

import math
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional

from fuel_service.schemas import ProximityStatus

EARTH_RADIUS_KM = 6371
DEFAULT_SPEED_KMH = 40  # average city driving

# Geofence thresholds (km)
ARRIVAL_THRESHOLD_KM = 0.05  # 50 m
NEARBY_THRESHOLD_KM = 0.1    # 100 m


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance between two points in kilometers using Haversine formula."""
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)

    a = (math.sin(delta_lat / 2) ** 2 +
         math.cos(lat1_rad) * math.cos(lat2_rad) *
         math.sin(delta_lon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def estimate_eta(distance_km: float, speed_kmh: float = DEFAULT_SPEED_KMH,
                 now: Optional[datetime] = None) -> Dict:
    """Minutes to cover distance_km at speed_kmh (rounded up) and the arrival time."""
    now = now or datetime.utcnow()
    minutes = math.ceil(distance_km / speed_kmh * 60)
    return {
        "minutes": minutes,
        "arrival_timestamp": now + timedelta(minutes=minutes),
    }


def is_within_geofence(distance_km: float, threshold_km: float = ARRIVAL_THRESHOLD_KM) -> bool:
    return distance_km <= threshold_km


def proximity_status(distance_km: float) -> ProximityStatus:
    if distance_km <= ARRIVAL_THRESHOLD_KM:
        return ProximityStatus.ARRIVED
    if distance_km <= NEARBY_THRESHOLD_KM:
        return ProximityStatus.NEARBY
    return ProximityStatus.FAR


def route_distance(points: Iterable[Dict]) -> float:
    """
    Total length of a path visiting points in the given order.

    Each point is a mapping with "latitude" and "longitude" keys, which is
    what location rows look like.
    """
    total = 0.0
    previous = None
    for point in points:
        if previous is not None:
            total += haversine_distance(
                previous["latitude"], previous["longitude"],
                point["latitude"], point["longitude"],
            )
        previous = point
    return total
