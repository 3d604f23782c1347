from __future__ import annotations

import math

EARTH_RADIUS_KM = 6371.0
PICKUP_MINUTES = 15
AVERAGE_SPEED_KMH = 30.0


def distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle (haversine) distance rounded to 2 decimal places."""
    d_lat = math.radians(float(lat2) - float(lat1))
    d_lon = math.radians(float(lon2) - float(lon1))
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(float(lat1))) * math.cos(math.radians(float(lat2))) * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return round(EARTH_RADIUS_KM * c, 2)


def estimate_delivery_minutes(distance: float | None) -> int:
    if distance is None:
        return PICKUP_MINUTES
    return int(round(PICKUP_MINUTES + (float(distance) / AVERAGE_SPEED_KMH) * 60))
