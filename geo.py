"""Geographic utilities for crew distance calculations."""

import math


def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Calculate distance in miles between two coordinates using Haversine formula.

    Args:
        lat1, lng1: First point (degrees)
        lat2, lng2: Second point (degrees)

    Returns:
        Distance in miles
    """
    R = 3959  # Earth's radius in miles

    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lng = math.radians(lng2 - lng1)

    a = (
        math.sin(delta_lat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return R * c


def coordinates_of(row: dict, lat_key: str = "home_latitude", lng_key: str = "home_longitude") -> tuple[float, float] | None:
    """
    Read a (lat, lng) pair from a backend row.

    Returns None when either coordinate is missing or not numeric.
    """
    lat = row.get(lat_key)
    lng = row.get(lng_key)
    if lat is None or lng is None:
        return None
    try:
        return float(lat), float(lng)
    except (TypeError, ValueError):
        return None
