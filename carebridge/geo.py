import math
from typing import Tuple

EARTH_RADIUS_KM = 6371


def calculate_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Calculate distance between two coordinates using Haversine formula
    Returns distance in kilometers
    """
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(dlng / 2) ** 2)

    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def meters_to_km(meters: float) -> float:
    return meters / 1000.0


def bounding_box(lat: float, lng: float, radius_km: float) -> Tuple[float, float, float, float]:
    """
    Coarse (min_lat, max_lat, min_lng, max_lng) box around a point.
    Used as an indexed prefilter before the exact haversine check.
    """
    lat_delta = math.degrees(radius_km / EARTH_RADIUS_KM)
    cos_lat = math.cos(math.radians(lat))
    if cos_lat < 1e-6:
        lng_delta = 180.0
    else:
        lng_delta = min(180.0, math.degrees(radius_km / (EARTH_RADIUS_KM * cos_lat)))

    return (
        max(-90.0, lat - lat_delta),
        min(90.0, lat + lat_delta),
        lng - lng_delta,
        lng + lng_delta,
    )
