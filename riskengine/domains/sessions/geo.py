"""Great-circle distance and travel-velocity evaluation."""

import math

from .models import GeoSample, NotEvaluable, VelocityResult

EARTH_RADIUS_KM = 6371.0


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance in km between two lat/lon points."""
    lat1_r, lon1_r = math.radians(lat1), math.radians(lon1)
    lat2_r, lon2_r = math.radians(lat2), math.radians(lon2)
    dlat = lat2_r - lat1_r
    dlon = lon2_r - lon1_r
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(min(a, 1.0)))


def _valid_coordinates(lat: float | None, lon: float | None) -> bool:
    if lat is None or lon is None:
        return False
    if math.isnan(lat) or math.isnan(lon):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def evaluate(prev: GeoSample, curr: GeoSample) -> VelocityResult | NotEvaluable:
    """Compute the speed required to travel from ``prev`` to ``curr``.

    Returns NotEvaluable when either sample lacks valid coordinates or when
    ``curr`` is not strictly later than ``prev``.
    """
    if not _valid_coordinates(prev.latitude, prev.longitude):
        return NotEvaluable(reason="previous_location_unavailable")
    if not _valid_coordinates(curr.latitude, curr.longitude):
        return NotEvaluable(reason="current_location_unavailable")

    hours = (curr.timestamp - prev.timestamp).total_seconds() / 3600
    if hours <= 0:
        return NotEvaluable(reason="non_positive_elapsed_time")

    distance_km = haversine(prev.latitude, prev.longitude, curr.latitude, curr.longitude)
    return VelocityResult(
        distance_km=distance_km,
        hours_elapsed=hours,
        required_speed_kmh=distance_km / hours,
    )
