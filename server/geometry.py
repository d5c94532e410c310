"""Geo math shared by stop detection, hotspot matching and home checks."""

import math

from errors import ValidationError

EARTH_RADIUS_M = 6_371_000
METERS_PER_DEGREE = 111_000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in metres between two WGS-84 points."""
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def degree_box(lat: float, lon: float, radius_m: float) -> tuple[float, float, float, float]:
    """Return (min_lat, max_lat, min_lon, max_lon) enclosing a circle of radius_m.

    Only a pre-filter for SQL queries; callers confirm with haversine_m.
    """
    dlat = radius_m / METERS_PER_DEGREE
    cos_lat = math.cos(math.radians(lat))
    # Longitude degrees shrink towards the poles
    dlon = 180.0 if cos_lat < 1e-6 else min(180.0, dlat / cos_lat)
    return lat - dlat, lat + dlat, lon - dlon, lon + dlon


def lon_ranges(min_lon: float, max_lon: float) -> list[tuple[float, float]]:
    """Split a degree_box longitude span into ranges inside [-180, 180].

    A box that crosses the antimeridian becomes two ranges.
    """
    if max_lon - min_lon >= 360.0:
        return [(-180.0, 180.0)]
    if min_lon < -180.0:
        return [(min_lon + 360.0, 180.0), (-180.0, max_lon)]
    if max_lon > 180.0:
        return [(min_lon, 180.0), (-180.0, max_lon - 360.0)]
    return [(min_lon, max_lon)]


def check_coordinates(lat, lon) -> None:
    if lat is None or lon is None:
        raise ValidationError("latitude and longitude are required")
    if not -90.0 <= lat <= 90.0:
        raise ValidationError(f"latitude out of range: {lat}")
    if not -180.0 <= lon <= 180.0:
        raise ValidationError(f"longitude out of range: {lon}")
