"""Radius matching against hotspots, driver homes and geofence zones.

Every search pre-filters with a degree bounding box in SQL and makes the final
decision with the true haversine distance.
"""

import datetime
import logging
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from errors import NotFoundError, ValidationError
from geocoding import ReverseGeocoder
from geometry import check_coordinates, degree_box, haversine_m, lon_ranges
from models import LOCATION_TYPES, DriverHome, GeofenceZone, Hotspot, Stop

logger = logging.getLogger(__name__)

HOTSPOT_RADIUS_M = 250.0
NEARBY_LIMIT = 10

DEFAULT_HOME_RADIUS_M = 200.0
MAX_HOMES_PER_DRIVER = 2


# ---------------------------------------------------------------------------
# Hotspots
# ---------------------------------------------------------------------------

def _hotspots_in_radius(
    db: Session, lat: float, lon: float, radius_m: float, location_type: str | None = None,
) -> list[Hotspot]:
    """Hotspots within radius_m, most visited first (oldest wins among equals)."""
    min_lat, max_lat, min_lon, max_lon = degree_box(lat, lon, radius_m)
    query = db.query(Hotspot).filter(
        Hotspot.latitude.between(min_lat, max_lat),
        or_(*(Hotspot.longitude.between(lo, hi) for lo, hi in lon_ranges(min_lon, max_lon))),
    )
    if location_type is not None:
        query = query.filter(Hotspot.location_type == location_type)
    candidates = query.order_by(Hotspot.visit_count.desc(), Hotspot.created_at.asc()).all()
    return [h for h in candidates if haversine_m(lat, lon, h.latitude, h.longitude) <= radius_m]


def _check_search(lat: float, lon: float, radius_m: float) -> None:
    check_coordinates(lat, lon)
    if radius_m is None or radius_m <= 0:
        raise ValidationError(f"radius must be positive: {radius_m}")


def find_nearby_hotspots(
    db: Session, lat: float, lon: float, radius_m: float = HOTSPOT_RADIUS_M, limit: int = NEARBY_LIMIT,
) -> list[Hotspot]:
    """Hotspots of any type within radius_m, ordered by visit_count descending."""
    _check_search(lat, lon, radius_m)
    return _hotspots_in_radius(db, lat, lon, radius_m)[:limit]


def find_or_create_hotspot(
    db: Session,
    lat: float,
    lon: float,
    location_type: str,
    radius_m: float = HOTSPOT_RADIUS_M,
    driver_id: str | None = None,
    geocoder: ReverseGeocoder | None = None,
) -> tuple[Hotspot, bool]:
    """Match the point to a same-type hotspot within radius_m, or create one.

    Among several matches the one with the highest visit_count wins, not the
    nearest, so jittery stops keep converging on the same hotspot. The visit
    counter is incremented in SQL so concurrent matches never lose updates.
    The caller commits.

    Returns (hotspot, created).
    """
    _check_search(lat, lon, radius_m)
    if location_type not in LOCATION_TYPES:
        raise ValidationError(f"unknown location type: {location_type}")

    matches = _hotspots_in_radius(db, lat, lon, radius_m, location_type)
    if matches:
        hotspot = matches[0]
        values = {
            Hotspot.visit_count: Hotspot.visit_count + 1,
            Hotspot.updated_at: datetime.datetime.utcnow(),
        }
        if _is_new_driver(db, hotspot.id, driver_id):
            values[Hotspot.unique_drivers] = Hotspot.unique_drivers + 1
        db.query(Hotspot).filter(Hotspot.id == hotspot.id).update(values, synchronize_session=False)
        db.refresh(hotspot)
        return hotspot, False

    hotspot = Hotspot(
        name="",
        location_type=location_type,
        latitude=lat,
        longitude=lon,
        radius=radius_m,
        visit_count=1,
        unique_drivers=1 if driver_id else 0,
        is_verified=False,
        is_auto_detected=True,
    )
    if geocoder is not None:
        address = geocoder.reverse(lat, lon)
        if address:
            hotspot.address = address
            hotspot.name = address.split(",")[0]
    db.add(hotspot)
    db.flush()  # get the id
    logger.info("Created %s hotspot %s at (%.5f, %.5f)", location_type, hotspot.id, lat, lon)
    return hotspot, True


def _is_new_driver(db: Session, hotspot_id: str, driver_id: str | None) -> bool:
    if driver_id is None:
        return False
    seen = db.query(Stop.id).filter(Stop.hotspot_id == hotspot_id, Stop.driver_id == driver_id).first()
    return seen is None


def get_hotspot(db: Session, hotspot_id: str) -> Hotspot:
    hotspot = db.get(Hotspot, hotspot_id)
    if hotspot is None:
        raise NotFoundError(f"hotspot {hotspot_id} not found")
    return hotspot


# ---------------------------------------------------------------------------
# Driver homes
# ---------------------------------------------------------------------------

def is_near_home(db: Session, driver_id: str, lat: float, lon: float) -> tuple[Optional[DriverHome], bool]:
    """Return the first active home whose own radius covers the point."""
    check_coordinates(lat, lon)
    homes = (
        db.query(DriverHome)
        .filter(DriverHome.driver_id == driver_id, DriverHome.is_active.is_(True))
        .order_by(DriverHome.name)
        .all()
    )
    for home in homes:
        if haversine_m(home.latitude, home.longitude, lat, lon) <= home.radius:
            return home, True
    return None, False


def add_driver_home(
    db: Session,
    driver_id: str,
    name: str,
    lat: float,
    lon: float,
    radius_m: float | None = None,
    address: str | None = None,
) -> DriverHome:
    """Register a home for the driver, refusing a third one."""
    check_coordinates(lat, lon)
    count = db.query(DriverHome).filter(DriverHome.driver_id == driver_id).count()
    if count >= MAX_HOMES_PER_DRIVER:
        raise ValidationError(
            f"driver already has maximum number of home locations ({MAX_HOMES_PER_DRIVER})"
        )
    home = DriverHome(
        driver_id=driver_id,
        name=name,
        latitude=lat,
        longitude=lon,
        address=address,
        radius=radius_m or DEFAULT_HOME_RADIUS_M,
        is_active=True,
    )
    db.add(home)
    db.flush()
    return home


def get_driver_home(db: Session, home_id: str) -> DriverHome:
    home = db.get(DriverHome, home_id)
    if home is None:
        raise NotFoundError(f"driver home {home_id} not found")
    return home


# ---------------------------------------------------------------------------
# Geofence zones
# ---------------------------------------------------------------------------

def active_geofences_containing(db: Session, lat: float, lon: float) -> list[GeofenceZone]:
    """Active zones whose circle covers the point, nearest centre first."""
    check_coordinates(lat, lon)
    zones = db.query(GeofenceZone).filter(GeofenceZone.is_active.is_(True)).all()
    hits = []
    for zone in zones:
        dist = haversine_m(lat, lon, zone.latitude, zone.longitude)
        if dist <= zone.radius_meters:
            hits.append((dist, zone))
    return [zone for _, zone in sorted(hits, key=lambda h: h[0])]
