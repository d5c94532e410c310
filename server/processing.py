"""Stop detection engine: dwell clustering, batch scanning, stop categorization.

Processing pipeline (runs on demand for a date range):
1. Load a driver's location samples, oldest first
2. Cluster stationary samples into candidate stops (>= 30 min within 100 m of the anchor)
3. Persist new stops, skipping ones already stored by an earlier overlapping run
4. Tag stops at one of the driver's homes as "home"
"""

import dataclasses
import datetime
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import NotFoundError, TransientStorageError, ValidationError
from geocoding import ReverseGeocoder
from geometry import check_coordinates, haversine_m
from models import (
    LOCATION_TYPE_HOME,
    LOCATION_TYPE_UNKNOWN,
    LOCATION_TYPES,
    Config,
    Driver,
    LocationSample,
    Stop,
)
from spatial import HOTSPOT_RADIUS_M, find_or_create_hotspot, is_near_home

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

MIN_STOP_DURATION_MINUTES = 30
STOP_RADIUS_M = 100.0
MIN_MOVING_SPEED_KMH = 5.0     # samples report speed in m/s

# A detected stop is a duplicate of a stored one when both started within this
# many minutes and their centroids differ by less than this many degrees.
DEDUP_WINDOW_MINUTES = 5
DEDUP_DEGREES = 0.001          # ~100 m

MAX_SAMPLES = 10_000           # per driver per scan
SCAN_WORKERS = 4


@dataclasses.dataclass(frozen=True)
class DetectionSettings:
    min_stop_duration_minutes: float = MIN_STOP_DURATION_MINUTES
    stop_radius_m: float = STOP_RADIUS_M
    min_moving_speed_kmh: float = MIN_MOVING_SPEED_KMH
    dedup_window_minutes: float = DEDUP_WINDOW_MINUTES
    dedup_degrees: float = DEDUP_DEGREES
    hotspot_radius_m: float = HOTSPOT_RADIUS_M
    max_samples: int = MAX_SAMPLES
    scan_workers: int = SCAN_WORKERS

    def __post_init__(self):
        for field in dataclasses.fields(self):
            value = getattr(self, field.name)
            if value is None or value < 0:
                raise ValidationError(f"{field.name} must be non-negative, got {value!r}")
        if self.max_samples < 2 or self.scan_workers < 1:
            raise ValidationError("max_samples must be >= 2 and scan_workers >= 1")

    @property
    def min_moving_speed_ms(self) -> float:
        return self.min_moving_speed_kmh / 3.6

    @classmethod
    def from_config(cls, db: Session) -> "DetectionSettings":
        """Read thresholds from the Config table, falling back to module defaults."""
        fields = {f.name: f for f in dataclasses.fields(cls)}
        overrides = {}
        rows = db.query(Config).filter(Config.key.in_(fields.keys())).all()
        for row in rows:
            cast = int if fields[row.key].type in (int, "int") else float
            try:
                overrides[row.key] = cast(row.value)
            except ValueError as e:
                raise ValidationError(f"config {row.key}={row.value!r} is not a number") from e
        return cls(**overrides)


# ---------------------------------------------------------------------------
# Stop detection
# ---------------------------------------------------------------------------

def _check_points(points: list[dict]) -> None:
    for pt in points:
        check_coordinates(pt.get("latitude"), pt.get("longitude"))
        if not isinstance(pt.get("recorded_at"), datetime.datetime):
            raise ValidationError(f"sample has no recorded_at timestamp: {pt!r}")


def _is_stationary(pt: dict, settings: DetectionSettings) -> bool:
    speed = pt.get("speed")
    return not pt.get("is_moving", False) or (speed is not None and speed < settings.min_moving_speed_ms)


def detect_stops(points: list[dict], settings: DetectionSettings | None = None) -> list[dict]:
    """Detect stops from one driver's GPS samples.

    Algorithm:
    - Walk through samples chronologically.
    - A stationary sample opens a cluster anchored on itself, or joins the open
      cluster while it stays within stop_radius_m of the anchor.
    - A stationary sample outside the radius closes the cluster and anchors a
      new one; a moving sample closes the cluster and is dropped.
    - A closed cluster becomes a stop if its members span at least
      min_stop_duration_minutes.

    Samples are dicts with latitude, longitude, speed, is_moving and
    recorded_at. Returned stops are dicts ready to build Stop rows from.
    """
    if len(points) < 2:
        return []

    settings = settings or DetectionSettings()
    _check_points(points)

    stops: list[dict] = []
    cluster: list[dict] = []

    for pt in sorted(points, key=lambda p: p["recorded_at"]):
        if not _is_stationary(pt, settings):
            _maybe_emit_stop(cluster, stops, settings)
            cluster = []
            continue

        if cluster:
            anchor = cluster[0]
            dist = haversine_m(anchor["latitude"], anchor["longitude"], pt["latitude"], pt["longitude"])
            if dist <= settings.stop_radius_m:
                cluster.append(pt)
                continue
            _maybe_emit_stop(cluster, stops, settings)
        cluster = [pt]

    # The trailing cluster is closed at the last sample seen
    _maybe_emit_stop(cluster, stops, settings)

    return stops


def _maybe_emit_stop(cluster: list[dict], stops: list[dict], settings: DetectionSettings):
    if len(cluster) < 2:
        return
    started_at = cluster[0]["recorded_at"]
    ended_at = cluster[-1]["recorded_at"]
    duration = ended_at - started_at
    if duration < datetime.timedelta(minutes=settings.min_stop_duration_minutes):
        return
    n = len(cluster)
    stops.append({
        "latitude": sum(p["latitude"] for p in cluster) / n,
        "longitude": sum(p["longitude"] for p in cluster) / n,
        "location_type": LOCATION_TYPE_UNKNOWN,
        "started_at": started_at,
        "ended_at": ended_at,
        "duration_minutes": int(duration.total_seconds() // 60),
        "is_in_vehicle": True,
    })


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def stop_exists_near(
    db: Session,
    driver_id: str,
    lat: float,
    lon: float,
    started_at: datetime.datetime,
    settings: DetectionSettings | None = None,
) -> bool:
    """True if a stop for the driver already starts near this time and place."""
    settings = settings or DetectionSettings()
    window = datetime.timedelta(minutes=settings.dedup_window_minutes)
    deg = settings.dedup_degrees
    existing = (
        db.query(Stop.id)
        .filter(
            Stop.driver_id == driver_id,
            Stop.started_at.between(started_at - window, started_at + window),
            Stop.latitude.between(lat - deg, lat + deg),
            Stop.longitude.between(lon - deg, lon + deg),
        )
        .first()
    )
    return existing is not None


def _sample_to_point(sample: LocationSample) -> dict:
    return {
        "latitude": sample.latitude,
        "longitude": sample.longitude,
        "speed": sample.speed,
        "is_moving": sample.is_moving,
        "recorded_at": sample.recorded_at,
    }


def detect_stops_for_driver(
    db: Session,
    driver_id: str,
    start: datetime.datetime,
    end: datetime.datetime,
    settings: DetectionSettings | None = None,
) -> list[Stop]:
    """Detect and store stops for one driver between start and end.

    Returns only the newly inserted Stop rows; stops already stored by an
    earlier run are skipped. Either all of the driver's new stops are stored or
    none are.
    """
    if settings is None:
        settings = DetectionSettings.from_config(db)

    try:
        samples = (
            db.query(LocationSample)
            .filter(
                LocationSample.driver_id == driver_id,
                LocationSample.recorded_at >= start,
                LocationSample.recorded_at <= end,
            )
            .order_by(LocationSample.recorded_at.asc())
            .limit(settings.max_samples)
            .all()
        )
    except SQLAlchemyError as e:
        raise TransientStorageError(f"failed to load samples for driver {driver_id}") from e

    if len(samples) < 2:
        return []

    detected = detect_stops([_sample_to_point(s) for s in samples], settings)
    if not detected:
        return []

    new_stops = []
    try:
        for s in detected:
            if stop_exists_near(db, driver_id, s["latitude"], s["longitude"], s["started_at"], settings):
                logger.debug("Skipping duplicate stop for driver=%s at %s", driver_id, s["started_at"])
                continue
            stop = Stop(driver_id=driver_id, **s)
            categorize_stop(db, stop, settings)
            db.add(stop)
            db.flush()  # visible to the next duplicate check
            new_stops.append(stop)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientStorageError(f"failed to store stops for driver {driver_id}") from e

    logger.info(
        "Detected %d stops for driver=%s (%d new) between %s and %s",
        len(detected), driver_id, len(new_stops), start, end,
    )
    return new_stops


def detect_stops_for_all(
    session_factory: Callable[[], Session],
    start: datetime.datetime,
    end: datetime.datetime,
    settings: DetectionSettings | None = None,
    workers: int | None = None,
) -> int:
    """Run stop detection for every active driver; returns the number of new stops.

    Drivers are scanned in a bounded thread pool, each with its own session. A
    driver whose scan fails is logged and skipped.
    """
    db = session_factory()
    try:
        if settings is None:
            settings = DetectionSettings.from_config(db)
        driver_ids = [d.id for d in db.query(Driver.id).filter(Driver.is_active.is_(True)).all()]
    finally:
        db.close()

    def _scan(driver_id: str) -> int:
        session = session_factory()
        try:
            return len(detect_stops_for_driver(session, driver_id, start, end, settings))
        finally:
            session.close()

    total = 0
    failed = 0
    with ThreadPoolExecutor(max_workers=workers or settings.scan_workers) as pool:
        futures = {pool.submit(_scan, driver_id): driver_id for driver_id in driver_ids}
        for future in as_completed(futures):
            driver_id = futures[future]
            try:
                total += future.result()
            except Exception:
                failed += 1
                logger.exception("Stop detection failed for driver=%s", driver_id)

    logger.info(
        "Stop scan %s..%s: %d drivers, %d new stops, %d failures",
        start, end, len(driver_ids), total, failed,
    )
    return total


# ---------------------------------------------------------------------------
# Categorization
# ---------------------------------------------------------------------------

def categorize_stop(
    db: Session,
    stop: Stop,
    settings: DetectionSettings | None = None,
    geocoder: ReverseGeocoder | None = None,
) -> Stop:
    """Tag a stop at one of the driver's homes, or link a typed stop to a hotspot."""
    home, matched = is_near_home(db, stop.driver_id, stop.latitude, stop.longitude)
    if matched:
        stop.location_type = LOCATION_TYPE_HOME
        stop.is_driver_specific = True
        stop.address = stop.address or home.address
        stop.hotspot_id = None
        return stop

    if stop.location_type in (None, LOCATION_TYPE_UNKNOWN, LOCATION_TYPE_HOME):
        return stop

    radius = (settings or DetectionSettings()).hotspot_radius_m
    hotspot, _ = find_or_create_hotspot(
        db, stop.latitude, stop.longitude, stop.location_type, radius,
        driver_id=stop.driver_id, geocoder=geocoder,
    )
    stop.hotspot_id = hotspot.id
    stop.is_driver_specific = False
    stop.address = stop.address or hotspot.address
    return stop


def update_stop_type(
    db: Session,
    stop_id: str,
    location_type: str,
    settings: DetectionSettings | None = None,
    geocoder: ReverseGeocoder | None = None,
) -> Stop:
    """Admin re-typing of a stop; links it to a hotspot of the new type."""
    if location_type not in LOCATION_TYPES:
        raise ValidationError(f"unknown location type: {location_type}")
    stop = db.get(Stop, stop_id)
    if stop is None:
        raise NotFoundError(f"stop {stop_id} not found")

    stop.location_type = location_type
    stop.is_driver_specific = location_type == LOCATION_TYPE_HOME
    stop.hotspot_id = None
    if location_type not in (LOCATION_TYPE_UNKNOWN, LOCATION_TYPE_HOME):
        hotspot, _ = find_or_create_hotspot(
            db, stop.latitude, stop.longitude, location_type,
            (settings or DetectionSettings()).hotspot_radius_m,
            driver_id=stop.driver_id, geocoder=geocoder,
        )
        stop.hotspot_id = hotspot.id
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientStorageError(f"failed to update stop {stop_id}") from e
    db.refresh(stop)
    return stop


def get_uncategorized_stops(db: Session, limit: int = 50, offset: int = 0) -> tuple[list[Stop], int]:
    """Closed stops nobody has typed yet, newest first, plus the total count."""
    query = db.query(Stop).filter(Stop.location_type == LOCATION_TYPE_UNKNOWN, Stop.ended_at.isnot(None))
    total = query.count()
    stops = query.order_by(Stop.started_at.desc()).offset(offset).limit(limit).all()
    return stops, total
