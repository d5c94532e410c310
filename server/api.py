"""REST API for location ingestion, stop detection, hotspots and homes, plus the live WebSocket."""

import datetime
import logging
import uuid
from contextlib import contextmanager
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import SessionLocal, get_db
from errors import NotFoundError, TransientStorageError, ValidationError
from geocoding import ReverseGeocoder
from hub import ADMIN_ROLE, DEFAULT_ROLE, LiveHub, LocationUpdate
from models import Driver, LocationSample, Stop
from processing import (
    DetectionSettings,
    detect_stops_for_all,
    detect_stops_for_driver,
    get_uncategorized_stops,
    update_stop_type,
)
from spatial import (
    HOTSPOT_RADIUS_M,
    NEARBY_LIMIT,
    active_geofences_containing,
    add_driver_home,
    find_nearby_hotspots,
    find_or_create_hotspot,
    get_hotspot,
    is_near_home,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")
ws_router = APIRouter()

DEFAULT_SCAN_DAYS = 7


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class LocationPoint(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    speed: Optional[float] = Field(None, ge=0, description="metres per second")
    is_moving: bool = False
    battery_level: Optional[float] = Field(None, ge=0, le=100)
    recorded_at: datetime.datetime


class LocationBatch(BaseModel):
    driver_id: str
    locations: list[LocationPoint] = Field(..., min_length=1)


class BatchResponse(BaseModel):
    received: int
    batch_id: str


class StatusUpdate(BaseModel):
    status: str = Field(..., min_length=1)


class StopResponse(BaseModel):
    id: str
    driver_id: str
    trip_id: Optional[str] = None
    latitude: float
    longitude: float
    location_type: str
    address: Optional[str] = None
    started_at: str
    ended_at: Optional[str] = None
    duration_minutes: int
    is_in_vehicle: bool
    is_driver_specific: bool
    hotspot_id: Optional[str] = None


class StopTypeUpdate(BaseModel):
    location_type: str


class HotspotRequest(BaseModel):
    latitude: float
    longitude: float
    location_type: str
    radius: float = HOTSPOT_RADIUS_M


class HotspotResponse(BaseModel):
    id: str
    name: str
    location_type: str
    latitude: float
    longitude: float
    address: Optional[str] = None
    radius: float
    visit_count: int
    unique_drivers: int
    is_verified: bool
    is_auto_detected: bool


class HomeCreate(BaseModel):
    name: str
    latitude: float
    longitude: float
    radius: Optional[float] = Field(None, gt=0)
    address: Optional[str] = None


class HomeResponse(BaseModel):
    id: str
    driver_id: str
    name: str
    latitude: float
    longitude: float
    radius: float
    is_active: bool


# ---------------------------------------------------------------------------
# Dependencies and helpers
# ---------------------------------------------------------------------------

def get_hub(request: Request) -> LiveHub:
    return request.app.state.hub


def get_geocoder(request: Request) -> Optional[ReverseGeocoder]:
    return getattr(request.app.state, "geocoder", None)


def get_session_factory():
    """Session factory for the batch scanner's worker threads (overridden in tests)."""
    return SessionLocal


@contextmanager
def _core_errors():
    try:
        yield
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except TransientStorageError as e:
        logger.error("Storage failure: %s", e)
        raise HTTPException(status_code=503, detail=str(e)) from e


def _get_driver(db: Session, driver_id: str) -> Driver:
    driver = db.get(Driver, driver_id)
    if driver is None:
        raise HTTPException(status_code=404, detail="Driver not found")
    return driver


def _to_naive_utc(ts: datetime.datetime) -> datetime.datetime:
    if ts.tzinfo is None:
        return ts
    return ts.astimezone(datetime.timezone.utc).replace(tzinfo=None)


def _scan_range(start_date: Optional[datetime.date], end_date: Optional[datetime.date]):
    """Inclusive day range, defaulting to the last DEFAULT_SCAN_DAYS days."""
    now = datetime.datetime.utcnow()
    end = datetime.datetime.combine(end_date, datetime.time.max) if end_date else now
    start = (
        datetime.datetime.combine(start_date, datetime.time.min)
        if start_date else end - datetime.timedelta(days=DEFAULT_SCAN_DAYS)
    )
    if start > end:
        raise HTTPException(status_code=400, detail="start_date is after end_date")
    return start, end


def _stop_response(s: Stop) -> StopResponse:
    return StopResponse(
        id=s.id,
        driver_id=s.driver_id,
        trip_id=s.trip_id,
        latitude=s.latitude,
        longitude=s.longitude,
        location_type=s.location_type,
        address=s.address,
        started_at=s.started_at.isoformat(),
        ended_at=s.ended_at.isoformat() if s.ended_at else None,
        duration_minutes=s.duration_minutes,
        is_in_vehicle=s.is_in_vehicle,
        is_driver_specific=s.is_driver_specific,
        hotspot_id=s.hotspot_id,
    )


def _hotspot_response(h) -> HotspotResponse:
    return HotspotResponse(
        id=h.id,
        name=h.name,
        location_type=h.location_type,
        latitude=h.latitude,
        longitude=h.longitude,
        address=h.address,
        radius=h.radius,
        visit_count=h.visit_count,
        unique_drivers=h.unique_drivers,
        is_verified=h.is_verified,
        is_auto_detected=h.is_auto_detected,
    )


def _home_response(h) -> HomeResponse:
    return HomeResponse(
        id=h.id,
        driver_id=h.driver_id,
        name=h.name,
        latitude=h.latitude,
        longitude=h.longitude,
        radius=h.radius,
        is_active=h.is_active,
    )


# ---------------------------------------------------------------------------
# Location endpoints
# ---------------------------------------------------------------------------

@router.post("/locations", response_model=BatchResponse)
def upload_locations(batch: LocationBatch, db: Session = Depends(get_db), hub: LiveHub = Depends(get_hub)):
    driver = _get_driver(db, batch.driver_id)

    batch_id = uuid.uuid4().hex[:12]
    now = datetime.datetime.utcnow()
    points = sorted(batch.locations, key=lambda p: _to_naive_utc(p.recorded_at))

    for pt in points:
        db.add(LocationSample(
            driver_id=driver.id,
            latitude=pt.latitude,
            longitude=pt.longitude,
            speed=pt.speed,
            is_moving=pt.is_moving,
            battery_level=pt.battery_level,
            recorded_at=_to_naive_utc(pt.recorded_at),
            received_at=now,
            batch_id=batch_id,
        ))

    last = points[-1]
    driver.status = "moving" if last.is_moving else "stationary"
    driver.last_seen = now
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Failed to store batch %s for driver=%s: %s", batch_id, driver.id, e)
        raise HTTPException(status_code=503, detail="Failed to store locations") from e

    logger.info("Received %d locations from driver=%s batch=%s", len(points), driver.id, batch_id)

    # Viewers only see the freshest fix of the batch
    hub.call_threadsafe(hub.broadcast_location, LocationUpdate(
        driver_id=driver.id,
        name=driver.name,
        latitude=last.latitude,
        longitude=last.longitude,
        speed=last.speed or 0.0,
        is_moving=last.is_moving,
        status=driver.status,
    ))

    return BatchResponse(received=len(points), batch_id=batch_id)


@router.post("/drivers/{driver_id}/status")
def update_driver_status(
    driver_id: str,
    req: StatusUpdate,
    db: Session = Depends(get_db),
    hub: LiveHub = Depends(get_hub),
):
    driver = _get_driver(db, driver_id)
    driver.status = req.status
    db.commit()
    logger.info("Driver %s status changed to %s", driver.id, driver.status)
    hub.call_threadsafe(hub.broadcast_driver_status, driver.id, driver.name, driver.status)
    return {"driver_id": driver.id, "status": driver.status}


# ---------------------------------------------------------------------------
# Stop endpoints
# ---------------------------------------------------------------------------

@router.post("/stops/detect/{driver_id}")
def detect_driver_stops(
    driver_id: str,
    start_date: Optional[datetime.date] = None,
    end_date: Optional[datetime.date] = None,
    db: Session = Depends(get_db),
):
    _get_driver(db, driver_id)
    start, end = _scan_range(start_date, end_date)
    with _core_errors():
        stops = detect_stops_for_driver(db, driver_id, start, end)
    return {
        "detected_stops": len(stops),
        "stops": [_stop_response(s) for s in stops],
    }


@router.post("/stops/detect-all")
def detect_all_stops(
    start_date: Optional[datetime.date] = None,
    end_date: Optional[datetime.date] = None,
    session_factory=Depends(get_session_factory),
):
    start, end = _scan_range(start_date, end_date)
    with _core_errors():
        total = detect_stops_for_all(session_factory, start, end)
    return {
        "detected_stops": total,
        "start_date": start.date().isoformat(),
        "end_date": end.date().isoformat(),
    }


@router.get("/stops/uncategorized")
def list_uncategorized_stops(limit: int = 50, offset: int = 0, db: Session = Depends(get_db)):
    stops, total = get_uncategorized_stops(db, limit=limit, offset=offset)
    return {"stops": [_stop_response(s) for s in stops], "total": total}


@router.get("/stops/{driver_id}", response_model=list[StopResponse])
def get_driver_stops(
    driver_id: str,
    location_type: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    query = db.query(Stop).filter(Stop.driver_id == driver_id)
    if location_type:
        query = query.filter(Stop.location_type == location_type)
    stops = query.order_by(Stop.started_at.desc()).offset(offset).limit(limit).all()
    return [_stop_response(s) for s in stops]


@router.put("/stops/{stop_id}/type", response_model=StopResponse)
def set_stop_type(
    stop_id: str,
    req: StopTypeUpdate,
    db: Session = Depends(get_db),
    geocoder: Optional[ReverseGeocoder] = Depends(get_geocoder),
):
    with _core_errors():
        settings = DetectionSettings.from_config(db)
        stop = update_stop_type(db, stop_id, req.location_type, settings, geocoder)
    return _stop_response(stop)


# ---------------------------------------------------------------------------
# Hotspot endpoints
# ---------------------------------------------------------------------------

@router.get("/hotspots/nearby", response_model=list[HotspotResponse])
def nearby_hotspots(
    lat: float,
    lon: float,
    radius: float = HOTSPOT_RADIUS_M,
    limit: int = Query(NEARBY_LIMIT, ge=1, le=100),
    db: Session = Depends(get_db),
):
    with _core_errors():
        hotspots = find_nearby_hotspots(db, lat, lon, radius, limit)
    return [_hotspot_response(h) for h in hotspots]


@router.post("/hotspots")
def match_hotspot(
    req: HotspotRequest,
    db: Session = Depends(get_db),
    geocoder: Optional[ReverseGeocoder] = Depends(get_geocoder),
):
    """Find the hotspot this point belongs to, creating one if none is near."""
    with _core_errors():
        hotspot, created = find_or_create_hotspot(
            db, req.latitude, req.longitude, req.location_type, req.radius, geocoder=geocoder,
        )
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise TransientStorageError("failed to store hotspot") from e
    return {"hotspot": _hotspot_response(hotspot), "created": created}


@router.get("/hotspots/{hotspot_id}", response_model=HotspotResponse)
def read_hotspot(hotspot_id: str, db: Session = Depends(get_db)):
    with _core_errors():
        return _hotspot_response(get_hotspot(db, hotspot_id))


# ---------------------------------------------------------------------------
# Home and geofence endpoints
# ---------------------------------------------------------------------------

@router.post("/drivers/{driver_id}/homes", response_model=HomeResponse, status_code=201)
def create_home(driver_id: str, req: HomeCreate, db: Session = Depends(get_db)):
    _get_driver(db, driver_id)
    with _core_errors():
        home = add_driver_home(db, driver_id, req.name, req.latitude, req.longitude, req.radius, req.address)
        db.commit()
    logger.info("Home %s registered for driver=%s", home.id, driver_id)
    return _home_response(home)


@router.get("/drivers/{driver_id}/near-home")
def near_home(driver_id: str, lat: float, lon: float, db: Session = Depends(get_db)):
    with _core_errors():
        home, matched = is_near_home(db, driver_id, lat, lon)
    return {"matched": matched, "home": _home_response(home) if home else None}


@router.get("/geofences/containing")
def geofences_containing(lat: float, lon: float, db: Session = Depends(get_db)):
    with _core_errors():
        zones = active_geofences_containing(db, lat, lon)
    return [
        {"id": z.id, "name": z.name, "type": z.type, "radius_meters": z.radius_meters}
        for z in zones
    ]


# ---------------------------------------------------------------------------
# Live updates
# ---------------------------------------------------------------------------

@router.get("/live/stats")
def live_stats(hub: LiveHub = Depends(get_hub)):
    return hub.stats()


@ws_router.websocket("/ws/live")
async def live_updates(
    websocket: WebSocket,
    client_id: Optional[str] = None,
    client_type: Optional[str] = Query(None, alias="type"),
):
    hub: LiveHub = websocket.app.state.hub
    await websocket.accept()
    role = ADMIN_ROLE if client_type == ADMIN_ROLE else DEFAULT_ROLE
    client = hub.new_client(websocket, client_id=client_id, role=role)
    await hub.serve(client)
