"""SQLAlchemy models for drivers, location samples, stops, hotspots, homes and geofences."""

import datetime
import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from database import Base

LOCATION_TYPE_HOME = "home"
LOCATION_TYPE_UNKNOWN = "unknown"

LOCATION_TYPES = (
    LOCATION_TYPE_HOME,
    "loading",
    "unloading",
    "rest_area",
    "sleep",
    "gas_station",
    "truck_garage",
    "parking",
    "industrial",
    "port",
    "customs",
    "mall",
    LOCATION_TYPE_UNKNOWN,
)


def _new_id() -> str:
    return str(uuid.uuid4())


class Driver(Base):
    __tablename__ = "drivers"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    status = Column(String, nullable=False, default="unknown")
    is_active = Column(Boolean, default=True)
    last_seen = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)

    homes = relationship("DriverHome", back_populates="driver", cascade="all, delete-orphan")


class LocationSample(Base):
    """One GPS fix reported by a driver's phone. Never updated after insert."""

    __tablename__ = "location_samples"
    __table_args__ = (Index("ix_location_samples_driver_time", "driver_id", "recorded_at"),)

    id = Column(Integer, primary_key=True, index=True)
    driver_id = Column(String(36), ForeignKey("drivers.id"), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    speed = Column(Float, nullable=True)  # m/s as reported by the device
    is_moving = Column(Boolean, nullable=False, default=False)
    battery_level = Column(Float, nullable=True)
    recorded_at = Column(DateTime, nullable=False)
    received_at = Column(DateTime, default=datetime.datetime.utcnow)
    batch_id = Column(String, nullable=True, index=True)


class Hotspot(Base):
    """A shared point of interest learned from stops (loading docks, fuel stations, ...).

    Matching stops increment visit_count; a stop with no hotspot of the same
    type nearby creates a new one.
    """

    __tablename__ = "hotspots"
    __table_args__ = (Index("ix_hotspots_location", "latitude", "longitude"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String, nullable=False, default="")
    location_type = Column(String(50), nullable=False, index=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    address = Column(Text, nullable=True)
    radius = Column(Float, nullable=False, default=250.0)
    visit_count = Column(Integer, nullable=False, default=1)
    unique_drivers = Column(Integer, nullable=False, default=0)
    is_verified = Column(Boolean, nullable=False, default=False)
    is_auto_detected = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)

    stops = relationship("Stop", back_populates="hotspot")


class Stop(Base):
    """A dwell of at least the minimum stop duration within the stop radius."""

    __tablename__ = "stops"
    __table_args__ = (Index("ix_stops_driver_started", "driver_id", "started_at"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    driver_id = Column(String(36), ForeignKey("drivers.id"), nullable=False)
    trip_id = Column(String(36), nullable=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    location_type = Column(String(50), nullable=False, default=LOCATION_TYPE_UNKNOWN)
    address = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=False)
    ended_at = Column(DateTime, nullable=True)
    duration_minutes = Column(Integer, nullable=False, default=0)
    is_in_vehicle = Column(Boolean, nullable=False, default=True)
    is_driver_specific = Column(Boolean, nullable=False, default=False)
    hotspot_id = Column(String(36), ForeignKey("hotspots.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)

    driver = relationship("Driver")
    hotspot = relationship("Hotspot", back_populates="stops")


class DriverHome(Base):
    """A home location registered for a driver (at most two per driver)."""

    __tablename__ = "driver_homes"

    id = Column(String(36), primary_key=True, default=_new_id)
    driver_id = Column(String(36), ForeignKey("drivers.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    address = Column(Text, nullable=True)
    radius = Column(Float, nullable=False, default=200.0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)

    driver = relationship("Driver", back_populates="homes")


class GeofenceZone(Base):
    """Administrator-defined circular zone. Read-only here."""

    __tablename__ = "geofence_zones"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    type = Column(String(50), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    radius_meters = Column(Float, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class Config(Base):
    """Key/value overrides for detection thresholds."""

    __tablename__ = "config"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)
