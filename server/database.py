"""Database setup and session management using SQLAlchemy (SQLite by default)."""

import logging
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///fleet.db")

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, connect_args=_connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create all tables and seed default detection thresholds."""
    from models import Config, Driver, DriverHome, GeofenceZone, Hotspot, LocationSample, Stop  # noqa: F401

    logger.info("Initializing database at %s", DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    _seed_config()


# Default detection thresholds (must match processing.py module-level constants)
DEFAULT_THRESHOLDS = {
    "min_stop_duration_minutes": "30",
    "stop_radius_m": "100.0",
    "min_moving_speed_kmh": "5.0",
    "dedup_window_minutes": "5",
    "dedup_degrees": "0.001",
    "hotspot_radius_m": "250.0",
    "max_samples": "10000",
    "scan_workers": "4",
}


def _seed_config():
    """Insert default detection thresholds if not present."""
    from models import Config

    db = SessionLocal()
    try:
        for key, value in DEFAULT_THRESHOLDS.items():
            if not db.query(Config).filter(Config.key == key).first():
                db.add(Config(key=key, value=value))
        db.commit()
    finally:
        db.close()
