#!/usr/bin/env python3
"""Seed the database with GPS test fixture data for development.

Usage:
    python seed_test_data.py

This creates two demo drivers, registers a home for one of them, loads the
Istanbul depot/port trace, then runs stop detection over it.
"""

import datetime

from database import init_db, SessionLocal
from models import Driver, LocationSample
from processing import detect_stops_for_all
from spatial import add_driver_home
from tests.gps_test_fixtures import DAY_TRACE, HOME_CENTER, TRACE_START


def seed():
    init_db()
    db = SessionLocal()

    existing = db.query(Driver).filter(Driver.name == "Demo Driver").first()
    if existing:
        print("Demo driver already exists. Skipping seed.")
        db.close()
        return

    driver = Driver(name="Demo Driver", status="unknown")
    idle = Driver(name="Idle Driver", status="unknown")
    db.add_all([driver, idle])
    db.commit()
    print(f"Created drivers: {driver.name} ({driver.id}), {idle.name} ({idle.id})")

    add_driver_home(db, driver.id, "Ev 1", HOME_CENTER["latitude"], HOME_CENTER["longitude"])
    db.commit()

    for pt in DAY_TRACE:
        db.add(LocationSample(driver_id=driver.id, **pt))
    db.commit()
    print(f"Inserted {len(DAY_TRACE)} location samples")
    db.close()

    total = detect_stops_for_all(
        SessionLocal,
        TRACE_START - datetime.timedelta(hours=1),
        TRACE_START + datetime.timedelta(days=1),
    )
    print(f"Detected {total} stops")
    print("\nDone! Open ws://localhost:8080/ws/live?type=admin to watch live updates")


if __name__ == "__main__":
    seed()
