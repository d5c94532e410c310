"""Shared pytest fixtures: in-memory DB, test drivers, populated trace."""

import sys
import os

# Add server root to path so imports work
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from models import Driver, LocationSample


@pytest.fixture
def engine():
    """Create a fresh in-memory SQLite database for each test.

    StaticPool keeps one connection so worker threads see the same database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db(session_factory):
    """Provide a DB session, closed after each test."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def test_driver(db):
    driver = Driver(name="Ahmet Yilmaz", status="unknown")
    db.add(driver)
    db.commit()
    db.refresh(driver)
    return driver


@pytest.fixture
def other_driver(db):
    driver = Driver(name="Mehmet Demir", status="unknown")
    db.add(driver)
    db.commit()
    db.refresh(driver)
    return driver


@pytest.fixture
def add_samples(db):
    """Return a helper that stores sample dicts for a driver."""
    def _add(driver_id, points):
        for pt in points:
            db.add(LocationSample(driver_id=driver_id, **pt))
        db.commit()
    return _add


@pytest.fixture
def populated_driver(test_driver, add_samples):
    """A driver populated with the full day trace fixture."""
    from tests.gps_test_fixtures import DAY_TRACE

    add_samples(test_driver.id, DAY_TRACE)
    return test_driver
