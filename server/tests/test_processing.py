"""Tests for stop detection: geo math, dwell clustering, persistence and batch scans."""

import datetime
import math
from unittest.mock import patch

import pytest

import database
import processing
from errors import NotFoundError, TransientStorageError, ValidationError
from geometry import degree_box, haversine_m, lon_ranges
from models import Config, Hotspot, Stop
from processing import (
    DetectionSettings,
    detect_stops,
    detect_stops_for_all,
    detect_stops_for_driver,
    get_uncategorized_stops,
    stop_exists_near,
    update_stop_type,
)
from spatial import add_driver_home
from tests.gps_test_fixtures import (
    BAD_LATITUDE_POINT,
    DAY_TRACE,
    DEPOT_CENTER,
    DRIVE_TO_DEPOT,
    EXPECTED_STOPS,
    FUEL_SEGMENT,
    HOME_CENTER,
    HOME_SEGMENT,
    TRACE_START,
    dwell,
)

SCAN_START = TRACE_START - datetime.timedelta(hours=1)
SCAN_END = TRACE_START + datetime.timedelta(days=1)


def _make_stop(db, driver_id, lat, lon, start_min=0, minutes=40):
    stop = Stop(
        driver_id=driver_id,
        latitude=lat,
        longitude=lon,
        started_at=TRACE_START + datetime.timedelta(minutes=start_min),
        ended_at=TRACE_START + datetime.timedelta(minutes=start_min + minutes),
        duration_minutes=minutes,
    )
    db.add(stop)
    db.commit()
    db.refresh(stop)
    return stop


# =====================================================================
# Geo math
# =====================================================================

class TestHaversine:
    def test_same_point_is_zero(self):
        assert haversine_m(41.0082, 28.9784, 41.0082, 28.9784) == 0.0

    def test_symmetric(self):
        a = haversine_m(41.0, 29.0, 41.01, 29.02)
        b = haversine_m(41.01, 29.02, 41.0, 29.0)
        assert a == pytest.approx(b)

    def test_ankara_to_istanbul(self):
        d = haversine_m(39.9334, 32.8597, 41.0082, 28.9784)
        assert 335_000 < d < 365_000

    def test_short_distance(self):
        # 0.001 degrees of latitude is about 111 m
        d = haversine_m(41.0, 29.0, 41.001, 29.0)
        assert 105 < d < 117


class TestDegreeBox:
    def test_equator_box_is_square(self):
        min_lat, max_lat, min_lon, max_lon = degree_box(0.0, 0.0, 111.0)
        assert max_lat - min_lat == pytest.approx(0.002)
        assert max_lon - min_lon == pytest.approx(0.002)

    def test_longitude_widens_with_latitude(self):
        min_lat, max_lat, min_lon, max_lon = degree_box(60.0, 10.0, 1000.0)
        dlat = (max_lat - min_lat) / 2
        dlon = (max_lon - min_lon) / 2
        assert dlon == pytest.approx(dlat / math.cos(math.radians(60.0)))

    def test_point_inside_radius_is_inside_box(self):
        lat, lon = 41.0, 29.0
        east = lon + 240 / (111_320 * math.cos(math.radians(lat)))
        assert haversine_m(lat, lon, lat, east) < 250
        min_lat, max_lat, min_lon, max_lon = degree_box(lat, lon, 250)
        assert min_lon <= east <= max_lon
        assert min_lat <= lat <= max_lat

    def test_pole_covers_all_longitudes(self):
        _, _, min_lon, max_lon = degree_box(90.0, 0.0, 500)
        assert min_lon <= -180 and max_lon >= 180
        assert lon_ranges(min_lon, max_lon) == [(-180.0, 180.0)]

    def test_ranges_inside_antimeridian(self):
        assert lon_ranges(28.9, 29.1) == [(28.9, 29.1)]

    def test_ranges_split_at_antimeridian(self):
        west = lon_ranges(-180.002, -179.998)
        assert west[0] == (pytest.approx(179.998), 180.0)
        assert west[1] == (-180.0, -179.998)
        east = lon_ranges(179.998, 180.002)
        assert east[0] == (179.998, 180.0)
        assert east[1] == (-180.0, pytest.approx(-179.998))


# =====================================================================
# Dwell clustering
# =====================================================================

class TestDetectStops:
    def test_detects_three_stops_from_day_trace(self):
        stops = detect_stops(DAY_TRACE)
        assert len(stops) == len(EXPECTED_STOPS)

    def test_stop_centroids_and_durations(self):
        stops = detect_stops(DAY_TRACE)
        for stop, (center, minutes) in zip(stops, EXPECTED_STOPS):
            assert abs(stop["latitude"] - center["latitude"]) < 0.0002
            assert abs(stop["longitude"] - center["longitude"]) < 0.0002
            assert stop["duration_minutes"] == minutes

    def test_stops_are_disjoint_and_long_enough(self):
        stops = detect_stops(DAY_TRACE)
        for prev, cur in zip(stops, stops[1:]):
            assert prev["ended_at"] < cur["started_at"]
        for stop in stops:
            assert stop["ended_at"] - stop["started_at"] >= datetime.timedelta(minutes=30)
            assert stop["location_type"] == "unknown"
            assert stop["is_in_vehicle"] is True

    def test_trailing_dwell_closed_by_end_of_stream(self):
        stops = detect_stops(DAY_TRACE)
        assert stops[-1]["ended_at"] == DAY_TRACE[-1]["recorded_at"]

    def test_slow_creep_counts_as_stationary(self):
        # Port samples are flagged moving but crawl at 0.4 m/s
        stops = detect_stops(dwell(DEPOT_CENTER, 0, 40, is_moving=True, speed=0.4))
        assert len(stops) == 1

    def test_moving_fast_is_not_a_stop(self):
        assert detect_stops(dwell(DEPOT_CENTER, 0, 40, is_moving=True, speed=3.0)) == []

    def test_thirty_five_minute_dwell(self):
        stops = detect_stops(dwell(DEPOT_CENTER, 0, 35))
        assert len(stops) == 1
        assert 34 <= stops[0]["duration_minutes"] <= 36
        assert stops[0]["latitude"] == pytest.approx(41.0, abs=0.0002)
        assert stops[0]["longitude"] == pytest.approx(29.0, abs=0.0002)

    def test_twenty_five_minute_dwell_is_not_a_stop(self):
        assert detect_stops(dwell(DEPOT_CENTER, 0, 25)) == []

    def test_short_fuel_stop_is_dropped(self):
        assert detect_stops(FUEL_SEGMENT) == []

    def test_exact_threshold_is_a_stop(self):
        stops = detect_stops(dwell(DEPOT_CENTER, 0, 30))
        assert len(stops) == 1
        assert stops[0]["duration_minutes"] == 30

    def test_drift_beyond_radius_splits_stop(self):
        moved = {"latitude": DEPOT_CENTER["latitude"] + 0.00135, "longitude": DEPOT_CENTER["longitude"]}
        points = dwell(DEPOT_CENTER, 0, 40) + dwell(moved, 41, 40)
        stops = detect_stops(points)
        assert len(stops) == 2
        assert stops[0]["ended_at"] < stops[1]["started_at"]

    def test_all_moving_is_empty(self):
        assert detect_stops(DRIVE_TO_DEPOT) == []

    def test_too_few_points(self):
        assert detect_stops([]) == []
        assert detect_stops(HOME_SEGMENT[:1]) == []

    def test_unsorted_input(self):
        assert detect_stops(list(reversed(DAY_TRACE))) == detect_stops(DAY_TRACE)

    def test_bad_latitude_rejected(self):
        with pytest.raises(ValidationError):
            detect_stops(HOME_SEGMENT[:3] + [BAD_LATITUDE_POINT])

    def test_missing_timestamp_rejected(self):
        bad = dict(HOME_SEGMENT[1], recorded_at=None)
        with pytest.raises(ValidationError):
            detect_stops([HOME_SEGMENT[0], bad])

    def test_custom_threshold(self):
        settings = DetectionSettings(min_stop_duration_minutes=20)
        assert len(detect_stops(dwell(DEPOT_CENTER, 0, 25), settings)) == 1


# =====================================================================
# Settings
# =====================================================================

class TestDetectionSettings:
    def test_defaults(self):
        settings = DetectionSettings()
        assert settings.min_stop_duration_minutes == 30
        assert settings.stop_radius_m == 100.0
        assert settings.min_moving_speed_ms == pytest.approx(5.0 / 3.6)

    def test_negative_value_rejected(self):
        with pytest.raises(ValidationError):
            DetectionSettings(stop_radius_m=-1)

    def test_zero_workers_rejected(self):
        with pytest.raises(ValidationError):
            DetectionSettings(scan_workers=0)

    def test_from_config_overrides(self, db):
        db.add(Config(key="min_stop_duration_minutes", value="50"))
        db.add(Config(key="scan_workers", value="2"))
        db.commit()
        settings = DetectionSettings.from_config(db)
        assert settings.min_stop_duration_minutes == 50
        assert settings.scan_workers == 2
        assert settings.stop_radius_m == 100.0
        # Only the 60 minute port stop survives a 50 minute threshold
        assert len(detect_stops(DAY_TRACE, settings)) == 1

    def test_init_db_seeds_defaults_once(self, engine, session_factory, db):
        with patch("database.engine", engine), patch("database.SessionLocal", session_factory):
            database.init_db()
            database.init_db()
        assert db.query(Config).count() == len(database.DEFAULT_THRESHOLDS)
        assert DetectionSettings.from_config(db) == DetectionSettings()

    def test_from_config_bad_value(self, db):
        db.add(Config(key="stop_radius_m", value="wide"))
        db.commit()
        with pytest.raises(ValidationError):
            DetectionSettings.from_config(db)


# =====================================================================
# Persistence
# =====================================================================

class TestDetectStopsForDriver:
    def test_stores_new_stops(self, db, populated_driver):
        stops = detect_stops_for_driver(db, populated_driver.id, SCAN_START, SCAN_END)
        assert len(stops) == 3
        assert db.query(Stop).filter(Stop.driver_id == populated_driver.id).count() == 3

    def test_rerun_inserts_nothing(self, db, populated_driver):
        detect_stops_for_driver(db, populated_driver.id, SCAN_START, SCAN_END)
        again = detect_stops_for_driver(db, populated_driver.id, SCAN_START, SCAN_END)
        assert again == []
        assert db.query(Stop).count() == 3

    def test_overlapping_ranges_skip_known_stops(self, db, populated_driver):
        early_end = TRACE_START + datetime.timedelta(minutes=80)
        first = detect_stops_for_driver(db, populated_driver.id, SCAN_START, early_end)
        assert len(first) == 1  # depot dwell is cut short at minute 80
        second = detect_stops_for_driver(db, populated_driver.id, SCAN_START, SCAN_END)
        assert len(second) == 2
        assert db.query(Stop).count() == 3

    def test_empty_range(self, db, populated_driver):
        later = SCAN_END + datetime.timedelta(days=1)
        assert detect_stops_for_driver(db, populated_driver.id, later, later + datetime.timedelta(days=1)) == []

    def test_home_stop_is_categorized(self, db, populated_driver):
        add_driver_home(db, populated_driver.id, "Ev 1", HOME_CENTER["latitude"], HOME_CENTER["longitude"])
        db.commit()
        stops = detect_stops_for_driver(db, populated_driver.id, SCAN_START, SCAN_END)
        assert stops[0].location_type == "home"
        assert stops[0].is_driver_specific is True
        assert [s.location_type for s in stops[1:]] == ["unknown", "unknown"]
        assert db.query(Hotspot).count() == 0

    def test_storage_failure_is_transient(self, db, populated_driver):
        from sqlalchemy.exc import OperationalError

        with patch.object(db, "commit", side_effect=OperationalError("INSERT", {}, Exception("locked"))):
            with pytest.raises(TransientStorageError):
                detect_stops_for_driver(db, populated_driver.id, SCAN_START, SCAN_END)
        assert db.query(Stop).count() == 0


class TestStopExistsNear:
    def test_near_in_time_and_place(self, db, populated_driver):
        detect_stops_for_driver(db, populated_driver.id, SCAN_START, SCAN_END)
        started = TRACE_START + datetime.timedelta(minutes=3)
        assert stop_exists_near(
            db, populated_driver.id, HOME_CENTER["latitude"] + 0.0005, HOME_CENTER["longitude"], started,
        )

    def test_outside_time_window(self, db, populated_driver):
        detect_stops_for_driver(db, populated_driver.id, SCAN_START, SCAN_END)
        started = TRACE_START + datetime.timedelta(minutes=10)
        assert not stop_exists_near(db, populated_driver.id, HOME_CENTER["latitude"], HOME_CENTER["longitude"], started)

    def test_outside_degree_box(self, db, populated_driver):
        detect_stops_for_driver(db, populated_driver.id, SCAN_START, SCAN_END)
        assert not stop_exists_near(
            db, populated_driver.id, HOME_CENTER["latitude"] + 0.002, HOME_CENTER["longitude"], TRACE_START,
        )

    def test_other_driver_not_matched(self, db, populated_driver, other_driver):
        detect_stops_for_driver(db, populated_driver.id, SCAN_START, SCAN_END)
        assert not stop_exists_near(db, other_driver.id, HOME_CENTER["latitude"], HOME_CENTER["longitude"], TRACE_START)


class TestDetectStopsForAll:
    def test_scans_every_active_driver(self, db, session_factory, populated_driver, other_driver, add_samples):
        add_samples(other_driver.id, dwell(DEPOT_CENTER, 300, 40))
        total = detect_stops_for_all(session_factory, SCAN_START, SCAN_END, workers=1)
        assert total == 4
        assert db.query(Stop).filter(Stop.driver_id == other_driver.id).count() == 1

    def test_inactive_driver_skipped(self, db, session_factory, populated_driver):
        populated_driver.is_active = False
        db.commit()
        assert detect_stops_for_all(session_factory, SCAN_START, SCAN_END, workers=1) == 0

    def test_failed_driver_does_not_stop_the_scan(self, session_factory, populated_driver, other_driver):
        real = processing.detect_stops_for_driver

        def flaky(session, driver_id, *args):
            if driver_id == other_driver.id:
                raise TransientStorageError("database is locked")
            return real(session, driver_id, *args)

        with patch("processing.detect_stops_for_driver", side_effect=flaky):
            total = detect_stops_for_all(session_factory, SCAN_START, SCAN_END, workers=1)
        assert total == 3

    def test_no_drivers(self, session_factory):
        assert detect_stops_for_all(session_factory, SCAN_START, SCAN_END, workers=1) == 0


# =====================================================================
# Categorization
# =====================================================================

class TestUpdateStopType:
    def test_links_new_hotspot(self, db, test_driver):
        stop = _make_stop(db, test_driver.id, 41.0, 29.0)
        updated = update_stop_type(db, stop.id, "loading")
        assert updated.location_type == "loading"
        assert updated.is_driver_specific is False
        hotspot = db.get(Hotspot, updated.hotspot_id)
        assert hotspot.location_type == "loading"
        assert hotspot.visit_count == 1
        assert hotspot.unique_drivers == 1

    def test_second_visit_reuses_hotspot(self, db, test_driver, other_driver):
        first = update_stop_type(db, _make_stop(db, test_driver.id, 41.0, 29.0).id, "loading")
        again = update_stop_type(db, _make_stop(db, test_driver.id, 41.0005, 29.0, start_min=300).id, "loading")
        other = update_stop_type(db, _make_stop(db, other_driver.id, 41.0003, 29.0003).id, "loading")
        assert first.hotspot_id == again.hotspot_id == other.hotspot_id
        hotspot = db.get(Hotspot, first.hotspot_id)
        assert hotspot.visit_count == 3
        assert hotspot.unique_drivers == 2

    def test_home_type_unlinks_hotspot(self, db, test_driver):
        stop = update_stop_type(db, _make_stop(db, test_driver.id, 41.0, 29.0).id, "loading")
        stop = update_stop_type(db, stop.id, "home")
        assert stop.hotspot_id is None
        assert stop.is_driver_specific is True

    def test_unknown_type_rejected(self, db, test_driver):
        stop = _make_stop(db, test_driver.id, 41.0, 29.0)
        with pytest.raises(ValidationError):
            update_stop_type(db, stop.id, "beach")

    def test_missing_stop(self, db):
        with pytest.raises(NotFoundError):
            update_stop_type(db, "no-such-stop", "loading")


class TestUncategorizedStops:
    def test_lists_unknown_stops_newest_first(self, db, populated_driver):
        detect_stops_for_driver(db, populated_driver.id, SCAN_START, SCAN_END)
        stops, total = get_uncategorized_stops(db, limit=2)
        assert total == 3
        assert len(stops) == 2
        assert stops[0].started_at > stops[1].started_at

    def test_typed_stops_are_excluded(self, db, populated_driver):
        stops = detect_stops_for_driver(db, populated_driver.id, SCAN_START, SCAN_END)
        update_stop_type(db, stops[1].id, "loading")
        _, total = get_uncategorized_stops(db)
        assert total == 2
