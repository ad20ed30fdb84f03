"""
Shared pytest fixtures for Orion tests

Provides fixtures for:
- A seeded GTFS snapshot in in-memory SQLite
- TimetableStore / FeedRegistry over that snapshot
- Telemetry store in in-memory SQLite
- GTFS-realtime feed builders
- FastAPI test client
"""

from datetime import datetime
from zoneinfo import ZoneInfo

import pytest
from fastapi.testclient import TestClient
from google.transit import gtfs_realtime_pb2
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from api.main import app, get_service
from orion.config import Agency
from orion.database import init_snapshot_db
from orion.models import Calendar, CalendarDate, Route, Shape, Stop, StopTime, Trip
from orion.reconcile import VehicleLocationService
from orion.telemetry import TelemetryStore
from orion.timetable import FeedRegistry, TimetableStore, ValidityWindow

TIMEZONE = "America/Toronto"

# Tuesday
SERVICE_DATE = (2024, 3, 5)

# Stops are ~804m apart along an east-west street
STOPS = {
    "S1": (43.70, -79.70),
    "S2": (43.70, -79.69),
    "S3": (43.70, -79.68),
}


def local_ms(hour: int, minute: int, second: int = 0, day=SERVICE_DATE) -> int:
    """Epoch ms of a wall-clock time in the test agency's timezone"""
    year, month, dom = day
    local = datetime(year, month, dom, hour, minute, second, tzinfo=ZoneInfo(TIMEZONE))
    return int(local.timestamp() * 1000)


def memory_engine():
    return create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )


def _stop_times(trip_id, times, shape_dists=None):
    rows = []
    for i, (stop_id, hhmmss) in enumerate(zip(["S1", "S2", "S3"], times)):
        rows.append(
            StopTime(
                trip_id=trip_id,
                stop_id=stop_id,
                stop_sequence=i + 1,
                arrival_time=hhmmss,
                departure_time=hhmmss,
                shape_dist_traveled=shape_dists[i] if shape_dists else None,
            )
        )
    return rows


def seed_timetable(session):
    """
    One east-bound route with these trips (all on the weekday service unless noted):

    T1       08:00 08:10 08:20  block B1
    T2       08:05 08:15 08:25  block B2
    T2-next  08:30 08:40 08:50  block B2
    T3       08:20 08:30 08:40  block B3
    T-late   25:20 25:40 26:00  runs past midnight
    T4       10:00 10:10 10:20  with shape_dist_traveled 0/800/1600
    T5       12:00 12:10 12:20  no shape
    T6       14:00 14:10 14:20  HOLIDAY service, added on 2024-03-06 only
    T7       14:00 14:10 14:20  SPECIAL service, removed on 2024-03-05
    T8       16:00 16:10 16:20  no service_id
    T9       16:00 16:10 16:20  service_id unknown to the calendar tables
    """
    session.add(Route(route_id="R1", route_short_name="1", route_long_name="Main St", route_type=3))
    for stop_id, (lat, lon) in STOPS.items():
        session.add(Stop(stop_id=stop_id, stop_name=f"Stop {stop_id}", stop_lat=lat, stop_lon=lon))

    for i, stop_id in enumerate(["S1", "S2", "S3"]):
        lat, lon = STOPS[stop_id]
        session.add(Shape(shape_id="SH1", shape_pt_sequence=i + 1, shape_pt_lat=lat, shape_pt_lon=lon))

    weekdays = {day: 1 for day in ["monday", "tuesday", "wednesday", "thursday", "friday"]}
    session.add(
        Calendar(service_id="WEEKDAY", start_date="20240101", end_date="20241231", saturday=0, sunday=0, **weekdays)
    )
    session.add(
        Calendar(service_id="SPECIAL", start_date="20240101", end_date="20241231", saturday=0, sunday=0, **weekdays)
    )
    session.add(CalendarDate(service_id="SPECIAL", date="20240305", exception_type=2))
    session.add(CalendarDate(service_id="HOLIDAY", date="20240306", exception_type=1))

    trips = [
        ("T1", "WEEKDAY", "B1", "SH1", ["08:00:00", "08:10:00", "08:20:00"], None),
        ("T2", "WEEKDAY", "B2", "SH1", ["08:05:00", "08:15:00", "08:25:00"], None),
        ("T2-next", "WEEKDAY", "B2", "SH1", ["08:30:00", "08:40:00", "08:50:00"], None),
        ("T3", "WEEKDAY", "B3", "SH1", ["08:20:00", "08:30:00", "08:40:00"], None),
        ("T-late", "WEEKDAY", "B4", "SH1", ["25:20:00", "25:40:00", "26:00:00"], None),
        ("T4", "WEEKDAY", "B5", "SH1", ["10:00:00", "10:10:00", "10:20:00"], [0.0, 800.0, 1600.0]),
        ("T5", "WEEKDAY", "B6", None, ["12:00:00", "12:10:00", "12:20:00"], None),
        ("T6", "HOLIDAY", "B7", "SH1", ["14:00:00", "14:10:00", "14:20:00"], None),
        ("T7", "SPECIAL", "B8", "SH1", ["14:00:00", "14:10:00", "14:20:00"], None),
        ("T8", None, "B9", "SH1", ["16:00:00", "16:10:00", "16:20:00"], None),
        ("T9", "GHOST", "B10", "SH1", ["16:00:00", "16:10:00", "16:20:00"], None),
    ]
    for trip_id, service_id, block_id, shape_id, times, shape_dists in trips:
        session.add(
            Trip(
                trip_id=trip_id,
                route_id="R1",
                service_id=service_id,
                trip_headsign="Eastbound",
                direction_id=0,
                block_id=block_id,
                shape_id=shape_id,
            )
        )
        session.add_all(_stop_times(trip_id, times, shape_dists))

    session.commit()


@pytest.fixture
def agency() -> Agency:
    return Agency(id="X", timezone=TIMEZONE)


@pytest.fixture
def snapshot_engine():
    """In-memory GTFS snapshot seeded with seed_timetable()"""
    engine = memory_engine()
    init_snapshot_db(engine)
    with sessionmaker(bind=engine)() as session:
        seed_timetable(session)
    yield engine
    engine.dispose()


@pytest.fixture
def snapshot_session(snapshot_engine):
    with sessionmaker(bind=snapshot_engine)() as session:
        yield session


@pytest.fixture
def store(agency, snapshot_engine) -> TimetableStore:
    window = ValidityWindow.containing(local_ms(12, 0), agency.timezone)
    return TimetableStore(agency, window, snapshot_engine)


@pytest.fixture
def registry(snapshot_engine) -> FeedRegistry:
    """Registry whose opener hands out stores over the seeded snapshot for any date"""
    return FeedRegistry(opener=lambda agency, window: TimetableStore(agency, window, snapshot_engine))


@pytest.fixture
def telemetry():
    engine = memory_engine()
    yield TelemetryStore(engine)
    engine.dispose()


@pytest.fixture
def service(agency, registry, telemetry) -> VehicleLocationService:
    return VehicleLocationService(agencies=[agency], registry=registry, telemetry=telemetry)


@pytest.fixture
def client(service):
    """FastAPI TestClient using the seeded service"""
    app.dependency_overrides[get_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def vehicle_entity(
    feed, vehicle_id, trip_id, lat, lon, timestamp=None, route_id="R1", bearing=None, label=None
):
    """Append a VehiclePosition entity to a FeedMessage"""
    entity = feed.entity.add()
    entity.id = vehicle_id
    vehicle = entity.vehicle
    vehicle.trip.trip_id = trip_id
    vehicle.trip.route_id = route_id
    vehicle.vehicle.id = vehicle_id
    if label:
        vehicle.vehicle.label = label
    vehicle.position.latitude = lat
    vehicle.position.longitude = lon
    if bearing is not None:
        vehicle.position.bearing = bearing
    if timestamp is not None:
        vehicle.timestamp = timestamp
    return entity


def make_feed(timestamp=None) -> gtfs_realtime_pb2.FeedMessage:
    feed = gtfs_realtime_pb2.FeedMessage()
    feed.header.gtfs_realtime_version = "2.0"
    if timestamp is not None:
        feed.header.timestamp = timestamp
    return feed


def make_trip_update(trip_id, vehicle_id, delay=None, timestamp=None, stop_delays=None):
    """A TripUpdate message; stop_delays maps stop_id to departure delay"""
    update = gtfs_realtime_pb2.TripUpdate()
    update.trip.trip_id = trip_id
    update.trip.schedule_relationship = gtfs_realtime_pb2.TripDescriptor.SCHEDULED
    update.vehicle.id = vehicle_id
    if delay is not None:
        update.delay = delay
    if timestamp is not None:
        update.timestamp = timestamp
    for stop_id, stop_delay in (stop_delays or {}).items():
        stop_time_update = update.stop_time_update.add()
        stop_time_update.stop_id = stop_id
        stop_time_update.departure.delay = stop_delay
    return update
