"""
Versioned GTFS timetable store.

Each agency gets one SQLite snapshot per service date. A TimetableStore wraps an
open snapshot with typed queries and a per-trip shape cache; the FeedRegistry
hands out stores keyed by (agency, validity window) and opens new snapshots on
demand.
"""

import logging
import os
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo

import requests
from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import load_only

from orion import config
from orion.config import Agency
from orion.database import (
    ensure_stop_times_index,
    get_snapshot_engine,
    make_session_factory,
    snapshot_path,
)
from orion.errors import SnapshotDownloadError, SnapshotLockedError
from orion.models import Route, Shape, Stop, StopTime, Trip
from orion.shape import RouteShape
from orion.shape import Stop as ShapeStop

logger = logging.getLogger(__name__)

OPEN_ATTEMPTS = 6
OPEN_BASE_DELAY_SECS = 0.8

# Stay well under SQLite's bound parameter limit
IN_CLAUSE_CHUNK = 500


def _chunks(items: list, size: int = IN_CLAUSE_CHUNK):
    for i in range(0, len(items), size):
        yield items[i : i + size]


@dataclass(frozen=True)
class ValidityWindow:
    """The agency-local service date a snapshot is valid for, as epoch ms [start, end)"""

    service_date: str  # YYYY-MM-DD
    start_ms: int
    end_ms: int

    @classmethod
    def containing(cls, time_ms: float, timezone: str) -> "ValidityWindow":
        tz = ZoneInfo(timezone)
        local = datetime.fromtimestamp(time_ms / 1000, tz=tz)
        start = datetime(local.year, local.month, local.day, tzinfo=tz)
        end = start + timedelta(days=1)
        return cls(
            service_date=start.strftime("%Y-%m-%d"),
            start_ms=int(start.timestamp() * 1000),
            end_ms=int(end.timestamp() * 1000),
        )

    def contains(self, time_ms: float) -> bool:
        return self.start_ms <= time_ms < self.end_ms


def is_lock_error(error: OperationalError) -> bool:
    message = str(error.orig).lower() if error.orig is not None else str(error).lower()
    return "locked" in message or "busy" in message


def retry_on_lock(
    operation: Callable,
    attempts: int = OPEN_ATTEMPTS,
    base_delay: float = OPEN_BASE_DELAY_SECS,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Call `operation` until it stops failing with SQLite lock contention

    Waits base_delay * 2**n seconds after the n-th failure; there is no wait
    after the last one. Errors other than lock contention propagate immediately.

    Raises:
        SnapshotLockedError: every attempt hit a lock
    """
    for attempt in range(attempts):
        try:
            return operation()
        except OperationalError as e:
            if not is_lock_error(e):
                raise
            if attempt == attempts - 1:
                break
            delay = base_delay * (2**attempt)
            logger.warning("Snapshot locked, waiting %.1fs (attempt %d/%d)", delay, attempt + 1, attempts)
            sleep(delay)

    raise SnapshotLockedError(f"could not open snapshot after {attempts} attempts waiting for lock")


def download_snapshot(agency_id: str, service_date: str, path: str, timeout: float = 30):
    """
    Download the SQLite snapshot for an agency and service date to `path`

    Raises:
        SnapshotDownloadError: on timeout, network error or non-200 response
    """
    url = f"{config.GTFS_SERVICE_URL}/api/gtfs/db"
    params = {"agency": agency_id, "date": service_date}
    logger.info("Downloading GTFS snapshot for %s %s...", agency_id, service_date)

    try:
        response = requests.get(url, params=params, timeout=timeout, stream=True)
        if response.status_code != 200:
            raise SnapshotDownloadError(
                f"could not download GTFS for {agency_id}: {response.status_code} {response.reason}"
            )

        partial = path + ".part"
        with open(partial, "wb") as f:
            for chunk in response.iter_content(chunk_size=1024 * 1024):  # 1MB chunks
                if chunk:
                    f.write(chunk)
        os.replace(partial, path)

    except requests.exceptions.Timeout as e:
        raise SnapshotDownloadError(f"timeout downloading GTFS for {agency_id}") from e
    except requests.exceptions.RequestException as e:
        raise SnapshotDownloadError(f"network error downloading GTFS for {agency_id}: {e}") from e

    logger.info("Downloaded GTFS snapshot to %s", path)


class TimetableStore:
    """
    Read-only queries over one GTFS snapshot, plus a per-trip shape cache

    Args:
        agency: Agency the snapshot belongs to
        window: Service date the snapshot is valid for
        engine: Engine bound to the snapshot database
    """

    def __init__(self, agency: Agency, window: ValidityWindow, engine: Engine):
        self.agency = agency
        self.window = window
        self.engine = engine
        self._sessions = make_session_factory(engine)
        self._shapes: dict[str, RouteShape] = {}
        self._max_shape_dist: dict[str, Optional[float]] = {}
        self._routes: Optional[list[dict]] = None
        self._lock = threading.Lock()

    @property
    def timezone(self) -> str:
        return self.agency.timezone

    def session(self):
        return self._sessions()

    @staticmethod
    def _columns(model, fields):
        try:
            return [getattr(model, name) for name in fields]
        except AttributeError as e:
            raise ValueError(f"unknown {model.__tablename__} field: {e}") from e

    def get_trip(self, trip_id: str, fields: Optional[list[str]] = None) -> Optional[Trip]:
        """
        Look up a trip, or None if it isn't in the snapshot

        When `fields` is given only those columns are loaded; the other
        attributes of the returned row are unavailable.
        """
        query = select(Trip).where(Trip.trip_id == trip_id)
        if fields:
            query = query.options(load_only(*self._columns(Trip, fields)))
        with self.session() as session:
            return session.scalars(query).first()

    def get_trips(self, trip_ids: list[str]) -> dict[str, Trip]:
        """Trips by id; ids missing from the snapshot are left out"""
        trips = {}
        with self.session() as session:
            for chunk in _chunks(trip_ids):
                for trip in session.scalars(select(Trip).where(Trip.trip_id.in_(chunk))):
                    trips[trip.trip_id] = trip
        return trips

    def get_route(self, route_id: str, fields: Optional[list[str]] = None) -> Optional[Route]:
        query = select(Route).where(Route.route_id == route_id)
        if fields:
            query = query.options(load_only(*self._columns(Route, fields)))
        with self.session() as session:
            return session.scalars(query).first()

    def get_stops(self, **filters) -> list[Stop]:
        """Stops matching column filters, e.g. get_stops(stop_id="123")"""
        conditions = [column == value for column, value in zip(self._columns(Stop, filters), filters.values())]
        with self.session() as session:
            return list(session.scalars(select(Stop).where(*conditions)))

    def get_routes_with_shapes(self) -> list[dict]:
        """
        Every route with the geometry of the shapes its trips follow and the
        stops they serve, as GeoJSON for drawing a route map.

        Each route has `shape`, a MultiLineString Feature with one line per
        distinct shape (None when no trip of the route has a shape), and
        `stops`, a FeatureCollection of Points. Built once per snapshot.
        """
        with self._lock:
            if self._routes is not None:
                return self._routes

        with self.session() as session:
            routes = session.execute(
                select(Route.route_id, Route.route_short_name, Route.route_long_name).order_by(Route.route_id)
            ).all()

            shape_ids: dict[str, list[str]] = {}
            for row in session.execute(
                select(Trip.route_id, Trip.shape_id)
                .where(Trip.shape_id.is_not(None))
                .distinct()
                .order_by(Trip.route_id, Trip.shape_id)
            ):
                shape_ids.setdefault(row.route_id, []).append(row.shape_id)

            lines: dict[str, list[list[float]]] = {}
            all_shape_ids = sorted({s for ids in shape_ids.values() for s in ids})
            for chunk in _chunks(all_shape_ids):
                for row in session.execute(
                    select(Shape.shape_id, Shape.shape_pt_lon, Shape.shape_pt_lat)
                    .where(Shape.shape_id.in_(chunk))
                    .order_by(Shape.shape_id, Shape.shape_pt_sequence)
                ):
                    lines.setdefault(row.shape_id, []).append([row.shape_pt_lon, row.shape_pt_lat])

            stops: dict[str, list[dict]] = {}
            for row in session.execute(
                select(Trip.route_id, Stop.stop_id, Stop.stop_name, Stop.stop_lat, Stop.stop_lon)
                .join(StopTime, StopTime.trip_id == Trip.trip_id)
                .join(Stop, Stop.stop_id == StopTime.stop_id)
                .distinct()
                .order_by(Trip.route_id, Stop.stop_id)
            ):
                stops.setdefault(row.route_id, []).append(
                    {
                        "type": "Feature",
                        "geometry": {"type": "Point", "coordinates": [row.stop_lon, row.stop_lat]},
                        "properties": {
                            "id": row.stop_id,
                            "name": row.stop_name,
                            "lat": row.stop_lat,
                            "lon": row.stop_lon,
                            "route_id": row.route_id,
                        },
                    }
                )

        result = []
        for route in routes:
            properties = {
                "id": route.route_id,
                "short_name": route.route_short_name,
                "long_name": route.route_long_name,
            }
            coordinates = [lines[s] for s in shape_ids.get(route.route_id, []) if s in lines]
            shape = None
            if coordinates:
                shape = {
                    "type": "Feature",
                    "geometry": {"type": "MultiLineString", "coordinates": coordinates},
                    "properties": properties,
                }
            result.append(
                {
                    **properties,
                    "shape": shape,
                    "stops": {"type": "FeatureCollection", "features": stops.get(route.route_id, [])},
                }
            )

        logger.info("Built %d routes with shapes for %s", len(result), self.agency.id)
        with self._lock:
            self._routes = result
        return result

    def get_stop_location(self, stop_id: str) -> Optional[tuple[float, float]]:
        """(lat, lon) of a stop"""
        with self.session() as session:
            row = session.execute(
                select(Stop.stop_lat, Stop.stop_lon).where(Stop.stop_id == stop_id)
            ).first()
        if row is None:
            logger.warning("No stop %s in %s snapshot", stop_id, self.agency.id)
            return None
        return (float(row.stop_lat), float(row.stop_lon))

    def get_stop_times(self, trip_id: str) -> list[StopTime]:
        """Stop times of a trip in stop_sequence order"""
        with self.session() as session:
            return list(
                session.scalars(
                    select(StopTime).where(StopTime.trip_id == trip_id).order_by(StopTime.stop_sequence)
                )
            )

    def get_stop_departure_time(self, trip_id: str, stop_id: str) -> Optional[str]:
        """Scheduled departure of a trip from a stop (first visit if the trip loops)"""
        with self.session() as session:
            return session.scalars(
                select(StopTime.departure_time)
                .where(StopTime.trip_id == trip_id, StopTime.stop_id == stop_id)
                .order_by(StopTime.stop_sequence)
                .limit(1)
            ).first()

    def get_terminal_departure_time(self, trip_id: str) -> Optional[str]:
        """Departure time of the first stop of a trip; the trip counts as started after it"""
        with self.session() as session:
            return session.scalars(
                select(StopTime.departure_time)
                .where(StopTime.trip_id == trip_id)
                .order_by(StopTime.stop_sequence.asc())
                .limit(1)
            ).first()

    def get_terminal_departure_times(self, trip_ids: list[str]) -> dict[str, str]:
        """get_terminal_departure_time for many trips in one pass"""
        times = {}
        with self.session() as session:
            for chunk in _chunks(trip_ids):
                first = (
                    select(StopTime.trip_id, func.min(StopTime.stop_sequence).label("first_sequence"))
                    .where(StopTime.trip_id.in_(chunk))
                    .group_by(StopTime.trip_id)
                    .subquery()
                )
                rows = session.execute(
                    select(StopTime.trip_id, StopTime.departure_time).join(
                        first,
                        (StopTime.trip_id == first.c.trip_id)
                        & (StopTime.stop_sequence == first.c.first_sequence),
                    )
                )
                for row in rows:
                    times[row.trip_id] = row.departure_time
        return times

    def get_max_shape_dist(self, trip_id: str) -> Optional[float]:
        """
        Full shape_dist_traveled of a trip's shape, in the feed's own units

        Taken from the shape points, falling back to the trip's stop times
        when the shape carries no distances.
        """
        if trip_id not in self._max_shape_dist:
            with self.session() as session:
                value = session.scalar(
                    select(func.max(Shape.shape_dist_traveled))
                    .join(Trip, Trip.shape_id == Shape.shape_id)
                    .where(Trip.trip_id == trip_id)
                )
                if value is None:
                    value = session.scalar(
                        select(func.max(StopTime.shape_dist_traveled)).where(StopTime.trip_id == trip_id)
                    )
            self._max_shape_dist[trip_id] = float(value) if value is not None else None
        return self._max_shape_dist[trip_id]

    def get_shape_by_trip_id(self, trip_id: str, include_stops: bool = False) -> Optional[RouteShape]:
        """
        The shape a trip follows, built on first access and cached.

        A cached shape without stops is rebuilt when `include_stops` is requested.
        Returns None when the trip has no shape rows.
        """
        with self._lock:
            cached = self._shapes.get(trip_id)
        if cached is not None and (cached.has_stops or not include_stops):
            return cached

        with self.session() as session:
            rows = session.execute(
                select(Shape.shape_pt_lon, Shape.shape_pt_lat)
                .join(Trip, Trip.shape_id == Shape.shape_id)
                .where(Trip.trip_id == trip_id)
                .order_by(Shape.shape_pt_sequence.asc())
            ).all()

            if not rows:
                logger.warning("No shape for trip %s in %s snapshot", trip_id, self.agency.id)
                return None

            stops = None
            if include_stops:
                stop_rows = session.execute(
                    select(Stop.stop_id, Stop.stop_lat, Stop.stop_lon)
                    .join(StopTime, StopTime.stop_id == Stop.stop_id)
                    .where(StopTime.trip_id == trip_id)
                    .order_by(StopTime.stop_sequence)
                ).all()
                stops = [ShapeStop(r.stop_id, float(r.stop_lat), float(r.stop_lon)) for r in stop_rows]

        shape = RouteShape([(r.shape_pt_lon, r.shape_pt_lat) for r in rows], stops=stops)
        with self._lock:
            self._shapes[trip_id] = shape
        return shape

    def close(self):
        self.engine.dispose()

    def __repr__(self):
        return f"TimetableStore({self.agency.id}, {self.window.service_date})"


def open_snapshot(
    agency: Agency,
    window: ValidityWindow,
    directory: str = None,
    download: Callable[[str, str, str], None] = download_snapshot,
    sleep: Callable[[float], None] = time.sleep,
) -> TimetableStore:
    """
    Open the snapshot for an agency and window, downloading it first if it's
    missing or empty. Lock contention while opening is retried with backoff.
    """
    path = snapshot_path(agency.id, window.service_date, directory)
    logger.info("Opening %s %s...", agency.id, path)

    if not os.path.exists(path) or os.path.getsize(path) == 0:
        try:
            download(agency.id, window.service_date, path)
        except SnapshotDownloadError:
            logger.error("Could not download GTFS for %s", agency.id)
            raise

    def _open():
        engine = get_snapshot_engine(path)
        try:
            ensure_stop_times_index(engine)
        except OperationalError:
            engine.dispose()
            raise
        return engine

    engine = retry_on_lock(_open, sleep=sleep)
    logger.info("Successfully opened %s", agency.id)
    return TimetableStore(agency, window, engine)


class FeedRegistry:
    """
    Cache of open TimetableStores keyed by (agency id, service date)

    Lookups are thread-safe. Concurrent requests for the same uncached window
    are single-flighted so the snapshot is downloaded and opened once.

    Args:
        opener: Callable (agency, window) -> TimetableStore; defaults to open_snapshot
    """

    def __init__(self, opener: Callable[[Agency, ValidityWindow], TimetableStore] = None):
        self._opener = opener or open_snapshot
        self._feeds: dict[tuple[str, str], TimetableStore] = {}
        self._key_locks: dict[tuple[str, str], threading.Lock] = {}
        self._lock = threading.Lock()

    def get_feed(self, agency: Agency, time_ms: float) -> TimetableStore:
        """Return the store whose validity window contains `time_ms`, opening it if needed"""
        window = ValidityWindow.containing(time_ms, agency.timezone)
        key = (agency.id, window.service_date)

        with self._lock:
            found = self._feeds.get(key)
            if found is not None:
                return found
            key_lock = self._key_locks.setdefault(key, threading.Lock())

        with key_lock:
            with self._lock:
                found = self._feeds.get(key)
            if found is not None:
                return found

            feed = self._opener(agency, window)
            with self._lock:
                self._feeds[key] = feed
            logger.info("Returning new feed for %s %s", agency.id, window.service_date)
            return feed

    def add(self, feed: TimetableStore):
        with self._lock:
            self._feeds[(feed.agency.id, feed.window.service_date)] = feed

    def __len__(self):
        return len(self._feeds)
