"""
Telemetry sink: persists collected vehicle positions and trip updates, and reads
back the latest position per vehicle for the live-location query.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from google.protobuf.json_format import MessageToDict
from google.transit import gtfs_realtime_pb2
from sqlalchemy import and_, delete, func, select
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.engine import Engine

from orion import config
from orion.database import init_db, make_session_factory
from orion.models import TripUpdateRecord, VehiclePositionRecord
from orion.records import LiveVehicleRecord

logger = logging.getLogger(__name__)

# Live query only looks at rows collected this recently
LATEST_WINDOW_MS = 5 * 60 * 1000

PRUNE_EVERY_MS = 24 * 3600 * 1000

ScheduleRelationship = gtfs_realtime_pb2.TripDescriptor.ScheduleRelationship


def vehicle_row(record: LiveVehicleRecord, agency_id: str, server_time: int) -> dict:
    """Column values for a vehicle_position row; lat/lon are stored as 7-decimal text"""
    return {
        "agency_id": agency_id,
        "vid": record.vehicle_id,
        "server_time": server_time,
        "server_date": datetime.fromtimestamp(server_time / 1000, tz=timezone.utc).strftime("%Y-%m-%d"),
        "rid": record.route_id,
        "trip_id": record.trip_id,
        "block_id": record.block_id,
        "lat": f"{record.lat:.7f}",
        "lon": f"{record.lon:.7f}",
        "heading": record.heading,
        "stop_index": record.stop_sequence,
        "stop_id": record.stop_id,
        "status": record.status,
        "label": record.label,
        "secs_since_report": record.secs_since_report,
    }


def trip_update_row(trip_update, agency_id: str, server_time: int, delay: Optional[int]) -> dict:
    trip = trip_update.trip
    relationship = "unknown"
    if trip.HasField("schedule_relationship"):
        relationship = ScheduleRelationship.Name(trip.schedule_relationship)

    return {
        "agency_id": agency_id,
        "vehicle_id": trip_update.vehicle.id if trip_update.HasField("vehicle") else "",
        "server_time": server_time,
        "trip_id": trip.trip_id,
        "route_id": trip.route_id or None,
        "start_time": trip.start_time or None,
        "start_date": trip.start_date or None,
        "direction_id": trip.direction_id if trip.HasField("direction_id") else None,
        "schedule_relationship": relationship,
        "delay": delay,
        "timestamp": trip_update.timestamp or None,
        "stop_time_updates": json.dumps([MessageToDict(u) for u in trip_update.stop_time_update]),
    }


def record_from_row(position: VehiclePositionRecord, delay: Optional[int] = None) -> LiveVehicleRecord:
    return LiveVehicleRecord(
        vehicle_id=position.vid,
        trip_id=position.trip_id,
        route_id=position.rid,
        lat=float(position.lat),
        lon=float(position.lon),
        heading=position.heading,
        stop_sequence=position.stop_index,
        status=position.status,
        secs_since_report=position.secs_since_report,
        stop_id=position.stop_id,
        label=position.label,
        block_id=position.block_id,
        server_time=position.server_time,
        delay=delay,
    )


class TelemetryStore:
    """
    SQLite store of collected telemetry (WAL mode, one writer per process)

    Args:
        engine: Telemetry engine; tables are created if missing
    """

    def __init__(self, engine: Engine = None):
        self.engine = init_db(engine)
        self._sessions = make_session_factory(self.engine)
        self._last_pruned = 0

    def write_vehicle_positions(self, agency_id: str, server_time: int, records: list[LiveVehicleRecord]) -> int:
        """Insert positions, ignoring rows already stored for (agency, vehicle, server_time)"""
        rows = [vehicle_row(r, agency_id, server_time) for r in records if r.vehicle_id]
        if not rows:
            return 0
        with self.engine.begin() as connection:
            connection.execute(insert(VehiclePositionRecord).on_conflict_do_nothing(), rows)
        return len(rows)

    def write_trip_updates(self, agency_id: str, server_time: int, updates: list[tuple]) -> int:
        """Insert (trip_update, delay) pairs"""
        rows = [trip_update_row(update, agency_id, server_time, delay) for update, delay in updates]
        if not rows:
            return 0
        with self.engine.begin() as connection:
            connection.execute(insert(TripUpdateRecord).on_conflict_do_nothing(), rows)
        self.prune(server_time)
        return len(rows)

    def latest_vehicle_positions(self, agency_id: str, time_ms: int) -> list[LiveVehicleRecord]:
        """
        Most recent position of each vehicle collected in the five minutes up to
        `time_ms`, joined with that vehicle's latest trip update for the same trip
        """
        start_ms = time_ms - LATEST_WINDOW_MS

        latest_position = (
            select(VehiclePositionRecord.vid, func.max(VehiclePositionRecord.server_time).label("max_time"))
            .where(
                VehiclePositionRecord.agency_id == agency_id,
                VehiclePositionRecord.server_time.between(start_ms, time_ms),
            )
            .group_by(VehiclePositionRecord.vid)
            .subquery()
        )
        latest_update = (
            select(TripUpdateRecord.vehicle_id, func.max(TripUpdateRecord.server_time).label("max_time"))
            .where(
                TripUpdateRecord.agency_id == agency_id,
                TripUpdateRecord.server_time.between(start_ms, time_ms),
            )
            .group_by(TripUpdateRecord.vehicle_id)
            .subquery()
        )
        update = (
            select(TripUpdateRecord.vehicle_id, TripUpdateRecord.trip_id, TripUpdateRecord.delay)
            .join(
                latest_update,
                and_(
                    TripUpdateRecord.vehicle_id == latest_update.c.vehicle_id,
                    TripUpdateRecord.server_time == latest_update.c.max_time,
                ),
            )
            .where(TripUpdateRecord.agency_id == agency_id)
            .subquery()
        )

        query = (
            select(VehiclePositionRecord, update.c.delay)
            .join(
                latest_position,
                and_(
                    VehiclePositionRecord.vid == latest_position.c.vid,
                    VehiclePositionRecord.server_time == latest_position.c.max_time,
                ),
            )
            .outerjoin(
                update,
                and_(
                    update.c.vehicle_id == VehiclePositionRecord.vid,
                    update.c.trip_id == VehiclePositionRecord.trip_id,
                ),
            )
            .where(VehiclePositionRecord.agency_id == agency_id)
        )

        with self._sessions() as session:
            return [record_from_row(position, delay) for position, delay in session.execute(query)]

    def prune(self, current_time: int, force: bool = False) -> int:
        """Delete rows older than the retention period; runs at most once a day"""
        if not force and current_time - self._last_pruned <= PRUNE_EVERY_MS:
            return 0
        self._last_pruned = current_time
        prune_before = current_time - int(config.TELEMETRY_RETENTION_DAYS * 24 * 3600 * 1000)

        with self.engine.begin() as connection:
            deleted_updates = connection.execute(
                delete(TripUpdateRecord).where(TripUpdateRecord.server_time < prune_before)
            ).rowcount
            deleted_positions = connection.execute(
                delete(VehiclePositionRecord).where(VehiclePositionRecord.server_time < prune_before)
            ).rowcount

        logger.info("Pruned %d trip updates, %d vehicle positions", deleted_updates, deleted_positions)
        return deleted_updates + deleted_positions
