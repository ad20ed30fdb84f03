"""
Reconciliation of live vehicles with scheduled trips.

Live records are matched to scheduled trips by trip id, then by block id (a
vehicle that is late or early may already report the next trip of its block),
and each match gets a calculated delay: the distance between where the vehicle
is and where the timetable says it should be, converted to seconds at an average
bus speed, with a stop-time comparison as the fallback for large deviations.
"""

import logging
import time
from typing import Optional

from shapely.errors import ShapelyError

from orion import config
from orion.config import AGENCIES, Agency
from orion.errors import GeometryError, UnknownAgencyError
from orion.records import (
    LiveVehicleRecord,
    ReconciledPosition,
    ScheduledPosition,
    ScheduledStatus,
)
from orion.scheduled import ScheduledPositionEngine
from orion.service_time import SECONDS_PER_DAY, AgencyTime, hhmmss_to_seconds
from orion.shape import RouteShape
from orion.telemetry import TelemetryStore
from orion.timetable import FeedRegistry, TimetableStore

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """
    Matches live records to scheduled trips and computes their delay

    Args:
        scheduled_engine: Used to look up where a trip should have been
        average_speed_kmh: Converts a distance deviation into seconds
        distance_delay_threshold_secs: Distance-based delays within this many
            seconds of zero are trusted; beyond it the time-based delay is used
    """

    def __init__(
        self,
        scheduled_engine: ScheduledPositionEngine = None,
        average_speed_kmh: float = config.AVERAGE_SPEED_KMH,
        distance_delay_threshold_secs: float = config.DISTANCE_DELAY_THRESHOLD_SECS,
    ):
        self.scheduled_engine = scheduled_engine or ScheduledPositionEngine()
        self.average_speed_kmh = average_speed_kmh
        self.distance_delay_threshold_secs = distance_delay_threshold_secs

    @property
    def average_speed_ms(self) -> float:
        return self.average_speed_kmh / 3.6

    def match(
        self, scheduled: list[ScheduledPosition], live: list[LiveVehicleRecord]
    ) -> dict[str, ReconciledPosition]:
        """Pair live records with scheduled trips; unmatched live records are kept under their own trip id"""
        output = {p.trip_id: ReconciledPosition(match_key=p.trip_id, scheduled=p) for p in scheduled}

        running_by_block = {}
        for position in scheduled:
            if position.status == ScheduledStatus.RUNNING and position.block_id:
                running_by_block.setdefault(position.block_id, position.trip_id)

        for record in live:
            key = self._match_key(record, output, running_by_block)
            if key is None:
                logger.info(
                    "Matching miss: no scheduled trip for vehicle %s on trip %s", record.vehicle_id, record.trip_id
                )
                key = record.trip_id
                entry = output.setdefault(key, ReconciledPosition(match_key=key))
            else:
                entry = output[key]
                record.scheduled_status = entry.scheduled.status

            if entry.live is not None:
                logger.warning(
                    "Vehicles %s and %s both matched to trip %s", entry.live.vehicle_id, record.vehicle_id, key
                )
            entry.live = record

        return output

    @staticmethod
    def _match_key(record: LiveVehicleRecord, output: dict, running_by_block: dict) -> Optional[str]:
        same_trip = output.get(record.trip_id)
        if same_trip is not None and same_trip.scheduled is not None:
            if same_trip.scheduled.status == ScheduledStatus.RUNNING:
                return record.trip_id

        if record.block_id and record.block_id in running_by_block:
            return running_by_block[record.block_id]

        if same_trip is not None and same_trip.scheduled is not None:
            return record.trip_id
        return None

    def distance_delay(self, scheduled_distance: float, actual_distance: float) -> float:
        """Seconds late (positive) or early (negative) from a distance deviation"""
        return (scheduled_distance - actual_distance) / self.average_speed_ms

    def choose_delay(self, distance_delay: float, time_delay: Optional[float]) -> float:
        """
        Distance-based delay when the vehicle is close to its scheduled position,
        which avoids reading a bus laying over at its first stop as early
        """
        if abs(distance_delay) <= self.distance_delay_threshold_secs or time_delay is None:
            return distance_delay
        return time_delay

    def service_seconds(self, store: TimetableStore, trip_id: str, record_time: AgencyTime) -> int:
        """
        Time of day of `record_time` on the service day of the trip run it belongs to.

        Before the overnight cutoff, a report belongs to yesterday's run (and is
        counted past 24:00:00) when that run had departed and today's hadn't.
        """
        engine = self.scheduled_engine
        seconds = record_time.seconds_of_day()
        if seconds >= engine.overnight_cutoff_secs:
            return seconds

        terminal_departure = store.get_terminal_departure_time(trip_id)
        if terminal_departure is None:
            return seconds
        departure_secs = hhmmss_to_seconds(terminal_departure)

        if seconds >= departure_secs and engine.runs_on(store, trip_id, record_time):
            return seconds
        yesterday = record_time.previous_day()
        if seconds + SECONDS_PER_DAY >= departure_secs and engine.runs_on(store, trip_id, yesterday):
            return seconds + SECONDS_PER_DAY
        if departure_secs >= SECONDS_PER_DAY:
            return seconds + SECONDS_PER_DAY
        return seconds

    def scheduled_distance(
        self, store: TimetableStore, trip_id: str, shape: RouteShape, record_time: AgencyTime
    ) -> Optional[float]:
        """Meters along the route the timetable puts the trip at `record_time`"""
        pairs = self.scheduled_engine.stop_time_pairs(store, record_time.time_ms, trip_id)
        pair = pairs[0] if pairs else None

        if pair is not None and pair.status == ScheduledStatus.RUNNING:
            located = self.scheduled_engine.running_location(store, pair, shape)
            if located is None or located[2] is None:
                raise GeometryError(f"could not place trip {trip_id} on its shape")
            return shape.distance_at(located[2])

        # At the very start or end of the trip, or outside the bracketing windows
        terminal_departure = store.get_terminal_departure_time(trip_id)
        if terminal_departure is None:
            logger.warning("No stop times for trip %s in %s", trip_id, store.agency.id)
            return None
        departure_secs = hhmmss_to_seconds(terminal_departure)
        if self.service_seconds(store, trip_id, record_time) < departure_secs:
            return 0.0
        return shape.length

    def time_delay(
        self, store: TimetableStore, trip_id: str, shape: RouteShape, actual_distance: float, record_time: AgencyTime
    ) -> Optional[float]:
        """Seconds between the report and the scheduled departure from the stop the vehicle last passed"""
        stop_id = shape.project_distance_to_stop_id(actual_distance)
        if stop_id is None:
            return None
        departure = store.get_stop_departure_time(trip_id, stop_id)
        if departure is None:
            return None
        departure_secs = hhmmss_to_seconds(departure)
        return self.service_seconds(store, trip_id, record_time) - departure_secs

    def calculate_delay(
        self, store: TimetableStore, record: LiveVehicleRecord, time_ms: float
    ) -> Optional[float]:
        """
        Calculated delay of a live record, in seconds (positive = late).

        The record is compared with the schedule at the moment it was reported,
        not at the query time. Returns None when the trip has no shape.
        """
        shape = store.get_shape_by_trip_id(record.trip_id, include_stops=True)
        if shape is None:
            return None

        record_time = AgencyTime(time_ms - (record.secs_since_report or 0) * 1000, store.timezone)
        scheduled_distance = self.scheduled_distance(store, record.trip_id, shape, record_time)
        if scheduled_distance is None:
            return None

        actual_distance = shape.distance_at(shape.project(record.lon, record.lat))
        record.distance_along_route = actual_distance

        distance_delay = self.distance_delay(scheduled_distance, actual_distance)
        time_delay = self.time_delay(store, record.trip_id, shape, actual_distance, record_time)
        return self.choose_delay(distance_delay, time_delay)

    def reconcile(
        self,
        store: TimetableStore,
        scheduled: list[ScheduledPosition],
        live: list[LiveVehicleRecord],
        time_ms: float,
    ) -> dict[str, ReconciledPosition]:
        output = self.match(scheduled, live)

        for entry in output.values():
            if entry.live is None:
                continue
            try:
                delay = self.calculate_delay(store, entry.live, time_ms)
            except (GeometryError, ShapelyError, ValueError) as e:
                logger.warning("Could not calculate delay for trip %s: %s", entry.live.trip_id, e)
                delay = None
            entry.calculated_delay = delay
            entry.live.calculated_delay = delay

        return output


class VehicleLocationService:
    """
    The query surface used by the API: scheduled, live and reconciled vehicle
    locations per agency

    Args:
        agencies: Configured agencies
        registry: Timetable snapshots per agency and service date
        telemetry: Collected live positions
    """

    def __init__(
        self,
        agencies: list[Agency] = None,
        registry: FeedRegistry = None,
        telemetry: TelemetryStore = None,
        reconciliation: ReconciliationEngine = None,
        stale_report_secs: float = config.STALE_REPORT_SECS,
    ):
        self.agencies = {a.id: a for a in (agencies if agencies is not None else AGENCIES)}
        self.registry = registry or FeedRegistry()
        self.telemetry = telemetry or TelemetryStore()
        self.reconciliation = reconciliation or ReconciliationEngine()
        self.stale_report_secs = stale_report_secs

    @property
    def scheduled_engine(self) -> ScheduledPositionEngine:
        return self.reconciliation.scheduled_engine

    def agency(self, agency_id: str) -> Agency:
        try:
            return self.agencies[agency_id]
        except KeyError:
            raise UnknownAgencyError(agency_id) from None

    def feed(self, agency_id: str, time_ms: float) -> TimetableStore:
        return self.registry.get_feed(self.agency(agency_id), time_ms)

    def get_routes(self, agency_id: str, time_ms: float = None) -> list[dict]:
        """Routes with shapes and stops from the snapshot in force at `time_ms`"""
        if time_ms is None:
            time_ms = time.time() * 1000
        return self.feed(agency_id, time_ms).get_routes_with_shapes()

    def get_scheduled_vehicle_locations(self, agency_id: str, time_ms: float = None) -> list[ScheduledPosition]:
        """Where every trip in service should be, according to the timetable"""
        if time_ms is None:
            time_ms = time.time() * 1000
        store = self.feed(agency_id, time_ms)
        return self.scheduled_engine.positions(store, time_ms)

    def get_live_vehicle_locations(self, agency_id: str, time_ms: float = None) -> list[LiveVehicleRecord]:
        """
        Latest collected position of each vehicle. Reports older than the stale
        cutoff at `time_ms` count as no live data and are left out.
        """
        if time_ms is None:
            time_ms = time.time() * 1000
        store = self.feed(agency_id, time_ms)

        live = []
        for record in self.telemetry.latest_vehicle_positions(agency_id, int(time_ms)):
            if record.secs_since_report is not None:
                record.secs_since_report += max(0, (time_ms - record.server_time) / 1000)
                if record.secs_since_report > self.stale_report_secs:
                    logger.debug("Dropping stale report from vehicle %s", record.vehicle_id)
                    continue

            trip = store.get_trip(record.trip_id, ["trip_headsign", "block_id"])
            if trip is None:
                logger.warning("No trip attr for %s", record.trip_id)
            else:
                record.trip_headsign = trip.trip_headsign
                record.block_id = record.block_id or trip.block_id
            record.terminal_departure_time = store.get_terminal_departure_time(record.trip_id)
            live.append(record)
        return live

    def get_vehicle_locations(self, agency_id: str, time_ms: float = None) -> dict[str, ReconciledPosition]:
        """
        Scheduled and live positions unified per trip. Trips without a live
        vehicle are only kept while they are scheduled to be running.
        """
        if time_ms is None:
            time_ms = time.time() * 1000
        store = self.feed(agency_id, time_ms)
        scheduled = self.get_scheduled_vehicle_locations(agency_id, time_ms)
        live = self.get_live_vehicle_locations(agency_id, time_ms)

        reconciled = self.reconciliation.reconcile(store, scheduled, live, time_ms)
        return {
            key: entry
            for key, entry in reconciled.items()
            if entry.live is not None
            or (entry.scheduled is not None and entry.scheduled.status == ScheduledStatus.RUNNING)
        }
