"""
GTFS-realtime feed fetching and normalization.

Vehicle positions are turned into LiveVehicleRecords; trip updates are kept as
protobuf messages for the telemetry sink, with a helper that derives a single
delay value from their per-stop updates.
"""

import logging
import time
from typing import Optional

import requests
from google.protobuf.message import DecodeError
from google.transit import gtfs_realtime_pb2

from orion import config
from orion.errors import FeedFetchError
from orion.records import LiveVehicleRecord
from orion.service_time import (
    SECONDS_PER_DAY,
    AgencyTime,
    hhmmss_to_seconds,
    to_epoch_seconds,
)
from orion.timetable import TimetableStore

logger = logging.getLogger(__name__)

# Coordinates are kept to ~1m precision
COORDINATE_DECIMALS = 5


def fetch_feed(url: str, timeout: float = config.FEED_TIMEOUT_SECS) -> bytes:
    """
    Fetch a raw GTFS-realtime payload

    Raises:
        FeedFetchError: on timeout, network error or non-200 response
    """
    try:
        response = requests.get(url, timeout=timeout)
    except requests.exceptions.Timeout as e:
        raise FeedFetchError(f"Timeout: request to {url} took longer than {timeout} seconds") from e
    except requests.exceptions.RequestException as e:
        raise FeedFetchError(f"Network error fetching {url}: {e}") from e

    if response.status_code != 200:
        raise FeedFetchError(f"HTTP {response.status_code} fetching gtfs-realtime feed from {url}")
    return response.content


def decode_feed(payload: bytes) -> Optional[gtfs_realtime_pb2.FeedMessage]:
    """Parse a FeedMessage; empty or malformed payloads give None"""
    if not payload:
        logger.warning("Empty gtfs-realtime payload")
        return None

    feed = gtfs_realtime_pb2.FeedMessage()
    try:
        feed.ParseFromString(payload)
    except DecodeError as e:
        logger.warning("Could not decode gtfs-realtime payload: %s", e)
        return None
    return feed


def secs_since_report(feed_timestamp: Optional[float], timestamp: Optional[float]) -> Optional[float]:
    """
    Seconds between a vehicle's report and the feed it came in.

    Either value may be epoch seconds (from the feed) or milliseconds (from the
    server clock). Missing or zero timestamps give None.
    """
    if not feed_timestamp or not timestamp:
        return None
    return max(0, to_epoch_seconds(feed_timestamp) - to_epoch_seconds(timestamp))


def is_vehicle(entity) -> bool:
    """Only entities with trip, position and vehicle descriptors describe a vehicle we can place"""
    if not entity.HasField("vehicle"):
        return False
    vehicle = entity.vehicle
    return vehicle.HasField("trip") and vehicle.HasField("position") and vehicle.HasField("vehicle")


def make_vehicle(
    store: Optional[TimetableStore], vehicle_position, feed_timestamp: Optional[float]
) -> LiveVehicleRecord:
    trip = vehicle_position.trip
    position = vehicle_position.position

    block_id = None
    if store is not None and trip.trip_id:
        found = store.get_trip(trip.trip_id, ["block_id"])
        if found is not None:
            block_id = found.block_id or None

    return LiveVehicleRecord(
        vehicle_id=vehicle_position.vehicle.id,
        trip_id=trip.trip_id,
        route_id=trip.route_id or None,
        lat=round(position.latitude, COORDINATE_DECIMALS),
        lon=round(position.longitude, COORDINATE_DECIMALS),
        heading=position.bearing if position.HasField("bearing") else None,
        stop_sequence=vehicle_position.current_stop_sequence
        if vehicle_position.HasField("current_stop_sequence")
        else None,
        status=vehicle_position.current_status if vehicle_position.HasField("current_status") else None,
        secs_since_report=secs_since_report(feed_timestamp, vehicle_position.timestamp),
        stop_id=vehicle_position.stop_id or None,
        label=vehicle_position.vehicle.label or None,
        block_id=block_id,
    )


def normalize_vehicles(
    feed: Optional[gtfs_realtime_pb2.FeedMessage],
    store: Optional[TimetableStore] = None,
    feed_timestamp: Optional[float] = None,
) -> list[LiveVehicleRecord]:
    """
    Canonical vehicle records from a decoded vehicle positions feed

    Args:
        feed: Decoded feed, or None for a payload that failed to decode
        store: Timetable used to look up block ids
        feed_timestamp: When the feed was generated; defaults to the feed header
            timestamp, then to the current time
    """
    if feed is None:
        return []

    if feed_timestamp is None:
        feed_timestamp = feed.header.timestamp or time.time()

    vehicles = []
    for entity in feed.entity:
        if is_vehicle(entity):
            vehicles.append(make_vehicle(store, entity.vehicle, feed_timestamp))
    return vehicles


def normalize_feed(
    payload: bytes, store: Optional[TimetableStore] = None, feed_timestamp: Optional[float] = None
) -> list[LiveVehicleRecord]:
    """decode_feed followed by normalize_vehicles"""
    return normalize_vehicles(decode_feed(payload), store, feed_timestamp)


def normalize_trip_updates(feed: Optional[gtfs_realtime_pb2.FeedMessage]) -> list:
    """TripUpdate messages of a decoded trip updates feed"""
    if feed is None:
        return []

    updates = []
    for entity in feed.entity:
        if not entity.HasField("trip_update"):
            logger.warning("Unexpected FeedEntity %s in TripUpdates feed", entity.id)
            continue
        updates.append(entity.trip_update)
    return updates


def closest_scheduled_stop_time(
    store: TimetableStore, delays: dict[str, int], trip_id: str, timestamp: float
):
    """
    The next stop a vehicle will reach, given per-stop delays from a trip update.

    Walks the trip's stops in order carrying the most recent known delay forward
    and returns the first stop whose delayed departure is not yet past.
    """
    stop_times = store.get_stop_times(trip_id)
    if not stop_times:
        return None

    report_time = AgencyTime(to_epoch_seconds(timestamp) * 1000, store.timezone)
    time_of_day = report_time.seconds_of_day()
    last_departure = hhmmss_to_seconds(stop_times[-1].departure_time)
    if last_departure >= SECONDS_PER_DAY and time_of_day < config.OVERNIGHT_CUTOFF_SECS:
        time_of_day += SECONDS_PER_DAY

    last_delay = 0
    for stop_time in stop_times:
        last_delay = delays.get(stop_time.stop_id) or last_delay
        if hhmmss_to_seconds(stop_time.departure_time) + last_delay >= time_of_day:
            return stop_time

    logger.warning(
        "Couldn't find stop time for %s %s at %s. Trip probably already ended?",
        store.agency.id,
        trip_id,
        report_time,
    )
    return None


def trip_update_delay(store: TimetableStore, trip_update) -> Optional[int]:
    """
    Delay of a trip update in seconds.

    Many feeds leave the trip-level delay at 0 and only fill per-stop delays; in
    that case the departure delay at the vehicle's next scheduled stop is used.
    """
    delay = trip_update.delay if trip_update.HasField("delay") else 0
    if delay != 0 or not trip_update.timestamp:
        return delay

    delays = {
        update.stop_id: update.departure.delay
        for update in trip_update.stop_time_update
        if update.HasField("departure")
    }
    stop_time = closest_scheduled_stop_time(store, delays, trip_update.trip.trip_id, trip_update.timestamp)
    if stop_time is not None and delays.get(stop_time.stop_id):
        return delays[stop_time.stop_id]
    return delay
