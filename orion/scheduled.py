"""
Scheduled vehicle positions.

Given an agency and a timestamp, finds for every trip in service the stop times
bracketing that moment and interpolates where the vehicle should be along its
route. Trips scheduled past 24:00:00 are picked up by an overnight pass against
the previous day's service.
"""

import logging
from typing import Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from orion import config
from orion.errors import ShapeDistanceError, TripIdsNotUniqueError
from orion.models import Calendar, CalendarDate, StopTime, Trip
from orion.records import (
    ScheduledPosition,
    ScheduledStatus,
    ScheduledStopTime,
    StopTimePair,
    StopTimeTag,
)
from orion.service_time import (
    SECONDS_PER_DAY,
    AgencyTime,
    hhmmss_to_seconds,
    seconds_to_hhmmss,
)
from orion.shape import RouteShape, bearing
from orion.timetable import TimetableStore

logger = logging.getLogger(__name__)


def eligible_trips_query(service_day: AgencyTime, trip_id: Optional[str] = None):
    """
    Trip ids in service on the calendar date of `service_day`.

    A trip runs when its calendar has the weekday flag set and the date is in
    range, unless calendar_dates removes the service for that date; calendar_dates
    can also add a service for a single date. Trips whose service_id is NULL or
    unknown to both calendar tables are assumed to run every day.
    """
    date = service_day.yyyymmdd()
    day_flag = getattr(Calendar, service_day.day_of_week())

    scheduled = select(Calendar.service_id).where(
        day_flag == 1, Calendar.start_date <= date, Calendar.end_date >= date
    )
    added = select(CalendarDate.service_id).where(
        CalendarDate.date == date, CalendarDate.exception_type == 1
    )
    removed = select(CalendarDate.service_id).where(
        CalendarDate.date == date, CalendarDate.exception_type == 2
    )

    query = select(Trip.trip_id).where(
        or_(
            Trip.service_id.is_(None),
            and_(
                Trip.service_id.not_in(select(Calendar.service_id)),
                Trip.service_id.not_in(select(CalendarDate.service_id)),
            ),
            and_(Trip.service_id.in_(scheduled), Trip.service_id.not_in(removed)),
            Trip.service_id.in_(added),
        )
    )
    if trip_id is not None:
        query = query.where(Trip.trip_id == trip_id)
    return query


def _first_per_trip(condition, order_by, eligible):
    ranked = (
        select(
            StopTime.trip_id,
            StopTime.stop_id,
            StopTime.stop_sequence,
            StopTime.arrival_time,
            StopTime.departure_time,
            StopTime.shape_dist_traveled,
            func.row_number().over(partition_by=StopTime.trip_id, order_by=order_by).label("row_rank"),
        )
        .where(condition, StopTime.trip_id.in_(eligible))
        .subquery()
    )
    return select(ranked).where(ranked.c.row_rank == 1)


def _to_stop_time(row, tag: StopTimeTag) -> ScheduledStopTime:
    return ScheduledStopTime(
        trip_id=row.trip_id,
        stop_id=row.stop_id,
        stop_sequence=int(row.stop_sequence),
        arrival_time=row.arrival_time,
        departure_time=row.departure_time,
        shape_dist_traveled=float(row.shape_dist_traveled) if row.shape_dist_traveled is not None else None,
        tag=tag,
    )


def pair_stop_times(rows: list[ScheduledStopTime], query_secs: int) -> list[StopTimePair]:
    """
    Group bracketing rows into one pair per trip, in trip-id order.

    Raises:
        TripIdsNotUniqueError: a trip has two rows with the same tag
    """
    rows = sorted(rows, key=lambda r: (r.trip_id, r.tag != StopTimeTag.BEFORE))
    pairs: list[StopTimePair] = []
    for row in rows:
        if not pairs or pairs[-1].trip_id != row.trip_id:
            pairs.append(StopTimePair(trip_id=row.trip_id, query_secs=query_secs))
        pair = pairs[-1]
        slot = "before" if row.tag == StopTimeTag.BEFORE else "after"
        if getattr(pair, slot) is not None:
            raise TripIdsNotUniqueError(f"Trip IDs are not unique: {row.trip_id}")
        setattr(pair, slot, row)
    return pairs


def time_fraction(query_secs: int, before: ScheduledStopTime, after: ScheduledStopTime) -> float:
    """How far [0, 1] the query time is between departing `before` and arriving at `after`"""
    start = hhmmss_to_seconds(before.departure_time)
    end = hhmmss_to_seconds(after.arrival_time)

    elapsed = query_secs - start
    if elapsed < 0:
        # The query time has rolled past midnight relative to the stop time
        elapsed += SECONDS_PER_DAY
    span = end - start
    if span < 0:
        span += SECONDS_PER_DAY
    if span <= 0:
        return 0.0
    return min(max(elapsed / span, 0.0), 1.0)


class ScheduledPositionEngine:
    """
    Computes where every trip should be according to the timetable

    Args:
        lookback_secs: How far before the query time to look for the last departure
        lookahead_secs: How far after the query time to look for the next arrival
        overnight_cutoff_secs: Times of day before this also search yesterday's service
    """

    def __init__(
        self,
        lookback_secs: float = config.SCHEDULE_LOOKBACK_SECS,
        lookahead_secs: float = config.SCHEDULE_LOOKAHEAD_SECS,
        overnight_cutoff_secs: float = config.OVERNIGHT_CUTOFF_SECS,
    ):
        self.lookback_secs = lookback_secs
        self.lookahead_secs = lookahead_secs
        self.overnight_cutoff_secs = overnight_cutoff_secs

    def bracketing_stop_times(
        self,
        session: Session,
        service_day: AgencyTime,
        query_secs: int,
        trip_id: Optional[str] = None,
    ) -> list[ScheduledStopTime]:
        """
        For each trip in service on `service_day`, the last stop departed within
        the look-back window and the next stop arrived at within the look-ahead
        window of `query_secs`
        """
        time_of_day = seconds_to_hhmmss(query_secs)
        time_before = seconds_to_hhmmss(query_secs - self.lookback_secs)
        time_after = seconds_to_hhmmss(query_secs + self.lookahead_secs)
        eligible = eligible_trips_query(service_day, trip_id)

        before = _first_per_trip(
            and_(StopTime.departure_time <= time_of_day, StopTime.departure_time >= time_before),
            StopTime.stop_sequence.desc(),
            eligible,
        )
        after = _first_per_trip(
            and_(StopTime.arrival_time >= time_of_day, StopTime.arrival_time <= time_after),
            StopTime.stop_sequence.asc(),
            eligible,
        )

        rows = [_to_stop_time(row, StopTimeTag.BEFORE) for row in session.execute(before)]
        rows += [_to_stop_time(row, StopTimeTag.AFTER) for row in session.execute(after)]
        return rows

    def stop_time_pairs(
        self, store: TimetableStore, time_ms: float, trip_id: Optional[str] = None
    ) -> list[StopTimePair]:
        """
        Bracketing stop times paired per trip. When the time of day is within the
        overnight cutoff, yesterday's service is searched too (at time of day +24h)
        and those pairs come first.

        Raises:
            TripIdsNotUniqueError: the same trip id came out twice
        """
        now = AgencyTime(time_ms, store.timezone)
        time_of_day = now.seconds_of_day()

        passes = []
        if time_of_day < self.overnight_cutoff_secs:
            passes.append((now.previous_day(), time_of_day + SECONDS_PER_DAY))
        passes.append((now, time_of_day))

        pairs = []
        with store.session() as session:
            for service_day, query_secs in passes:
                rows = self.bracketing_stop_times(session, service_day, query_secs, trip_id)
                pairs.extend(pair_stop_times(rows, query_secs))

        trip_ids = [p.trip_id for p in pairs]
        if len(set(trip_ids)) != len(trip_ids):
            duplicates = sorted({t for t in trip_ids if trip_ids.count(t) > 1})
            raise TripIdsNotUniqueError(f"Trip IDs are not unique: {', '.join(duplicates)}")
        return pairs

    def runs_on(self, store: TimetableStore, trip_id: str, service_day: AgencyTime) -> bool:
        """Whether the trip is in service on the calendar date of `service_day`"""
        with store.session() as session:
            return session.execute(eligible_trips_query(service_day, trip_id)).first() is not None

    def running_location(
        self, store: TimetableStore, pair: StopTimePair, shape: Optional[RouteShape]
    ) -> Optional[tuple[float, float, Optional[float]]]:
        """
        Interpolated (lat, lon, ratio along shape) of a running trip.

        Uses shape_dist_traveled when both stops carry it, otherwise a straight
        line between the two stops. `ratio` is None when the trip has no shape;
        the result is None when a stop location is missing.

        Raises:
            ShapeDistanceError: stops carry shape_dist_traveled but the trip has
                no positive maximum to normalize by
        """
        fraction = time_fraction(pair.query_secs, pair.before, pair.after)
        start_dist = pair.before.shape_dist_traveled
        end_dist = pair.after.shape_dist_traveled

        if shape is not None and start_dist is not None and end_dist is not None:
            max_dist = store.get_max_shape_dist(pair.trip_id)
            if not max_dist or max_dist <= 0:
                raise ShapeDistanceError(
                    f"trip {pair.trip_id} has shape_dist_traveled without a positive maximum"
                )
            ratio = (start_dist + fraction * (end_dist - start_dist)) / max_dist
            ratio = min(max(ratio, 0.0), 1.0)
            lon, lat = shape.interpolate(ratio)
            return lat, lon, ratio

        start = store.get_stop_location(pair.before.stop_id)
        end = store.get_stop_location(pair.after.stop_id)
        if start is None or end is None:
            return None

        lat = start[0] + fraction * (end[0] - start[0])
        lon = start[1] + fraction * (end[1] - start[1])
        ratio = shape.project(lon, lat) if shape is not None else None
        return lat, lon, ratio

    def locate(self, store: TimetableStore, pair: StopTimePair) -> Optional[ScheduledPosition]:
        """Position of one trip from its bracketing stop times; None if it can't be placed"""
        shape = store.get_shape_by_trip_id(pair.trip_id)
        status = pair.status

        if status == ScheduledStatus.RUNNING:
            located = self.running_location(store, pair, shape)
            if located is None:
                return None
            lat, lon, ratio = located
            if ratio is not None:
                heading = shape.heading_at(ratio)
                distance = shape.distance_at(ratio)
            else:
                start = store.get_stop_location(pair.before.stop_id)
                end = store.get_stop_location(pair.after.stop_id)
                heading = bearing(start[0], start[1], end[0], end[1]) if start != end else 0.0
                distance = 0.0
            stop_time = pair.before
        else:
            stop_time = pair.before if status == ScheduledStatus.ENDED else pair.after
            location = store.get_stop_location(stop_time.stop_id)
            if location is None:
                return None
            lat, lon = location
            heading = 0.0
            if status == ScheduledStatus.ENDED and shape is not None:
                distance = shape.length
            else:
                distance = 0.0

        return ScheduledPosition(
            trip_id=pair.trip_id,
            route_id=None,
            lat=lat,
            lon=lon,
            heading=heading,
            distance_along_route=distance,
            status=status,
            stop_sequence=stop_time.stop_sequence,
            stop_id=stop_time.stop_id,
        )

    def positions(self, store: TimetableStore, time_ms: float) -> list[ScheduledPosition]:
        """
        Scheduled position of every trip in service at `time_ms`

        Raises:
            TripIdsNotUniqueError: the snapshot produced the same trip twice
        """
        pairs = self.stop_time_pairs(store, time_ms)
        trip_ids = [p.trip_id for p in pairs]
        trips = store.get_trips(trip_ids)
        terminal_departures = store.get_terminal_departure_times(trip_ids)

        positions = []
        for pair in pairs:
            position = self.locate(store, pair)
            if position is None:
                logger.warning("Could not place scheduled trip %s for %s", pair.trip_id, store.agency.id)
                continue

            trip = trips.get(pair.trip_id)
            if trip is not None:
                position.route_id = trip.route_id
                position.trip_headsign = trip.trip_headsign
                position.block_id = trip.block_id
            position.terminal_departure_time = terminal_departures.get(pair.trip_id)
            positions.append(position)

        logger.info(
            "Scheduled positions for %s at %s: %d trips",
            store.agency.id,
            AgencyTime(time_ms, store.timezone),
            len(positions),
        )
        return positions
