from sqlalchemy import Column, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

# GTFS snapshot tables (one SQLite file per agency per service date)
Base = declarative_base()

# Collected telemetry (one SQLite file per process)
TelemetryBase = declarative_base()


class Agency(Base):
    """GTFS agency data (transit agency information)"""

    __tablename__ = "agency"

    agency_id = Column(String, primary_key=True)
    agency_name = Column(String, nullable=False)
    agency_url = Column(String)
    agency_timezone = Column(String)
    agency_lang = Column(String)
    agency_phone = Column(String)


class Calendar(Base):
    """GTFS calendar data (service schedules by day of week)"""

    __tablename__ = "calendar"

    service_id = Column(String, primary_key=True)
    monday = Column(Integer, nullable=False)  # 0 or 1
    tuesday = Column(Integer, nullable=False)
    wednesday = Column(Integer, nullable=False)
    thursday = Column(Integer, nullable=False)
    friday = Column(Integer, nullable=False)
    saturday = Column(Integer, nullable=False)
    sunday = Column(Integer, nullable=False)
    start_date = Column(String, nullable=False)  # YYYYMMDD format
    end_date = Column(String, nullable=False)  # YYYYMMDD format


class CalendarDate(Base):
    """GTFS calendar_dates data (service exceptions)"""

    __tablename__ = "calendar_dates"

    service_id = Column(String, primary_key=True)
    date = Column(String, primary_key=True)  # YYYYMMDD format
    exception_type = Column(Integer, nullable=False)  # 1=added, 2=removed

    __table_args__ = (Index("idx_calendar_dates_date", "date"),)


class FeedInfo(Base):
    """GTFS feed_info data (feed metadata)"""

    __tablename__ = "feed_info"

    feed_publisher_name = Column(String, primary_key=True)
    feed_publisher_url = Column(String)
    feed_lang = Column(String)
    feed_start_date = Column(String)  # YYYYMMDD format
    feed_end_date = Column(String)  # YYYYMMDD format
    feed_version = Column(String)


class Route(Base):
    """GTFS static route data"""

    __tablename__ = "routes"

    route_id = Column(String, primary_key=True)
    agency_id = Column(String)
    route_short_name = Column(String)
    route_long_name = Column(String)
    route_desc = Column(String)
    route_type = Column(Integer)
    route_color = Column(String)
    route_text_color = Column(String)


class Stop(Base):
    """GTFS static stop data"""

    __tablename__ = "stops"

    stop_id = Column(String, primary_key=True)
    stop_code = Column(String)
    stop_name = Column(String)
    stop_desc = Column(String)
    stop_lat = Column(Float, nullable=False)
    stop_lon = Column(Float, nullable=False)
    zone_id = Column(String)
    parent_station = Column(String)


class Trip(Base):
    """GTFS static trip data"""

    __tablename__ = "trips"

    trip_id = Column(String, primary_key=True)
    route_id = Column(String, ForeignKey("routes.route_id"), nullable=False, index=True)
    service_id = Column(String, index=True)
    trip_headsign = Column(String)
    direction_id = Column(Integer)
    block_id = Column(String, index=True)  # Links trips that use the same vehicle
    shape_id = Column(String, index=True)


class StopTime(Base):
    """
    GTFS static stop_times data (scheduled stops).

    arrival_time and departure_time are stored zero-padded (HH:MM:SS) so that
    string comparison orders them; hours may exceed 23.
    """

    __tablename__ = "stop_times"

    trip_id = Column(String, ForeignKey("trips.trip_id"), primary_key=True)
    stop_sequence = Column(Integer, primary_key=True)
    stop_id = Column(String, ForeignKey("stops.stop_id"), nullable=False, index=True)
    arrival_time = Column(String, nullable=False)
    departure_time = Column(String, nullable=False)
    stop_headsign = Column(String)
    pickup_type = Column(Integer)
    drop_off_type = Column(Integer)
    shape_dist_traveled = Column(Float)
    timepoint = Column(Integer)

    __table_args__ = (
        Index("idx_stop_times_trip_id", "trip_id", "stop_sequence"),
        Index("idx_stop_times_departure", "departure_time"),
        Index("idx_stop_times_arrival", "arrival_time"),
    )


class Shape(Base):
    """
    GTFS static shapes data - defines the actual path that vehicles follow.

    Each shape is composed of multiple points that, when connected, show the
    street-level route. Trips reference shapes through trips.shape_id.
    """

    __tablename__ = "shapes"

    shape_id = Column(String, primary_key=True)
    shape_pt_sequence = Column(Integer, primary_key=True)
    shape_pt_lat = Column(Float, nullable=False)
    shape_pt_lon = Column(Float, nullable=False)
    shape_dist_traveled = Column(Float)


class VehiclePositionRecord(TelemetryBase):
    """A GTFS-RT vehicle position as collected (one row per vehicle per collection run)"""

    __tablename__ = "vehicle_position"

    agency_id = Column(String, primary_key=True)
    vid = Column(String, primary_key=True)
    server_time = Column(Integer, primary_key=True)  # Epoch ms of the collection run
    server_date = Column(String)  # YYYY-MM-DD

    rid = Column(String)
    trip_id = Column(String, index=True)
    block_id = Column(String)

    # Stored as fixed 7-decimal text
    lat = Column(String, nullable=False)
    lon = Column(String, nullable=False)
    heading = Column(Float)

    stop_index = Column(Integer)
    stop_id = Column(String)
    status = Column(Integer)  # VehicleStopStatus: 0=incoming, 1=stopped, 2=in_transit
    label = Column(String)
    secs_since_report = Column(Integer)

    __table_args__ = (Index("idx_vehicle_position_agency_time", "agency_id", "server_time"),)


class TripUpdateRecord(TelemetryBase):
    """A GTFS-RT trip update as collected, with its stop time updates serialized as JSON"""

    __tablename__ = "trip_update"

    agency_id = Column(String, primary_key=True)
    vehicle_id = Column(String, primary_key=True)
    server_time = Column(Integer, primary_key=True)

    trip_id = Column(String, index=True)
    route_id = Column(String)
    start_time = Column(String)
    start_date = Column(String)
    direction_id = Column(Integer)
    schedule_relationship = Column(String)
    delay = Column(Integer)
    timestamp = Column(Integer)
    stop_time_updates = Column(Text)

    __table_args__ = (Index("idx_trip_update_agency_time", "agency_id", "server_time"),)
