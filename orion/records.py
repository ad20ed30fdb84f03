"""Transient records produced per request by the scheduled, live and reconciliation engines."""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional


class ScheduledStatus(str, Enum):
    RUNNING = "running"
    NOT_STARTED = "not-started"
    ENDED = "ended"


class StopTimeTag(str, Enum):
    BEFORE = "before"
    AFTER = "after"


@dataclass
class ScheduledStopTime:
    """A stop_times row bracketing a query time"""

    trip_id: str
    stop_id: str
    stop_sequence: int
    arrival_time: str
    departure_time: str
    shape_dist_traveled: Optional[float]
    tag: StopTimeTag


@dataclass
class StopTimePair:
    """
    The bracketing rows of one trip.

    `query_secs` is the time of day the rows were looked up at, on the service
    day they belong to (past 24h for the overnight pass).
    """

    trip_id: str
    query_secs: int
    before: Optional[ScheduledStopTime] = None
    after: Optional[ScheduledStopTime] = None

    @property
    def status(self) -> ScheduledStatus:
        if self.before and self.after:
            return ScheduledStatus.RUNNING
        if self.before:
            return ScheduledStatus.ENDED
        return ScheduledStatus.NOT_STARTED


@dataclass
class ScheduledPosition:
    trip_id: str
    route_id: Optional[str]
    lat: float
    lon: float
    heading: float
    distance_along_route: float
    status: ScheduledStatus
    stop_sequence: Optional[int] = None
    stop_id: Optional[str] = None
    trip_headsign: Optional[str] = None
    block_id: Optional[str] = None
    terminal_departure_time: Optional[str] = None
    source: str = "scheduled"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class LiveVehicleRecord:
    vehicle_id: str
    trip_id: str
    route_id: Optional[str]
    lat: float
    lon: float
    heading: Optional[float]
    stop_sequence: Optional[int]
    status: Optional[int]
    secs_since_report: Optional[float]
    stop_id: Optional[str] = None
    label: Optional[str] = None
    block_id: Optional[str] = None
    server_time: Optional[int] = None
    trip_headsign: Optional[str] = None
    terminal_departure_time: Optional[str] = None
    delay: Optional[int] = None  # Reported by the agency's trip updates feed
    calculated_delay: Optional[float] = None
    distance_along_route: Optional[float] = None
    scheduled_status: Optional[ScheduledStatus] = None
    source: str = "live"

    def to_dict(self) -> dict:
        data = asdict(self)
        if self.scheduled_status is not None:
            data["scheduled_status"] = self.scheduled_status.value
        return data


@dataclass
class ReconciledPosition:
    """A scheduled trip and the live vehicle running it, unified under `match_key`"""

    match_key: str
    scheduled: Optional[ScheduledPosition] = None
    live: Optional[LiveVehicleRecord] = None
    calculated_delay: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "match_key": self.match_key,
            "scheduled": self.scheduled.to_dict() if self.scheduled else None,
            "live": self.live.to_dict() if self.live else None,
            "calculated_delay": self.calculated_delay,
        }
