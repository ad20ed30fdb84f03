import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Load environment variables before reading settings
load_dotenv()


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


# Where the telemetry database (orion-database.db) lives
DATABASE_PATH = os.getenv("ORION_DATABASE_PATH", ".")

# Where downloaded GTFS snapshots (gtfs-<agency>-<date>.db) are kept
GTFS_SNAPSHOT_DIR = os.getenv("GTFS_SNAPSHOT_DIR", ".")

# Service that builds one SQLite snapshot per agency per service date
GTFS_SERVICE_URL = os.getenv("GTFS_SERVICE_URL", "https://staging-api.transify.ca")

# Bracketing windows for the scheduled-position lookup
SCHEDULE_LOOKBACK_SECS = _float_env("SCHEDULE_LOOKBACK_MINUTES", 15) * 60
SCHEDULE_LOOKAHEAD_SECS = _float_env("SCHEDULE_LOOKAHEAD_MINUTES", 15) * 60

# Trips past 24:00:00 are looked up against yesterday's service before this hour
OVERNIGHT_CUTOFF_SECS = 4 * 3600

# Delay heuristics. Both are tuned by hand and need empirical re-tuning.
AVERAGE_SPEED_KMH = _float_env("AVERAGE_SPEED_KMH", 35.0)
DISTANCE_DELAY_THRESHOLD_SECS = _float_env("DISTANCE_DELAY_THRESHOLD_SECS", 180.0)

# Live reports older than this are treated as no live data
STALE_REPORT_SECS = _float_env("STALE_REPORT_SECS", 300.0)

FEED_TIMEOUT_SECS = _float_env("FEED_TIMEOUT_SECS", 30.0)
SAVE_INTERVAL_SECS = _float_env("SAVE_INTERVAL_SECS", 5.0)
TELEMETRY_RETENTION_DAYS = _float_env("TELEMETRY_RETENTION_DAYS", 120.0)


@dataclass(frozen=True)
class Agency:
    """A transit agency with a GTFS-realtime feed"""

    id: str
    timezone: str = "America/Toronto"
    vehicle_positions_url: Optional[str] = None
    trip_updates_url: Optional[str] = None


AGENCIES = [
    Agency(
        id="brampton",
        vehicle_positions_url="https://nextride.brampton.ca:81/API/VehiclePositions?format=gtfs.proto",
        trip_updates_url="https://nextride.brampton.ca:81/API/TripUpdates?format=gtfs.proto",
    ),
    Agency(
        id="barrie",
        vehicle_positions_url="http://www.myridebarrie.ca/gtfs/GTFS_VehiclePositions.pb",
    ),
    Agency(
        id="go_transit",
        vehicle_positions_url=os.getenv("GO_TRANSIT_VEHICLE_POSITIONS_URL"),
        trip_updates_url=os.getenv("GO_TRANSIT_TRIP_UPDATES_URL"),
    ),
]
