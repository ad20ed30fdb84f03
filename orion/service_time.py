"""
Service-day time helpers.

GTFS expresses stop times as HH:MM:SS relative to the start of the service day,
and allows hours >= 24 for trips that run past midnight (25:30:00 is 1:30am on
the next calendar day). All conversions here work in agency-local time.
"""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

SECONDS_PER_DAY = 24 * 3600

# Epoch values above this are milliseconds, not seconds
MAX_EPOCH_SECONDS = 2147483647

DAY_COLUMNS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def hhmmss_to_seconds(time_str: str) -> int:
    """Parse a GTFS time string (HH:MM:SS, hours may exceed 23) into seconds"""
    hours, minutes, seconds = time_str.strip().split(":")
    return int(hours) * 3600 + int(minutes) * 60 + int(seconds)


def seconds_to_hhmmss(seconds: float) -> str:
    """Format seconds since the start of the service day as zero-padded HH:MM:SS"""
    seconds = max(0, int(seconds))
    hours = seconds // 3600
    minutes = (seconds // 60) % 60
    return f"{hours:02d}:{minutes:02d}:{seconds % 60:02d}"


def normalize_gtfs_time(time_str: str) -> str:
    """Zero-pad a GTFS time so string comparison orders times correctly ("7:05:00" -> "07:05:00")"""
    return seconds_to_hhmmss(hhmmss_to_seconds(time_str))


def to_epoch_seconds(timestamp: float) -> float:
    """Normalize an epoch timestamp that may be in milliseconds to seconds"""
    if timestamp > MAX_EPOCH_SECONDS:
        return round(timestamp / 1000)
    return timestamp


class AgencyTime:
    """
    A point in time seen from an agency's timezone

    Args:
        time_ms: Epoch milliseconds
        timezone: IANA timezone name, e.g. "America/Toronto"
    """

    def __init__(self, time_ms: float, timezone: str):
        self.time_ms = time_ms
        self.timezone = timezone
        self.local = datetime.fromtimestamp(time_ms / 1000, tz=ZoneInfo(timezone))

        # Guard against passing epoch seconds where milliseconds are expected
        if not 2000 <= self.local.year < 2100:
            raise ValueError(f"timestamp {time_ms} does not look like epoch milliseconds")

    def offset_secs(self, seconds: float) -> "AgencyTime":
        return AgencyTime(self.time_ms + seconds * 1000, self.timezone)

    def seconds_of_day(self) -> int:
        midnight = self.local.replace(hour=0, minute=0, second=0, microsecond=0)
        return int((self.local - midnight).total_seconds())

    def day_of_week(self) -> str:
        """Lower-case weekday name, matching the GTFS calendar columns"""
        return DAY_COLUMNS[self.local.weekday()]

    def yyyymmdd(self) -> str:
        return self.local.strftime("%Y%m%d")

    def iso_date(self) -> str:
        return self.local.strftime("%Y-%m-%d")

    def previous_day(self) -> "AgencyTime":
        """Same wall-clock time on the previous calendar date"""
        return AgencyTime(
            (self.local - timedelta(days=1)).timestamp() * 1000,
            self.timezone,
        )

    def __repr__(self):
        return f"AgencyTime({self.local.isoformat()})"
