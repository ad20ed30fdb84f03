"""
Build a GTFS snapshot database from a static GTFS zip

A snapshot is one SQLite file per agency per service date, in the layout the
TimetableStore reads. Stop times are normalized to zero-padded HH:MM:SS on the
way in so they compare correctly as strings.

Usage:
  python -m orion.gtfs_import brampton gtfs.zip                   # today's service date
  python -m orion.gtfs_import brampton https://.../gtfs.zip --date 2024-03-05
"""

import argparse
import csv
import io
import logging
import os
import zipfile
from datetime import date

import requests

from orion.database import (
    ensure_stop_times_index,
    get_snapshot_engine,
    init_snapshot_db,
    make_session_factory,
    snapshot_path,
)
from orion.errors import SnapshotDownloadError
from orion.models import Agency, Calendar, CalendarDate, FeedInfo, Route, Shape, Stop, StopTime, Trip
from orion.service_time import DAY_COLUMNS, normalize_gtfs_time

logger = logging.getLogger(__name__)

BATCH_SIZE = 10000

REQUIRED_FILES = ["routes.txt", "stops.txt", "trips.txt", "stop_times.txt"]
OPTIONAL_FILES = ["agency.txt", "calendar.txt", "calendar_dates.txt", "feed_info.txt", "shapes.txt"]


def parse_csv(zip_file: zipfile.ZipFile, filename: str) -> list[dict]:
    """Parse a CSV file from the GTFS zip; optional files that are absent give []"""
    if filename not in zip_file.namelist():
        if filename in REQUIRED_FILES:
            raise ValueError(f"GTFS zip is missing {filename}")
        return []
    content = zip_file.read(filename).decode("utf-8-sig")
    reader = csv.DictReader(io.StringIO(content))
    return list(reader)


def _int(value):
    return int(value) if value not in (None, "") else None


def _float(value):
    return float(value) if value not in (None, "") else None


def _text(value):
    return value if value not in (None, "") else None


def read_gtfs_zip(content: bytes) -> dict[str, list[dict]]:
    """Parse every table the snapshot uses, keyed by file name without .txt"""
    zip_file = zipfile.ZipFile(io.BytesIO(content))
    gtfs_data = {}
    for filename in REQUIRED_FILES + OPTIONAL_FILES:
        gtfs_data[filename.replace(".txt", "")] = parse_csv(zip_file, filename)
        logger.debug("Parsed %s: %d records", filename, len(gtfs_data[filename.replace(".txt", "")]))
    return gtfs_data


def fetch_gtfs_zip(source: str, timeout: float = 30) -> bytes:
    """Read a GTFS zip from a local path or an http(s) URL"""
    if not source.startswith(("http://", "https://")):
        with open(source, "rb") as f:
            return f.read()

    try:
        response = requests.get(source, timeout=timeout)
    except requests.exceptions.RequestException as e:
        raise SnapshotDownloadError(f"could not download GTFS zip from {source}: {e}") from e
    if response.status_code != 200:
        raise SnapshotDownloadError(f"could not download GTFS zip from {source}: {response.status_code}")
    return response.content


def _rows_to_models(gtfs_data: dict[str, list[dict]]):
    """(table name, ORM objects) in load order"""
    yield "agency", (
        Agency(
            agency_id=a.get("agency_id") or a["agency_name"],
            agency_name=a["agency_name"],
            agency_url=_text(a.get("agency_url")),
            agency_timezone=_text(a.get("agency_timezone")),
            agency_lang=_text(a.get("agency_lang")),
            agency_phone=_text(a.get("agency_phone")),
        )
        for a in gtfs_data["agency"]
    )
    yield "routes", (
        Route(
            route_id=r["route_id"],
            agency_id=_text(r.get("agency_id")),
            route_short_name=r.get("route_short_name", ""),
            route_long_name=_text(r.get("route_long_name")),
            route_desc=_text(r.get("route_desc")),
            route_type=_int(r.get("route_type")),
            route_color=_text(r.get("route_color")),
            route_text_color=_text(r.get("route_text_color")),
        )
        for r in gtfs_data["routes"]
    )
    yield "stops", (
        Stop(
            stop_id=s["stop_id"],
            stop_code=_text(s.get("stop_code")),
            stop_name=_text(s.get("stop_name")),
            stop_desc=_text(s.get("stop_desc")),
            stop_lat=float(s["stop_lat"]),
            stop_lon=float(s["stop_lon"]),
            zone_id=_text(s.get("zone_id")),
            parent_station=_text(s.get("parent_station")),
        )
        for s in gtfs_data["stops"]
        # Stations and entrances without coordinates can't be placed
        if s.get("stop_lat") and s.get("stop_lon")
    )
    yield "trips", (
        Trip(
            trip_id=t["trip_id"],
            route_id=t["route_id"],
            service_id=_text(t.get("service_id")),
            trip_headsign=_text(t.get("trip_headsign")),
            direction_id=_int(t.get("direction_id")),
            block_id=_text(t.get("block_id")),
            shape_id=_text(t.get("shape_id")),
        )
        for t in gtfs_data["trips"]
    )
    yield "stop_times", (
        StopTime(
            trip_id=st["trip_id"],
            stop_id=st["stop_id"],
            # Untimed stops inherit the other time when only one is given
            arrival_time=normalize_gtfs_time(st.get("arrival_time") or st["departure_time"]),
            departure_time=normalize_gtfs_time(st.get("departure_time") or st["arrival_time"]),
            stop_sequence=int(st["stop_sequence"]),
            stop_headsign=_text(st.get("stop_headsign")),
            pickup_type=_int(st.get("pickup_type")),
            drop_off_type=_int(st.get("drop_off_type")),
            shape_dist_traveled=_float(st.get("shape_dist_traveled")),
            timepoint=_int(st.get("timepoint")),
        )
        for st in gtfs_data["stop_times"]
        if st.get("arrival_time") or st.get("departure_time")
    )
    yield "shapes", (
        Shape(
            shape_id=sh["shape_id"],
            shape_pt_lat=float(sh["shape_pt_lat"]),
            shape_pt_lon=float(sh["shape_pt_lon"]),
            shape_pt_sequence=int(sh["shape_pt_sequence"]),
            shape_dist_traveled=_float(sh.get("shape_dist_traveled")),
        )
        for sh in gtfs_data["shapes"]
    )
    yield "calendar", (
        Calendar(
            service_id=c["service_id"],
            start_date=c["start_date"],
            end_date=c["end_date"],
            **{day: int(c[day]) for day in DAY_COLUMNS},
        )
        for c in gtfs_data["calendar"]
    )
    yield "calendar_dates", (
        CalendarDate(
            service_id=cd["service_id"],
            date=cd["date"],
            exception_type=int(cd["exception_type"]),
        )
        for cd in gtfs_data["calendar_dates"]
    )
    yield "feed_info", (
        FeedInfo(
            feed_publisher_name=f["feed_publisher_name"],
            feed_publisher_url=_text(f.get("feed_publisher_url")),
            feed_lang=_text(f.get("feed_lang")),
            feed_start_date=_text(f.get("feed_start_date")),
            feed_end_date=_text(f.get("feed_end_date")),
            feed_version=_text(f.get("feed_version")),
        )
        for f in gtfs_data["feed_info"]
    )


def load_gtfs_data(session, gtfs_data: dict[str, list[dict]], batch_size: int = BATCH_SIZE) -> dict[str, int]:
    """
    Bulk insert parsed GTFS tables into an empty snapshot

    Returns:
        Number of rows loaded per table
    """
    counts = {}
    try:
        for table, objects in _rows_to_models(gtfs_data):
            count = 0
            batch = []
            for obj in objects:
                batch.append(obj)
                count += 1
                if len(batch) >= batch_size:
                    session.bulk_save_objects(batch)
                    session.commit()
                    batch = []
            if batch:
                session.bulk_save_objects(batch)
                session.commit()
            counts[table] = count
            logger.info("Loaded %d %s", count, table)
    except Exception:
        session.rollback()
        raise
    return counts


def build_snapshot(content: bytes, path: str, batch_size: int = BATCH_SIZE) -> dict[str, int]:
    """
    Write the snapshot at `path` from GTFS zip bytes

    The snapshot is built under a temporary name and moved into place, so a
    reader never opens a half-written file.
    """
    gtfs_data = read_gtfs_zip(content)

    partial = path + ".building"
    if os.path.exists(partial):
        os.remove(partial)

    engine = get_snapshot_engine(partial)
    try:
        init_snapshot_db(engine)
        ensure_stop_times_index(engine)
        with make_session_factory(engine)() as session:
            counts = load_gtfs_data(session, gtfs_data, batch_size)
    finally:
        engine.dispose()

    os.replace(partial, path)
    logger.info("Snapshot written to %s", path)
    return counts


def main():
    parser = argparse.ArgumentParser(description="Build a GTFS snapshot database from a static GTFS zip")
    parser.add_argument("agency", help="Agency id, e.g. brampton")
    parser.add_argument("source", help="Path or URL of the GTFS zip")
    parser.add_argument("--date", type=str, help="Service date YYYY-MM-DD (default: today)")
    parser.add_argument("--directory", type=str, help="Snapshot directory (default: GTFS_SNAPSHOT_DIR)")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    service_date = args.date or date.today().isoformat()
    path = snapshot_path(args.agency, service_date, args.directory)

    counts = build_snapshot(fetch_gtfs_zip(args.source), path)
    logger.info(
        "Built %s snapshot for %s: %d trips, %d stop times",
        args.agency,
        service_date,
        counts.get("trips", 0),
        counts.get("stop_times", 0),
    )


if __name__ == "__main__":
    main()
