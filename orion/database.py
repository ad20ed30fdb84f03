import logging
import os

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from orion import config
from orion.models import Base, TelemetryBase

logger = logging.getLogger(__name__)

TELEMETRY_DB_NAME = "orion-database.db"


def snapshot_path(agency_id: str, service_date: str, directory: str = None) -> str:
    """Path of the GTFS snapshot for an agency and an ISO service date"""
    directory = directory or config.GTFS_SNAPSHOT_DIR
    return os.path.join(directory, f"gtfs-{agency_id}-{service_date}.db")


def get_snapshot_engine(path: str) -> Engine:
    """
    Create a SQLAlchemy engine for a GTFS snapshot file

    Snapshots are written once by the download service and then only read, but
    another process may still hold a lock while it finishes writing. The short
    busy timeout lets the open retry loop handle that case.
    """
    return create_engine(
        f"sqlite:///{path}",
        connect_args={"timeout": 1, "check_same_thread": False},
        echo=False,
    )


def get_telemetry_engine(path: str = None) -> Engine:
    """
    Create a SQLAlchemy engine for the telemetry database

    WAL mode lets the API read while the collector writes.
    """
    if path is None:
        path = os.path.join(config.DATABASE_PATH, TELEMETRY_DB_NAME)
    engine = create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False},
        echo=False,
    )
    enable_wal(engine)
    return engine


def enable_wal(engine: Engine):
    """Switch every new connection of `engine` to write-ahead logging"""

    @event.listens_for(engine, "connect")
    def _set_wal(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()


def init_snapshot_db(engine: Engine):
    """Create all GTFS tables in a snapshot database"""
    Base.metadata.create_all(bind=engine)


def init_db(engine: Engine = None):
    """Initialize the telemetry database by creating all tables"""
    if engine is None:
        engine = get_telemetry_engine()

    TelemetryBase.metadata.create_all(bind=engine)
    logger.info("Telemetry database initialized at: %s", engine.url)
    return engine


def ensure_stop_times_index(engine: Engine):
    """
    Older snapshots were built without this index, which makes the scheduled
    position lookup scan the whole stop_times table
    """
    with engine.begin() as connection:
        connection.execute(
            text(
                "CREATE INDEX IF NOT EXISTS idx_stop_times_trip_id "
                "ON stop_times (trip_id, stop_sequence)"
            )
        )


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)
