"""
Continuous collector that saves every agency's vehicle positions and trip
updates to the telemetry database every few seconds.

Each agency runs its own self-paced loop: after a cycle finishes the loop waits
for the rest of the interval (at least half a second), so a slow agency never
holds up the others.
"""

import json
import logging
import threading
import time
from typing import Optional

from orion import config
from orion.config import AGENCIES, Agency
from orion.errors import OrionError
from orion.realtime import (
    decode_feed,
    fetch_feed,
    normalize_trip_updates,
    normalize_vehicles,
    trip_update_delay,
)
from orion.telemetry import TelemetryStore
from orion.timetable import FeedRegistry

logger = logging.getLogger(__name__)

MIN_WAIT_SECS = 0.5


def log_event_with_agency(event: str, agency_id: str, **fields):
    """Log a structured event as a single JSON line, for log-based metrics"""
    logger.info(json.dumps({"event": event, "agency": agency_id, **fields}))


class VehicleCollector:
    """
    Saves live telemetry for a set of agencies

    Args:
        telemetry: Where positions and trip updates are written
        registry: Timetable snapshots, used to resolve block ids and delays
        interval_secs: Target time between the starts of two cycles
    """

    def __init__(
        self,
        telemetry: TelemetryStore,
        registry: FeedRegistry = None,
        agencies: list[Agency] = None,
        interval_secs: float = config.SAVE_INTERVAL_SECS,
        fetch=fetch_feed,
    ):
        self.telemetry = telemetry
        self.registry = registry or FeedRegistry()
        self.agencies = agencies if agencies is not None else AGENCIES
        self.interval_secs = interval_secs
        self.fetch = fetch
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def save_vehicles(self, agency: Agency, server_time: Optional[int] = None) -> bool:
        """
        One collection cycle for an agency. Failures are logged and reported as
        an event; the next cycle is scheduled either way.

        Returns:
            True if the cycle saved successfully
        """
        if server_time is None:
            server_time = int(time.time() * 1000)

        try:
            store = self.registry.get_feed(agency, server_time)

            trip_updates_count = 0
            if agency.trip_updates_url:
                updates = normalize_trip_updates(decode_feed(self.fetch(agency.trip_updates_url)))
                trip_updates_count = self.telemetry.write_trip_updates(
                    agency.id, server_time, [(u, trip_update_delay(store, u)) for u in updates]
                )

            if not agency.vehicle_positions_url:
                raise OrionError(f"no vehicle positions url configured for {agency.id}")
            vehicles = normalize_vehicles(decode_feed(self.fetch(agency.vehicle_positions_url)), store)
            vehicles_count = self.telemetry.write_vehicle_positions(agency.id, server_time, vehicles)

        except (OrionError, OSError, ValueError) as e:
            log_event_with_agency("agency-gtfs-save-failed", agency.id, error=str(e))
            logger.warning("Saving vehicles / trip updates failed for %s: %s", agency.id, e)
            return False

        log_event_with_agency(
            "agency-gtfs-saved",
            agency.id,
            tripUpdatesCount=trip_updates_count,
            vehiclesCount=vehicles_count,
        )
        return True

    def next_wait(self, agency: Agency, duration_secs: float) -> float:
        if duration_secs > self.interval_secs:
            logger.info(
                "Saving vehicles for %s took %.1fs, which is longer than the interval of %.1fs",
                agency.id,
                duration_secs,
                self.interval_secs,
            )
        return max(self.interval_secs - duration_secs, MIN_WAIT_SECS)

    def run_agency(self, agency: Agency):
        """Repeat save_vehicles for one agency until stop() is called"""
        while not self._stop.is_set():
            start = time.monotonic()
            try:
                self.save_vehicles(agency)
            except Exception:
                # Keep the loop alive; the cycle is retried after the wait
                logger.exception("Error in save_vehicles for %s", agency.id)
            self._stop.wait(self.next_wait(agency, time.monotonic() - start))

    def start(self):
        for agency in self.agencies:
            logger.info("Agency: %s (gtfs-realtime)", agency.id)
            thread = threading.Thread(target=self.run_agency, args=(agency,), name=f"collector-{agency.id}", daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self, timeout: float = None):
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    agencies = [a for a in AGENCIES if a.vehicle_positions_url]
    if not agencies:
        raise ValueError("No agencies with a vehicle positions url configured")

    collector = VehicleCollector(TelemetryStore(), agencies=agencies)
    logger.info("Collecting vehicle positions every %.0f seconds. Press Ctrl+C to stop", collector.interval_secs)
    collector.start()

    try:
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        logger.info("Stopping continuous collection...")
        collector.stop(timeout=collector.interval_secs)


if __name__ == "__main__":
    main()
