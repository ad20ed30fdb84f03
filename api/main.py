"""
FastAPI application for the Orion vehicle locations API

Serves route maps and scheduled, live and reconciled vehicle positions per
agency. Every positions and routes endpoint accepts an optional `time` (epoch
milliseconds) to query a moment other than now.
"""

from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from orion.errors import SnapshotDownloadError, SnapshotLockedError, UnknownAgencyError
from orion.reconcile import VehicleLocationService

# Create FastAPI app
app = FastAPI(
    title="Orion Vehicle Locations API",
    description="Scheduled and live transit vehicle positions, reconciled per trip",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_service() -> VehicleLocationService:
    """Process-wide service; snapshots and shapes stay cached between requests"""
    return VehicleLocationService()


def _call(method, agency: str, time: Optional[int]):
    try:
        return method(agency, time)
    except UnknownAgencyError:
        raise HTTPException(status_code=404, detail=f"Unknown agency: {agency}") from None
    except (SnapshotDownloadError, SnapshotLockedError) as e:
        raise HTTPException(status_code=503, detail=f"Timetable unavailable for {agency}: {e}") from e
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


@app.get("/")
async def root():
    """API root - health check"""
    return {"status": "ok", "name": "Orion Vehicle Locations API", "version": "1.0.0", "docs": "/docs"}


@app.get("/agencies")
def list_agencies(service: VehicleLocationService = Depends(get_service)):
    """Configured agencies and their timezones"""
    return [{"id": a.id, "timezone": a.timezone} for a in service.agencies.values()]


@app.get("/routes/{agency}")
def get_routes(agency: str, time: Optional[int] = None, service: VehicleLocationService = Depends(get_service)):
    """
    Every route with its shape geometry (GeoJSON MultiLineString) and stops

    Built once per timetable snapshot and served from memory afterwards.
    """
    return _call(service.get_routes, agency, time)


@app.get("/positions/{agency}")
def get_positions(agency: str, time: Optional[int] = None, service: VehicleLocationService = Depends(get_service)):
    """
    Reconciled positions keyed by trip id

    Each entry carries the scheduled position, the live vehicle matched to it
    (if any) and the calculated delay in seconds.
    """
    locations = _call(service.get_vehicle_locations, agency, time)
    return {trip_id: entry.to_dict() for trip_id, entry in locations.items()}


@app.get("/positions/{agency}/scheduled")
def get_scheduled_positions(
    agency: str, time: Optional[int] = None, service: VehicleLocationService = Depends(get_service)
):
    """Where every trip in service should be according to the timetable"""
    return [p.to_dict() for p in _call(service.get_scheduled_vehicle_locations, agency, time)]


@app.get("/positions/{agency}/live")
def get_live_positions(agency: str, time: Optional[int] = None, service: VehicleLocationService = Depends(get_service)):
    """Latest non-stale reported position of each vehicle"""
    return [r.to_dict() for r in _call(service.get_live_vehicle_locations, agency, time)]


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
