"""Route shape geometry: length, linear referencing and stop lookup along a polyline."""

import bisect
import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence

from shapely.geometry import LineString, Point

from orion.errors import NoGeometryError

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000

# Heading is measured towards a point this fraction further along the path
HEADING_LOOKAHEAD = 0.005


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth
    Returns distance in meters
    """
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])

    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.asin(math.sqrt(a))

    return c * EARTH_RADIUS_M


def bearing(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Initial great-circle bearing from point 1 to point 2, in degrees [0, 360)"""
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])
    dlon = lon2 - lon1
    x = math.sin(dlon) * math.cos(lat2)
    y = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(dlon)
    return (math.degrees(math.atan2(x, y)) + 360) % 360


@dataclass
class Stop:
    """A stop, optionally projected onto a specific shape (distance is a 0-1 fraction)"""

    id: str
    lat: float
    lon: float
    distance: Optional[float] = None


class RouteShape:
    """
    The polyline a trip follows.

    Points are (longitude, latitude) pairs. Linear referencing is done by shapely
    on a copy of the line whose longitudes are scaled by cos(latitude), which keeps
    fractions along the path close to fractions of the great-circle length at city
    scale. The length itself is the cumulative haversine distance in meters.
    """

    def __init__(self, points: Sequence[tuple[float, float]], stops: Optional[list[Stop]] = None):
        self.points = [(float(lon), float(lat)) for lon, lat in points]

        self.length = 0.0
        for (lon1, lat1), (lon2, lat2) in zip(self.points, self.points[1:]):
            self.length += haversine_distance(lat1, lon1, lat2, lon2)

        if self.points:
            mean_lat = sum(lat for _, lat in self.points) / len(self.points)
            self._lon_scale = math.cos(math.radians(mean_lat))
        else:
            self._lon_scale = 1.0

        # shapely needs at least two points for a LineString
        distinct = list(dict.fromkeys(self.points))
        if len(distinct) >= 2:
            self._line = LineString([self._to_plane(lon, lat) for lon, lat in self.points])
        else:
            self._line = None

        self.stops: Optional[list[Stop]] = None
        self._stop_distances: list[float] = []
        if stops is not None:
            self._attach_stops(stops)

    @property
    def has_stops(self) -> bool:
        return self.stops is not None

    def _to_plane(self, lon: float, lat: float) -> tuple[float, float]:
        return (lon * self._lon_scale, lat)

    def _from_plane(self, x: float, y: float) -> tuple[float, float]:
        return (x / self._lon_scale, y)

    def _check_geometry(self):
        if not self.points:
            raise NoGeometryError("shape has no points")

    def _attach_stops(self, stops: list[Stop]):
        for stop in stops:
            stop.distance = self.project(stop.lon, stop.lat)
        self.stops = sorted(stops, key=lambda s: s.distance)
        self._stop_distances = [s.distance for s in self.stops]

    def interpolate(self, ratio: float) -> tuple[float, float]:
        """
        Coordinates (lon, lat) at a fraction of the path.

        Some timetables put raw distances where a ratio is expected, so NaN,
        negative values and values past 1 all become 0.
        """
        self._check_geometry()
        if ratio is None or math.isnan(ratio) or not 0 <= ratio <= 1:
            ratio = 0.0

        if self._line is None:
            return self.points[0]

        point = self._line.interpolate(ratio, normalized=True)
        return self._from_plane(point.x, point.y)

    def project(self, lon: float, lat: float) -> float:
        """Fraction [0, 1] along the path of the nearest point to (lon, lat)"""
        self._check_geometry()
        if self._line is None:
            return 0.0
        return self._line.project(Point(self._to_plane(lon, lat)), normalized=True)

    def distance_at(self, ratio: float) -> float:
        """Meters along the path at a fraction, clamped to [0, length]"""
        return min(max(ratio, 0.0), 1.0) * self.length

    def ratio_at(self, distance_m: float) -> float:
        if self.length <= 0:
            return 0.0
        return min(max(distance_m / self.length, 0.0), 1.0)

    def heading_at(self, ratio: float) -> float:
        """Bearing from the point at `ratio` to a point slightly further along; 0 at the end"""
        self._check_geometry()
        ahead = ratio + HEADING_LOOKAHEAD
        if self._line is None or ahead > 1:
            return 0.0
        lon1, lat1 = self.interpolate(ratio)
        lon2, lat2 = self.interpolate(ahead)
        if (lon1, lat1) == (lon2, lat2):
            return 0.0
        return bearing(lat1, lon1, lat2, lon2)

    def project_distance_to_stop_id(self, distance_m: float) -> Optional[str]:
        """
        Id of the closest stop at or before `distance_m` meters along the path.

        Returns None when the shape was built without stops, or when the distance
        precedes the first stop.
        """
        if not self.stops:
            return None

        ratio = self.ratio_at(distance_m)
        index = bisect.bisect_right(self._stop_distances, ratio) - 1
        if index < 0:
            return None
        return self.stops[index].id

    def __repr__(self):
        return f"RouteShape(points={len(self.points)}, length={self.length:.0f}m)"
