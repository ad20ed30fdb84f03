"""
Route shape geometry tests

Run with: pytest tests/test_shape.py
"""

import math

import pytest

from orion.errors import NoGeometryError
from orion.shape import RouteShape, Stop, bearing, haversine_distance

# An east-west street, points as (lon, lat)
STREET = [(-79.70, 43.70), (-79.69, 43.70), (-79.68, 43.70)]


def test_haversine_distance_known_value():
    """0.01 degrees of longitude at 43.7N is about 804m"""
    distance = haversine_distance(43.70, -79.70, 43.70, -79.69)
    assert distance == pytest.approx(804, abs=2)


def test_haversine_distance_same_point():
    assert haversine_distance(43.7, -79.7, 43.7, -79.7) == 0


@pytest.mark.parametrize(
    "lat2,lon2,expected",
    [(44.0, -79.7, 0), (43.7, -79.6, 90), (43.0, -79.7, 180), (43.7, -79.8, 270)],
)
def test_bearing_cardinal_directions(lat2, lon2, expected):
    assert bearing(43.7, -79.7, lat2, lon2) == pytest.approx(expected, abs=0.1)


def test_length_is_cumulative_haversine():
    shape = RouteShape(STREET)
    expected = haversine_distance(43.70, -79.70, 43.70, -79.69) + haversine_distance(43.70, -79.69, 43.70, -79.68)
    assert shape.length == pytest.approx(expected)


def test_interpolate_midpoint():
    shape = RouteShape(STREET)
    lon, lat = shape.interpolate(0.5)
    assert lon == pytest.approx(-79.69, abs=1e-6)
    assert lat == pytest.approx(43.70, abs=1e-6)


@pytest.mark.parametrize("ratio", [-0.5, float("nan"), None])
def test_interpolate_invalid_ratio_gives_start(ratio):
    shape = RouteShape(STREET)
    assert shape.interpolate(ratio) == pytest.approx((-79.70, 43.70))


@pytest.mark.parametrize("ratio", [1.0000001, 1600])
def test_interpolate_past_end_gives_start(ratio):
    """Raw distances passed as ratios are treated like missing ones"""
    shape = RouteShape(STREET)
    assert shape.interpolate(ratio) == pytest.approx((-79.70, 43.70))


def test_interpolate_end():
    shape = RouteShape(STREET)
    assert shape.interpolate(1.0) == pytest.approx((-79.68, 43.70))


def test_project_point_on_path():
    shape = RouteShape(STREET)
    assert shape.project(-79.695, 43.70) == pytest.approx(0.25, abs=1e-6)


def test_project_point_off_path_uses_nearest_point():
    shape = RouteShape(STREET)
    assert shape.project(-79.69, 43.705) == pytest.approx(0.5, abs=1e-6)


def test_project_before_start():
    shape = RouteShape(STREET)
    assert shape.project(-79.75, 43.70) == 0


def test_distance_at_and_ratio_at():
    shape = RouteShape(STREET)
    assert shape.distance_at(0.5) == pytest.approx(shape.length / 2)
    assert shape.distance_at(2) == pytest.approx(shape.length)
    assert shape.ratio_at(shape.length / 4) == pytest.approx(0.25)
    assert shape.ratio_at(-10) == 0


def test_heading_east():
    shape = RouteShape(STREET)
    assert shape.heading_at(0.3) == pytest.approx(90, abs=0.1)


def test_heading_at_end_is_zero():
    shape = RouteShape(STREET)
    assert shape.heading_at(1.0) == 0


def test_heading_follows_turn():
    """North then east: heading changes after the corner"""
    shape = RouteShape([(-79.70, 43.70), (-79.70, 43.71), (-79.69, 43.71)])
    assert shape.heading_at(0.1) == pytest.approx(0, abs=0.5)
    assert shape.heading_at(0.9) == pytest.approx(90, abs=0.5)


def test_empty_shape_raises():
    shape = RouteShape([])
    assert shape.length == 0
    with pytest.raises(NoGeometryError):
        shape.interpolate(0.5)
    with pytest.raises(NoGeometryError):
        shape.project(-79.7, 43.7)


def test_single_point_shape():
    shape = RouteShape([(-79.70, 43.70)])
    assert shape.length == 0
    assert shape.interpolate(0.7) == (-79.70, 43.70)
    assert shape.project(-79.0, 43.0) == 0
    assert shape.heading_at(0.5) == 0


def test_stops_are_ordered_along_shape():
    stops = [Stop("S3", 43.70, -79.68), Stop("S1", 43.70, -79.70), Stop("S2", 43.70, -79.69)]
    shape = RouteShape(STREET, stops=stops)

    assert shape.has_stops
    assert [s.id for s in shape.stops] == ["S1", "S2", "S3"]
    assert [s.distance for s in shape.stops] == pytest.approx([0, 0.5, 1])


def test_project_distance_to_stop_id():
    stops = [Stop("S1", 43.70, -79.70), Stop("S2", 43.70, -79.69), Stop("S3", 43.70, -79.68)]
    shape = RouteShape(STREET, stops=stops)

    assert shape.project_distance_to_stop_id(0) == "S1"
    assert shape.project_distance_to_stop_id(shape.length * 0.4) == "S1"
    assert shape.project_distance_to_stop_id(shape.length * 0.6) == "S2"
    assert shape.project_distance_to_stop_id(shape.length) == "S3"


def test_project_distance_before_first_stop():
    """A first stop partway along the shape has nothing before it"""
    shape = RouteShape(STREET, stops=[Stop("S2", 43.70, -79.69), Stop("S3", 43.70, -79.68)])
    assert shape.project_distance_to_stop_id(shape.length * 0.1) is None


def test_project_distance_without_stops():
    shape = RouteShape(STREET)
    assert not shape.has_stops
    assert shape.project_distance_to_stop_id(100) is None


def test_longitude_scaling_keeps_fractions_metric():
    """A diagonal path: fraction along the path matches fraction of haversine length"""
    shape = RouteShape([(-79.70, 43.70), (-79.70, 43.71), (-79.60, 43.71)])
    north_leg = haversine_distance(43.70, -79.70, 43.71, -79.70)
    lon, lat = shape.interpolate(north_leg / shape.length)
    assert lon == pytest.approx(-79.70, abs=1e-4)
    assert lat == pytest.approx(43.71, abs=1e-4)
    assert not math.isnan(shape.length)


# North, east, then north again; corners at about 29% and 71% of the way
BENT = [(-79.70, 43.70), (-79.70, 43.71), (-79.68, 43.71), (-79.68, 43.72)]
BENT_LON_SCALE = math.cos(math.radians(sum(lat for _, lat in BENT) / len(BENT)))
METERS_PER_DEGREE_LAT = 111195


def _sideways(shape, ratio, meters):
    """The point at `ratio`, moved `meters` to the left of the direction of travel"""
    (lon1, lat1) = shape.interpolate(max(ratio - 0.001, 0))
    (lon2, lat2) = shape.interpolate(min(ratio + 0.001, 1))
    dx, dy = (lon2 - lon1) * BENT_LON_SCALE, lat2 - lat1
    norm = math.hypot(dx, dy)
    step = meters / METERS_PER_DEGREE_LAT

    lon, lat = shape.interpolate(ratio)
    return lon - dy / norm * step / BENT_LON_SCALE, lat + dx / norm * step


@pytest.mark.parametrize("ratio", [i / 10 for i in range(11)])
def test_project_inverts_interpolate(ratio):
    shape = RouteShape(BENT)
    assert shape.project(*shape.interpolate(ratio)) == pytest.approx(ratio, abs=1e-9)


@pytest.mark.parametrize("meters", [3, -3])
@pytest.mark.parametrize("ratio", [i / 10 for i in range(11)])
def test_project_ignores_small_sideways_offset(ratio, meters):
    """GPS noise across the street doesn't move a vehicle along its route"""
    shape = RouteShape(BENT)
    lon, lat = _sideways(shape, ratio, meters)
    assert shape.project(lon, lat) == pytest.approx(ratio, abs=1e-6)
