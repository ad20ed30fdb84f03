"""
Scheduled position tests

Uses the timetable seeded in conftest.seed_timetable().

Run with: pytest tests/test_scheduled.py
"""

import pytest

from orion.errors import ShapeDistanceError, TripIdsNotUniqueError
from orion.models import Shape, StopTime, Trip
from orion.records import ScheduledStatus, ScheduledStopTime, StopTimePair, StopTimeTag
from orion.scheduled import ScheduledPositionEngine, pair_stop_times, time_fraction

from conftest import local_ms


def _stop_time(trip_id, tag, departure="08:00:00", arrival="08:00:00", sequence=1):
    return ScheduledStopTime(
        trip_id=trip_id,
        stop_id="S1",
        stop_sequence=sequence,
        arrival_time=arrival,
        departure_time=departure,
        shape_dist_traveled=None,
        tag=tag,
    )


def _by_trip(positions):
    return {p.trip_id: p for p in positions}


@pytest.fixture
def engine():
    return ScheduledPositionEngine(lookback_secs=15 * 60, lookahead_secs=15 * 60)


def test_status_from_pair():
    before = _stop_time("T", StopTimeTag.BEFORE)
    after = _stop_time("T", StopTimeTag.AFTER)
    assert StopTimePair("T", 0, before, after).status == ScheduledStatus.RUNNING
    assert StopTimePair("T", 0, before, None).status == ScheduledStatus.ENDED
    assert StopTimePair("T", 0, None, after).status == ScheduledStatus.NOT_STARTED


def test_pair_stop_times_groups_by_trip():
    rows = [
        _stop_time("B", StopTimeTag.AFTER),
        _stop_time("A", StopTimeTag.AFTER),
        _stop_time("A", StopTimeTag.BEFORE),
    ]
    pairs = pair_stop_times(rows, 100)
    assert [p.trip_id for p in pairs] == ["A", "B"]
    assert pairs[0].status == ScheduledStatus.RUNNING
    assert pairs[1].status == ScheduledStatus.NOT_STARTED


def test_pair_stop_times_duplicate_tag_raises():
    rows = [_stop_time("A", StopTimeTag.BEFORE), _stop_time("A", StopTimeTag.BEFORE, sequence=2)]
    with pytest.raises(TripIdsNotUniqueError):
        pair_stop_times(rows, 100)


def test_time_fraction():
    before = _stop_time("T", StopTimeTag.BEFORE, departure="08:10:00")
    after = _stop_time("T", StopTimeTag.AFTER, arrival="08:20:00")
    assert time_fraction(8 * 3600 + 12 * 60, before, after) == pytest.approx(0.2)


def test_time_fraction_across_midnight():
    before = _stop_time("T", StopTimeTag.BEFORE, departure="23:55:00")
    after = _stop_time("T", StopTimeTag.AFTER, arrival="00:05:00")
    assert time_fraction(0, before, after) == pytest.approx(0.5)


def test_time_fraction_zero_span():
    before = _stop_time("T", StopTimeTag.BEFORE, departure="08:10:00")
    after = _stop_time("T", StopTimeTag.AFTER, arrival="08:10:00")
    assert time_fraction(8 * 3600 + 10 * 60, before, after) == 0


def test_positions_morning(engine, store):
    positions = _by_trip(engine.positions(store, local_ms(8, 12)))
    assert set(positions) == {"T1", "T2", "T3"}

    t1 = positions["T1"]
    assert t1.status == ScheduledStatus.RUNNING
    assert t1.lon == pytest.approx(-79.688, abs=1e-6)
    assert t1.lat == pytest.approx(43.70, abs=1e-6)
    assert t1.stop_id == "S2"
    assert t1.stop_sequence == 2
    assert t1.heading == pytest.approx(90, abs=0.1)
    shape = store.get_shape_by_trip_id("T1")
    assert t1.distance_along_route == pytest.approx(0.6 * shape.length, rel=1e-6)

    t2 = positions["T2"]
    assert t2.status == ScheduledStatus.RUNNING
    assert t2.lon == pytest.approx(-79.693, abs=1e-6)


def test_positions_fill_trip_attributes(engine, store):
    t1 = _by_trip(engine.positions(store, local_ms(8, 12)))["T1"]
    assert t1.route_id == "R1"
    assert t1.trip_headsign == "Eastbound"
    assert t1.block_id == "B1"
    assert t1.terminal_departure_time == "08:00:00"
    assert t1.to_dict()["status"] == "running"
    assert t1.to_dict()["source"] == "scheduled"


def test_not_started_trip_sits_at_first_stop(engine, store):
    t3 = _by_trip(engine.positions(store, local_ms(8, 12)))["T3"]
    assert t3.status == ScheduledStatus.NOT_STARTED
    assert (t3.lat, t3.lon) == (43.70, -79.70)
    assert t3.stop_sequence == 1
    assert t3.distance_along_route == 0
    assert t3.heading == 0


def test_ended_trip_sits_at_last_stop(engine, store):
    positions = _by_trip(engine.positions(store, local_ms(8, 22)))
    t1 = positions["T1"]
    assert t1.status == ScheduledStatus.ENDED
    assert (t1.lat, t1.lon) == (43.70, -79.68)
    assert t1.stop_id == "S3"
    assert t1.distance_along_route == pytest.approx(store.get_shape_by_trip_id("T1").length)
    assert positions["T2"].status == ScheduledStatus.RUNNING


def test_shape_dist_traveled_interpolation(engine, store):
    """Halfway between 0 and 800 of 1600 is a quarter of the way along the shape"""
    t4 = _by_trip(engine.positions(store, local_ms(10, 5)))["T4"]
    assert t4.status == ScheduledStatus.RUNNING
    assert t4.lon == pytest.approx(-79.695, abs=1e-6)
    assert t4.distance_along_route == pytest.approx(0.25 * store.get_shape_by_trip_id("T4").length, rel=1e-6)


def test_straight_line_without_shape(engine, store):
    t5 = _by_trip(engine.positions(store, local_ms(12, 5)))["T5"]
    assert t5.status == ScheduledStatus.RUNNING
    assert t5.lon == pytest.approx(-79.695, abs=1e-9)
    assert t5.lat == pytest.approx(43.70, abs=1e-9)
    assert t5.heading == pytest.approx(90, abs=0.1)
    assert t5.distance_along_route == 0


def test_trip_past_midnight_found_next_morning(engine, agency, registry):
    """A 25:20-26:00 trip is running at 01:30 on the following calendar day"""
    store = registry.get_feed(agency, local_ms(1, 30, day=(2024, 3, 6)))
    positions = engine.positions(store, local_ms(1, 30, day=(2024, 3, 6)))

    assert [p.trip_id for p in positions] == ["T-late"]
    late = positions[0]
    assert late.status == ScheduledStatus.RUNNING
    assert late.lon == pytest.approx(-79.695, abs=1e-6)
    assert late.terminal_departure_time == "25:20:00"


def test_no_overnight_pass_after_cutoff(engine, store):
    assert engine.positions(store, local_ms(5, 0)) == []


def test_calendar_date_removal(engine, store):
    """SPECIAL is removed on 2024-03-05 and HOLIDAY only runs on 2024-03-06"""
    assert engine.positions(store, local_ms(14, 5)) == []


def test_calendar_date_addition(engine, agency, registry):
    when = local_ms(14, 5, day=(2024, 3, 6))
    store = registry.get_feed(agency, when)
    assert set(_by_trip(engine.positions(store, when))) == {"T6", "T7"}


def test_unknown_service_runs_every_day(engine, agency, registry):
    """Trips with no service_id, or one unknown to both calendar tables, run on a Saturday too"""
    when = local_ms(16, 5, day=(2024, 3, 9))
    store = registry.get_feed(agency, when)
    assert set(_by_trip(engine.positions(store, when))) == {"T8", "T9"}


def test_single_trip_lookup(engine, store):
    pairs = engine.stop_time_pairs(store, local_ms(8, 12), trip_id="T2")
    assert len(pairs) == 1
    assert pairs[0].trip_id == "T2"
    assert pairs[0].before.stop_id == "S1"
    assert pairs[0].after.stop_id == "S2"


def test_same_trip_in_both_passes_raises(engine, agency, registry, snapshot_session):
    """A trip matching both yesterday's and today's service is a corrupt timetable"""
    snapshot_session.add(Trip(trip_id="TD", route_id="R1", service_id="WEEKDAY", shape_id="SH1"))
    snapshot_session.add_all(
        [
            StopTime(trip_id="TD", stop_id="S1", stop_sequence=1, arrival_time="01:20:00", departure_time="01:20:00"),
            StopTime(trip_id="TD", stop_id="S2", stop_sequence=2, arrival_time="01:40:00", departure_time="01:40:00"),
            StopTime(trip_id="TD", stop_id="S3", stop_sequence=3, arrival_time="25:35:00", departure_time="25:35:00"),
        ]
    )
    snapshot_session.commit()

    when = local_ms(1, 30, day=(2024, 3, 6))
    with pytest.raises(TripIdsNotUniqueError):
        engine.stop_time_pairs(registry.get_feed(agency, when), when)


def test_zero_shape_dist_raises(engine, store, snapshot_session):
    snapshot_session.add(Trip(trip_id="TZ", route_id="R1", service_id="WEEKDAY", shape_id="SH1"))
    snapshot_session.add_all(
        [
            StopTime(
                trip_id="TZ",
                stop_id=stop_id,
                stop_sequence=i + 1,
                arrival_time=hhmmss,
                departure_time=hhmmss,
                shape_dist_traveled=0.0,
            )
            for i, (stop_id, hhmmss) in enumerate([("S1", "18:00:00"), ("S2", "18:10:00"), ("S3", "18:20:00")])
        ]
    )
    snapshot_session.commit()

    with pytest.raises(ShapeDistanceError):
        engine.positions(store, local_ms(18, 5))


def _add_layover_trip(session):
    """TS follows SH2, which runs two stop spacings past S3 (0..3200) to a layover loop"""
    for i in range(5):
        session.add(
            Shape(
                shape_id="SH2",
                shape_pt_sequence=i + 1,
                shape_pt_lat=43.70,
                shape_pt_lon=-79.70 + 0.01 * i,
                shape_dist_traveled=800.0 * i,
            )
        )
    session.add(Trip(trip_id="TS", route_id="R1", service_id="WEEKDAY", shape_id="SH2"))
    session.add_all(
        [
            StopTime(
                trip_id="TS",
                stop_id=stop_id,
                stop_sequence=i + 1,
                arrival_time=hhmmss,
                departure_time=hhmmss,
                shape_dist_traveled=800.0 * i,
            )
            for i, (stop_id, hhmmss) in enumerate([("S1", "18:00:00"), ("S2", "18:10:00"), ("S3", "18:20:00")])
        ]
    )
    session.commit()


def test_shape_dist_normalized_by_full_shape(engine, store, snapshot_session):
    """Halfway from S1 to S2 stays halfway even when the shape runs on past the last stop"""
    _add_layover_trip(snapshot_session)

    ts = _by_trip(engine.positions(store, local_ms(18, 5)))["TS"]
    assert ts.status == ScheduledStatus.RUNNING
    assert ts.lon == pytest.approx(-79.695, abs=1e-6)
    assert ts.distance_along_route == pytest.approx(0.125 * store.get_shape_by_trip_id("TS").length, rel=1e-6)
