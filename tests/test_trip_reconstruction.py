"""Tests for trip reconstruction from position breadcrumbs."""

from transit_telemetry.services.analytics import reconstruct_trips

from fixtures.feed_fixture import position, vehicle_run


class TestReconstructTrips:
    def test_empty(self) -> None:
        assert reconstruct_trips([]) == []

    def test_single_continuous_run(self) -> None:
        trips = reconstruct_trips(vehicle_run("V1", 0))

        assert len(trips) == 1
        trip = trips[0]
        assert trip.vehicle_id == "V1"
        assert trip.route == "701"
        assert trip.direction_id == 0
        assert trip.runtime_secs == 1200
        assert trip.position_count == 41
        assert trip.avg_speed == 18.0

    def test_gap_splits_trips(self) -> None:
        points = [position(minutes=m) for m in (0, 1, 2, 3)] + [
            position(minutes=m) for m in (15, 16, 17)
        ]
        trips = reconstruct_trips(points)

        assert [t.position_count for t in trips] == [4, 3]
        assert trips[0].runtime_secs == 180
        assert trips[1].runtime_secs == 120

    def test_gap_at_threshold_does_not_split(self) -> None:
        points = [position(minutes=m) for m in (0, 1, 11, 12)]
        assert len(reconstruct_trips(points, max_gap_minutes=10)) == 1

    def test_trip_id_change_splits(self) -> None:
        points = [position(minutes=m, trip_id="A") for m in (0, 1, 2)] + [
            position(minutes=m, trip_id="B") for m in (3, 4, 5)
        ]
        trips = reconstruct_trips(points)

        assert [t.trip_id for t in trips] == ["A", "B"]

    def test_missing_trip_id_does_not_split(self) -> None:
        points = [
            position(minutes=0, trip_id="A"),
            position(minutes=1, trip_id=None),
            position(minutes=2, trip_id="A"),
        ]
        assert len(reconstruct_trips(points)) == 1

    def test_short_runs_dropped(self) -> None:
        points = [position(minutes=m) for m in (0, 1)] + [
            position(minutes=m) for m in (30, 31, 32)
        ]
        trips = reconstruct_trips(points)

        assert len(trips) == 1
        assert trips[0].position_count == 3

    def test_avg_speed_ignores_missing_and_negative(self) -> None:
        points = [
            position(minutes=0, speed=10.0),
            position(minutes=1, speed=None),
            position(minutes=2, speed=-1.0),
            position(minutes=3, speed=15.0),
        ]
        trips = reconstruct_trips(points)

        assert trips[0].avg_speed == 12.5

    def test_avg_speed_zero_without_samples(self) -> None:
        points = [position(minutes=m, speed=None) for m in (0, 1, 2)]
        assert reconstruct_trips(points)[0].avg_speed == 0.0
