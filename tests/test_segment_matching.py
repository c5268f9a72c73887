"""Tests for route geometry helpers and the segment matcher."""

import pytest

from transit_telemetry.services.segments import (
    SegmentMatcher,
    haversine_m,
    project_to_segment,
    split_into_segments,
)
from transit_telemetry.services.segments.geometry import geojson_to_latlon

from fixtures.feed_fixture import ROUTE_701_LINE


def _equator_line(edges: int, step: float = 0.001) -> list[list[float]]:
    """[lon, lat] vertices along the equator, ``step`` degrees apart (~111 m)."""
    return [[i * step, 0.0] for i in range(edges + 1)]


class TestGeometry:
    def test_haversine(self) -> None:
        assert haversine_m(41.15, -8.61, 41.16, -8.61) == pytest.approx(1112.0, rel=1e-3)
        assert haversine_m(41.15, -8.61, 41.15, -8.61) == 0.0

    def test_project_onto_vertex(self) -> None:
        lat, lon, dist = project_to_segment(41.0, -8.0, (41.0, -8.0), (41.0, -8.01))
        assert (lat, lon) == pytest.approx((41.0, -8.0))
        assert dist == pytest.approx(0.0, abs=1e-6)

    def test_project_perpendicular(self) -> None:
        lat, lon, dist = project_to_segment(41.0001, -8.005, (41.0, -8.0), (41.0, -8.01))
        assert lat == pytest.approx(41.0, abs=1e-9)
        assert lon == pytest.approx(-8.005, abs=1e-9)
        assert dist == pytest.approx(11.12, abs=0.05)

    def test_project_clamps_to_endpoint(self) -> None:
        lat, lon, _ = project_to_segment(41.0, -8.02, (41.0, -8.0), (41.0, -8.01))
        assert (lat, lon) == pytest.approx((41.0, -8.01))

    def test_zero_length_edge(self) -> None:
        lat, lon, dist = project_to_segment(41.001, -8.0, (41.0, -8.0), (41.0, -8.0))
        assert (lat, lon) == pytest.approx((41.0, -8.0))
        assert dist == pytest.approx(111.2, abs=0.5)

    def test_geojson_to_latlon(self) -> None:
        geometry = {"type": "LineString", "coordinates": [[-8.61, 41.15], [-8.62, 41.16]]}
        assert geojson_to_latlon(geometry) == [(41.15, -8.61), (41.16, -8.62)]
        assert geojson_to_latlon(None) == []
        assert geojson_to_latlon({"coordinates": "bad"}) == []


class TestSplitIntoSegments:
    def test_too_short(self) -> None:
        assert split_into_segments("701", 0, [[-8.61, 41.15]]) == []

    def test_fixed_length_with_short_tail(self) -> None:
        segments = split_into_segments("701", 0, _equator_line(11), target_length_m=200)

        assert [s.id for s in segments] == [f"701:0:{i}" for i in range(6)]
        assert all(s.length_m == pytest.approx(222.4, abs=0.5) for s in segments[:5])
        assert segments[-1].length_m == pytest.approx(111.2, abs=0.5)

    def test_segments_share_boundaries(self) -> None:
        segments = split_into_segments("701", 1, _equator_line(6))

        for prev, nxt in zip(segments, segments[1:]):
            assert (prev.end_lat, prev.end_lon) == (nxt.start_lat, nxt.start_lon)
        assert segments[0].start_lon == 0.0
        assert segments[-1].end_lon == pytest.approx(0.006)

    def test_row_shape(self) -> None:
        segment = split_into_segments("205", 1, _equator_line(2))[0]
        row = segment.as_row()

        assert row["id"] == "205:1:0"
        assert row["geometry"]["type"] == "LineString"
        assert row["geometry"]["coordinates"][0] == [0.0, 0.0]
        assert row["mid_lon"] == pytest.approx(0.001)


class TestSnap:
    def test_fix_on_polyline_unchanged(self) -> None:
        matcher = SegmentMatcher()
        lat, lon = ROUTE_701_LINE[2]

        result = matcher.snap("V1", lat, lon, "701", 0, [ROUTE_701_LINE])

        assert result.matched
        assert (result.lat, result.lon) == pytest.approx((lat, lon))
        assert result.distance_m == pytest.approx(0.0, abs=1e-3)

    def test_far_fix_unmatched(self) -> None:
        matcher = SegmentMatcher()

        result = matcher.snap("V1", 41.1625, -8.6390, "701", 0, [ROUTE_701_LINE])

        assert not result.matched
        assert (result.lat, result.lon) == (41.1625, -8.6390)
        assert result.distance_m is None
        assert matcher.cached_vehicles == 0

    def test_no_polylines(self) -> None:
        result = SegmentMatcher().snap("V1", 41.15, -8.61, "701", 0, [])
        assert not result.matched

    def test_nearby_hint_preferred_over_global_best(self) -> None:
        main_line = [(lat, lon) for lon, lat in _equator_line(30)]
        spur = [(0.00041, 0.0), (0.00041, 0.001)]
        polylines = [main_line, spur]
        matcher = SegmentMatcher()

        first = matcher.snap("V1", 0.0, 0.0005, "701", 0, polylines)
        assert first.edge_index == 0
        assert matcher.cached_vehicles == 1

        # ~40 m from the hinted edge, ~6 m from the spur.
        hinted = matcher.snap("V1", 0.00036, 0.0005, "701", 0, polylines)
        fresh = matcher.snap("V2", 0.00036, 0.0005, "701", 0, polylines)

        assert hinted.polyline_index == 0
        assert hinted.distance_m == pytest.approx(40.0, abs=0.5)
        assert fresh.polyline_index == 1
        assert fresh.distance_m < 10

    def test_falls_back_to_global_outside_window(self) -> None:
        line = [(lat, lon) for lon, lat in _equator_line(30)]
        matcher = SegmentMatcher()
        matcher.snap("V1", 0.0, 0.0005, "701", 0, [line])

        result = matcher.snap("V1", 0.0001, 0.0255, "701", 0, [line])

        assert result.matched
        assert result.edge_index == 25

    def test_cache_keyed_by_route_and_direction(self) -> None:
        matcher = SegmentMatcher()
        lat, lon = ROUTE_701_LINE[0]
        matcher.snap("V1", lat, lon, "701", 0, [ROUTE_701_LINE])
        matcher.snap("V1", lat, lon, "701", 1, [ROUTE_701_LINE])

        assert matcher.cached_vehicles == 2


class TestMatchSegmentId:
    @pytest.fixture
    def matcher(self) -> SegmentMatcher:
        segments = split_into_segments("701", 0, _equator_line(10))
        return SegmentMatcher(segments)

    def test_fix_attributed_to_containing_segment(self, matcher: SegmentMatcher) -> None:
        assert matcher.match_segment_id("V1", 0.0001, 0.0025, "701", 0) == "701:0:1"
        assert matcher.match_segment_id("V1", -0.0001, 0.0091, "701", 0) == "701:0:4"

    def test_unknown_direction_searches_all(self, matcher: SegmentMatcher) -> None:
        assert matcher.match_segment_id("V2", 0.0, 0.0061, "701", None) == "701:0:3"

    def test_unloaded_route_or_direction(self, matcher: SegmentMatcher) -> None:
        assert matcher.match_segment_id("V1", 0.0, 0.0025, "205", 0) is None
        assert matcher.match_segment_id("V1", 0.0, 0.0025, "701", 1) is None

    def test_off_route_fix(self, matcher: SegmentMatcher) -> None:
        assert matcher.match_segment_id("V1", 0.01, 0.0025, "701", 0) is None

    def test_hints_not_shared_with_snap(self) -> None:
        # Out along the equator and back 44 m north of it.
        out_leg = _equator_line(30)
        back_leg = [[lon, 0.0004] for lon, _ in reversed(out_leg)]
        matcher = SegmentMatcher(split_into_segments("701", 0, out_leg + back_leg))
        out_line = [(lat, lon) for lon, lat in out_leg]

        matcher.snap("V1", 0.0, 0.0005, "701", 0, [out_line])
        seeded = matcher.match_segment_id("V1", 0.0004, 0.0005, "701", 0)
        fresh = matcher.match_segment_id("V2", 0.0004, 0.0005, "701", 0)

        assert fresh != "701:0:0"
        assert seeded == fresh
