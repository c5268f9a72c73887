"""Tests for the OTP route segment refresh job."""

import json
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import polyline
import pytest

from transit_telemetry.services.segments.refresher import (
    SegmentRefresher,
    SegmentRefreshError,
    parse_route_patterns,
)

LINE = [(0.0, 0.0), (0.0, 0.001), (0.0, 0.002), (0.0, 0.003)]


def _payload() -> dict:
    return {
        "data": {
            "routes": [
                {
                    "shortName": "701",
                    "patterns": [
                        {
                            "directionId": 0,
                            "patternGeometry": {"points": polyline.encode(LINE)},
                            "stops": [
                                {"gtfsId": "STCP:BVS1", "name": "Boavista", "lat": 0.0, "lon": 0.0},
                                {"gtfsId": None, "name": "Ghost", "lat": 0.0, "lon": 0.001},
                                {"gtfsId": "STCP:CQ2", "name": "", "lat": 0.0, "lon": 0.003},
                            ],
                        },
                        {"directionId": None, "patternGeometry": {"points": "??"}},
                        {"directionId": 1, "patternGeometry": {"points": ""}},
                    ],
                },
                {"shortName": None, "patterns": []},
            ]
        }
    }


def _session_context(session: AsyncMock):
    @asynccontextmanager
    async def factory():
        yield session

    return factory


class TestParseRoutePatterns:
    def test_segments_and_stops(self) -> None:
        reference = parse_route_patterns(_payload())

        assert reference.routes_seen == 2
        assert reference.patterns_skipped == 2
        assert sorted(reference.segments) == ["701:0:0", "701:0:1"]
        assert sorted(reference.stops) == ["701:0:0", "701:0:2"]

    def test_segment_geometry_in_lon_lat_order(self) -> None:
        reference = parse_route_patterns(_payload())
        segment = reference.segments["701:0:1"]

        assert segment.geometry["coordinates"][-1] == [pytest.approx(0.003), 0.0]
        assert segment.end_lon == pytest.approx(0.003)

    def test_stop_rows(self) -> None:
        stops = parse_route_patterns(_payload()).stops

        assert stops["701:0:0"]["stop_id"] == "STCP:BVS1"
        assert stops["701:0:0"]["stop_name"] == "Boavista"
        assert stops["701:0:2"]["stop_sequence"] == 2
        assert stops["701:0:2"]["stop_name"] is None

    def test_later_pattern_overwrites(self) -> None:
        payload = _payload()
        patterns = payload["data"]["routes"][0]["patterns"]
        patterns.append(
            {
                "directionId": 0,
                "patternGeometry": {"points": polyline.encode(LINE[:2])},
                "stops": [],
            }
        )
        segments = parse_route_patterns(payload).segments

        assert segments["701:0:0"].end_lon == pytest.approx(0.001)
        assert "701:0:1" in segments

    def test_malformed_patterns_skipped(self) -> None:
        points = polyline.encode(LINE)
        payload = _payload()
        payload["data"]["routes"].insert(
            0,
            {
                "shortName": "205",
                "patterns": [
                    {"directionId": "x", "patternGeometry": {"points": points}},
                    "not-a-pattern",
                    {
                        "directionId": 1,
                        "patternGeometry": {"points": points},
                        "stops": [{"gtfsId": "STCP:X", "lat": "north", "lon": 0.0}],
                    },
                    {"directionId": 1, "patternGeometry": {"points": points}, "stops": ["bad"]},
                ],
            },
        )

        reference = parse_route_patterns(payload)

        assert reference.patterns_skipped == 6
        assert sorted(reference.segments) == ["701:0:0", "701:0:1"]
        assert sorted(reference.stops) == ["701:0:0", "701:0:2"]

    @pytest.mark.parametrize(
        "payload",
        [None, {}, {"data": None}, {"data": {"routes": []}}, {"errors": [{"message": "x"}]}],
    )
    def test_no_routes(self, payload: object) -> None:
        with pytest.raises(SegmentRefreshError, match="no routes"):
            parse_route_patterns(payload)


class TestSegmentRefresher:
    @pytest.mark.asyncio
    async def test_run_replaces_reference_tables(self) -> None:
        fetcher = AsyncMock()
        fetcher.fetch_json.return_value = _payload()
        session = AsyncMock()
        refresher = SegmentRefresher(fetcher=fetcher, session_context=_session_context(session))

        counts = await refresher.run()

        assert counts == {"routes": 2, "segments": 2, "stops": 2, "patterns_skipped": 2}

        kwargs = fetcher.fetch_json.call_args.kwargs
        assert kwargs["method"] == "POST"
        assert "patternGeometry" in kwargs["json_body"]["query"]
        assert kwargs["headers"]["Origin"] == refresher.otp_origin

        statements = [str(c.args[0]) for c in session.execute.call_args_list]
        assert statements[0] == "DELETE FROM route_segment"
        assert statements[1] == "DELETE FROM route_stop"
        assert statements[2].startswith("INSERT INTO route_segment")
        assert "CAST(:geometry_0 AS JSONB)" in statements[2]
        assert statements[3].startswith("INSERT INTO route_stop")
        session.commit.assert_awaited_once()

        params = session.execute.call_args_list[2].args[1]
        assert json.loads(params["geometry_0"])["type"] == "LineString"

    @pytest.mark.asyncio
    async def test_refuses_to_clear_without_geometry(self) -> None:
        fetcher = AsyncMock()
        fetcher.fetch_json.return_value = {
            "data": {"routes": [{"shortName": "701", "patterns": []}]}
        }
        session_context = MagicMock()
        refresher = SegmentRefresher(fetcher=fetcher, session_context=session_context)

        with pytest.raises(SegmentRefreshError, match="no usable pattern geometry"):
            await refresher.run()

        session_context.assert_not_called()

    @pytest.mark.asyncio
    async def test_rollback_on_write_failure(self) -> None:
        fetcher = AsyncMock()
        fetcher.fetch_json.return_value = _payload()
        session = AsyncMock()
        session.execute.side_effect = [None, None, RuntimeError("disk full")]
        refresher = SegmentRefresher(fetcher=fetcher, session_context=_session_context(session))

        with pytest.raises(RuntimeError, match="disk full"):
            await refresher.run()

        session.rollback.assert_awaited_once()
        session.commit.assert_not_awaited()
