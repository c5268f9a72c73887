"""Weekly refresh of route segments and stops from OpenTripPlanner."""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import polyline
from sqlalchemy import text

from transit_telemetry.config import get_settings
from transit_telemetry.database import bulk_insert, get_session_context
from transit_telemetry.logging import get_logger
from transit_telemetry.services.feed.fetcher import FeedFetcher
from transit_telemetry.services.segments.geometry import SegmentDefinition, split_into_segments

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

ROUTE_PATTERNS_QUERY = """
query {
  routes {
    shortName
    patterns {
      directionId
      patternGeometry { points }
      stops { gtfsId name lat lon }
    }
  }
}
"""

SEGMENT_COLUMNS = (
    "id",
    "route",
    "direction_id",
    "segment_index",
    "start_lat",
    "start_lon",
    "end_lat",
    "end_lon",
    "mid_lat",
    "mid_lon",
    "length_m",
    "geometry",
)

STOP_COLUMNS = (
    "id",
    "route",
    "direction_id",
    "stop_sequence",
    "stop_id",
    "stop_name",
    "lat",
    "lon",
)

SessionContext = Callable[[], AbstractAsyncContextManager["AsyncSession"]]


class SegmentRefreshError(Exception):
    """Raised when route geometry cannot be refreshed."""


@dataclass
class RouteReference:
    """Segments and stops extracted from one OTP response."""

    segments: dict[str, SegmentDefinition] = field(default_factory=dict)
    stops: dict[str, dict[str, Any]] = field(default_factory=dict)
    routes_seen: int = 0
    patterns_skipped: int = 0


_PATTERN_ERRORS = (AttributeError, IndexError, KeyError, TypeError, ValueError)


def _parse_pattern(
    short_name: str, pattern: dict[str, Any], target_length_m: float
) -> tuple[list[SegmentDefinition], list[dict[str, Any]]]:
    """Segments and stop rows for one pattern; raises on malformed fields."""
    direction_id = int(pattern["directionId"])
    decoded = polyline.decode(pattern["patternGeometry"]["points"])

    # polyline yields (lat, lon); segments work in GeoJSON order
    lon_lat = [(lon, lat) for lat, lon in decoded]
    segments = split_into_segments(short_name, direction_id, lon_lat, target_length_m)

    stops: list[dict[str, Any]] = []
    for seq, stop in enumerate(pattern.get("stops") or []):
        gtfs_id = stop.get("gtfsId")
        if not gtfs_id or stop.get("lat") is None or stop.get("lon") is None:
            continue
        stops.append(
            {
                "id": f"{short_name}:{direction_id}:{seq}",
                "route": short_name,
                "direction_id": direction_id,
                "stop_sequence": seq,
                "stop_id": gtfs_id,
                "stop_name": stop.get("name") or None,
                "lat": float(stop["lat"]),
                "lon": float(stop["lon"]),
            }
        )
    return segments, stops


def parse_route_patterns(payload: Any, target_length_m: float = 200.0) -> RouteReference:
    """Turn an OTP ``routes { patterns }`` response into segment and stop rows.

    Patterns sharing a route and direction write to the same ids; the last
    one in the response wins. A malformed pattern is logged and skipped
    without affecting the others.

    Raises:
        SegmentRefreshError: If the response carries no routes.
    """
    data = payload.get("data") if isinstance(payload, dict) else None
    routes = data.get("routes") if isinstance(data, dict) else None
    if not isinstance(routes, list) or not routes:
        msg = "Invalid OTP response: no routes"
        raise SegmentRefreshError(msg)

    reference = RouteReference(routes_seen=len(routes))

    for route in routes:
        short_name = route.get("shortName") if isinstance(route, dict) else None
        if not short_name:
            continue

        for pattern in route.get("patterns") or []:
            if not isinstance(pattern, dict):
                reference.patterns_skipped += 1
                continue
            direction_id = pattern.get("directionId")
            points = (pattern.get("patternGeometry") or {}).get("points")
            if direction_id is None or not points:
                reference.patterns_skipped += 1
                continue

            try:
                segments, stops = _parse_pattern(short_name, pattern, target_length_m)
            except _PATTERN_ERRORS as exc:
                logger.warning(
                    "Skipping malformed route pattern",
                    route=short_name,
                    direction_id=direction_id,
                    error=str(exc),
                )
                reference.patterns_skipped += 1
                continue

            for segment in segments:
                reference.segments[segment.id] = segment
            for stop_row in stops:
                reference.stops[stop_row["id"]] = stop_row

    return reference


class SegmentRefresher:
    """Replaces ``route_segment`` and ``route_stop`` with fresh OTP geometry."""

    def __init__(
        self,
        fetcher: FeedFetcher | None = None,
        session_context: SessionContext = get_session_context,
    ) -> None:
        settings = get_settings()
        self.otp_url = settings.otp_url
        self.otp_origin = settings.otp_origin
        self.target_length_m = settings.segment_target_length_m
        self._fetcher = fetcher or FeedFetcher(
            timeout_sec=settings.otp_timeout_sec,
            max_retries=settings.otp_max_retries,
            user_agent=settings.feed_user_agent,
        )
        self._session_context = session_context

    async def run(self) -> dict[str, int]:
        """Fetch, split and store route geometry; return counts."""
        start = time.monotonic()
        logger.info("Refreshing route segments", otp_url=self.otp_url)

        payload = await self._fetcher.fetch_json(
            self.otp_url,
            label="otp-routes",
            method="POST",
            json_body={"query": ROUTE_PATTERNS_QUERY},
            headers={"Content-Type": "application/json", "Origin": self.otp_origin},
        )
        reference = parse_route_patterns(payload, self.target_length_m)
        if not reference.segments:
            msg = "OTP response contained no usable pattern geometry"
            raise SegmentRefreshError(msg)

        async with self._session_context() as session:
            try:
                await self._replace_reference(session, reference)
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        counts = {
            "routes": reference.routes_seen,
            "segments": len(reference.segments),
            "stops": len(reference.stops),
            "patterns_skipped": reference.patterns_skipped,
        }
        logger.info(
            "Route segments refreshed",
            duration_ms=int((time.monotonic() - start) * 1000),
            **counts,
        )
        return counts

    async def _replace_reference(self, session: AsyncSession, reference: RouteReference) -> None:
        await session.execute(text("DELETE FROM route_segment"))
        await session.execute(text("DELETE FROM route_stop"))

        segment_rows = []
        for seg in reference.segments.values():
            row = seg.as_row()
            row["geometry"] = json.dumps(row["geometry"], separators=(",", ":"))
            segment_rows.append(row)

        await bulk_insert(
            session, "route_segment", SEGMENT_COLUMNS, segment_rows, json_cols=("geometry",)
        )
        await bulk_insert(session, "route_stop", STOP_COLUMNS, list(reference.stops.values()))

