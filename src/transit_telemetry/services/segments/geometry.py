"""Planar-approximation geometry helpers for route polylines.

Coordinates passed around as ``(lat, lon)`` tuples unless noted. GeoJSON
geometries and OTP polylines keep their own ``[lon, lat]`` order and are
converted at the edges of this module.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

EARTH_RADIUS_M = 6_371_000.0
METERS_PER_DEGREE = math.pi * EARTH_RADIUS_M / 180.0

DEFAULT_SEGMENT_LENGTH_M = 200.0

LatLon = tuple[float, float]


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def project_to_segment(lat: float, lon: float, a: LatLon, b: LatLon) -> tuple[float, float, float]:
    """Project a fix onto the edge ``a``-``b``.

    Longitude is scaled by ``cos(lat)`` so the neighbourhood of the fix can
    be treated as a flat plane in metres. Returns the snapped
    ``(lat, lon, distance_m)``. A zero-length edge projects onto ``a``.
    """
    kx = math.cos(math.radians(lat)) * METERS_PER_DEGREE
    ky = METERS_PER_DEGREE

    # Local frame centred on the fix.
    ax = (a[1] - lon) * kx
    ay = (a[0] - lat) * ky
    bx = (b[1] - lon) * kx
    by = (b[0] - lat) * ky

    dx = bx - ax
    dy = by - ay
    length_sq = dx * dx + dy * dy

    if length_sq == 0:
        t = 0.0
    else:
        t = max(0.0, min(1.0, -(ax * dx + ay * dy) / length_sq))

    px = ax + t * dx
    py = ay + t * dy
    if kx == 0:
        snapped_lon = lon
    else:
        snapped_lon = lon + px / kx
    return lat + py / ky, snapped_lon, math.hypot(px, py)


@dataclass(frozen=True)
class SegmentDefinition:
    """One ~fixed-length slice of a route pattern, ready to persist."""

    route: str
    direction_id: int
    segment_index: int
    start_lat: float
    start_lon: float
    end_lat: float
    end_lon: float
    mid_lat: float
    mid_lon: float
    length_m: float
    # [lon, lat] pairs, GeoJSON order
    coordinates: tuple[tuple[float, float], ...] = field(default_factory=tuple)

    @property
    def id(self) -> str:
        return f"{self.route}:{self.direction_id}:{self.segment_index}"

    @property
    def geometry(self) -> dict[str, Any]:
        return {
            "type": "LineString",
            "coordinates": [[lon, lat] for lon, lat in self.coordinates],
        }

    def as_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "route": self.route,
            "direction_id": self.direction_id,
            "segment_index": self.segment_index,
            "start_lat": self.start_lat,
            "start_lon": self.start_lon,
            "end_lat": self.end_lat,
            "end_lon": self.end_lon,
            "mid_lat": self.mid_lat,
            "mid_lon": self.mid_lon,
            "length_m": self.length_m,
            "geometry": self.geometry,
        }


def split_into_segments(
    route: str,
    direction_id: int,
    coords: Sequence[Sequence[float]],
    target_length_m: float = DEFAULT_SEGMENT_LENGTH_M,
) -> list[SegmentDefinition]:
    """Cut a ``[lon, lat]`` polyline into consecutive ~``target_length_m`` pieces.

    A segment closes as soon as its accumulated length reaches the target;
    the tail is always closed as a (possibly short) final segment.
    Consecutive segments share their boundary vertex.
    """
    if len(coords) < 2:
        return []

    segments: list[SegmentDefinition] = []
    current: list[tuple[float, float]] = [(coords[0][0], coords[0][1])]
    length = 0.0
    last = len(coords) - 1

    for i in range(1, len(coords)):
        prev_lon, prev_lat = coords[i - 1][0], coords[i - 1][1]
        lon, lat = coords[i][0], coords[i][1]
        current.append((lon, lat))
        length += haversine_m(prev_lat, prev_lon, lat, lon)

        if length >= target_length_m or i == last:
            start = current[0]
            end = current[-1]
            mid = current[len(current) // 2]
            segments.append(
                SegmentDefinition(
                    route=route,
                    direction_id=direction_id,
                    segment_index=len(segments),
                    start_lat=start[1],
                    start_lon=start[0],
                    end_lat=end[1],
                    end_lon=end[0],
                    mid_lat=mid[1],
                    mid_lon=mid[0],
                    length_m=length,
                    coordinates=tuple(current),
                )
            )
            current = [(lon, lat)]
            length = 0.0

    return segments


def geojson_to_latlon(geometry: Any) -> list[LatLon]:
    """Extract ``(lat, lon)`` points from a GeoJSON LineString dict.

    Anything that is not a LineString with numeric pairs yields an empty list.
    """
    if not isinstance(geometry, dict):
        return []
    coordinates = geometry.get("coordinates")
    if not isinstance(coordinates, list):
        return []

    points: list[LatLon] = []
    for pair in coordinates:
        if isinstance(pair, (list, tuple)) and len(pair) >= 2:
            points.append((float(pair[1]), float(pair[0])))
    return points
