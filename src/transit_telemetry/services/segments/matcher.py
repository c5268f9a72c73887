"""Map-matching of GPS fixes onto route polylines and segments."""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from transit_telemetry.logging import get_logger
from transit_telemetry.services.segments.geometry import (
    LatLon,
    geojson_to_latlon,
    project_to_segment,
)

logger = get_logger(__name__)

DEFAULT_LOCAL_WINDOW = 15
DEFAULT_LOCAL_MAX_M = 50.0
DEFAULT_GLOBAL_MAX_M = 150.0


class SegmentLike(Protocol):
    id: str
    route: str
    direction_id: int
    segment_index: int
    geometry: Any


@dataclass(frozen=True)
class SnapResult:
    """Outcome of one snap attempt.

    When ``matched`` is false ``lat``/``lon`` are the original fix and the
    index fields are ``None``.
    """

    lat: float
    lon: float
    matched: bool
    distance_m: Optional[float] = None
    polyline_index: Optional[int] = None
    edge_index: Optional[int] = None


@dataclass(frozen=True)
class _Edge:
    polyline_index: int
    a: LatLon
    b: LatLon


def _flatten(polylines: Sequence[Sequence[LatLon]]) -> list[_Edge]:
    edges: list[_Edge] = []
    for p_idx, points in enumerate(polylines):
        if len(points) == 1:
            edges.append(_Edge(p_idx, points[0], points[0]))
            continue
        for a, b in zip(points, points[1:]):
            edges.append(_Edge(p_idx, a, b))
    return edges


# Edge indexes from ad-hoc polylines and from loaded segments are not comparable.
_SNAP_HINTS = "snap"
_SEGMENT_HINTS = "segments"


@dataclass
class _SegmentSet:
    segment_ids: list[str]
    edges: list[_Edge]


class SegmentMatcher:
    """Two-tier nearest-edge search with a per-vehicle position hint.

    The fast path only looks at ``local_window`` edges either side of the
    edge this vehicle last matched; the slow path scans every edge. The hint
    cache is process-local and safe to lose.
    """

    def __init__(
        self,
        segments: Iterable[SegmentLike] = (),
        *,
        local_window: int = DEFAULT_LOCAL_WINDOW,
        local_max_m: float = DEFAULT_LOCAL_MAX_M,
        global_max_m: float = DEFAULT_GLOBAL_MAX_M,
    ) -> None:
        self.local_window = local_window
        self.local_max_m = local_max_m
        self.global_max_m = global_max_m
        self._last_edge: dict[tuple[str, str, str, Optional[int]], int] = {}
        self._segment_sets: dict[tuple[str, Optional[int]], _SegmentSet] = {}
        self.load_segments(segments)

    def load_segments(self, segments: Iterable[SegmentLike]) -> None:
        """Index reference segments by route and by route+direction."""
        by_key: dict[tuple[str, Optional[int]], list[SegmentLike]] = {}
        for seg in segments:
            by_key.setdefault((seg.route, seg.direction_id), []).append(seg)
            by_key.setdefault((seg.route, None), []).append(seg)

        self._segment_sets = {}
        for key, segs in by_key.items():
            segs.sort(key=lambda s: (s.direction_id, s.segment_index))
            polylines = [geojson_to_latlon(s.geometry) for s in segs]
            self._segment_sets[key] = _SegmentSet(
                segment_ids=[s.id for s in segs],
                edges=_flatten(polylines),
            )
        self._last_edge.clear()
        logger.debug(
            "Segment index built",
            keys=len(self._segment_sets),
        )

    @property
    def cached_vehicles(self) -> int:
        return len(self._last_edge)

    def snap(
        self,
        vehicle_id: str,
        lat: float,
        lon: float,
        route: str,
        direction_id: Optional[int],
        polylines: Sequence[Sequence[LatLon]],
    ) -> SnapResult:
        """Snap a fix onto the nearest point of ``polylines`` (lists of ``(lat, lon)``)."""
        return self._snap_edges(
            _SNAP_HINTS, vehicle_id, lat, lon, route, direction_id, _flatten(polylines)
        )

    def match_segment_id(
        self,
        vehicle_id: str,
        lat: float,
        lon: float,
        route: str,
        direction_id: Optional[int],
    ) -> Optional[str]:
        """Attribute a fix to a loaded segment id, or ``None`` when off-route.

        Candidates are the route's segments, restricted to ``direction_id``
        when it is known.
        """
        segment_set = self._segment_sets.get((route, direction_id))
        if segment_set is None:
            return None

        result = self._snap_edges(
            _SEGMENT_HINTS, vehicle_id, lat, lon, route, direction_id, segment_set.edges
        )
        if not result.matched or result.polyline_index is None:
            return None
        return segment_set.segment_ids[result.polyline_index]

    def _snap_edges(
        self,
        hint_space: str,
        vehicle_id: str,
        lat: float,
        lon: float,
        route: str,
        direction_id: Optional[int],
        edges: Sequence[_Edge],
    ) -> SnapResult:
        if not edges:
            return SnapResult(lat=lat, lon=lon, matched=False)

        cache_key = (hint_space, vehicle_id, route, direction_id)
        hint = self._last_edge.get(cache_key)

        best: Optional[tuple[float, float, float, int]] = None
        if hint is not None and hint < len(edges):
            lo = max(0, hint - self.local_window)
            hi = min(len(edges), hint + self.local_window + 1)
            best = self._nearest(lat, lon, edges, range(lo, hi), self.local_max_m)

        if best is None:
            best = self._nearest(lat, lon, edges, range(len(edges)), self.global_max_m)

        if best is None:
            return SnapResult(lat=lat, lon=lon, matched=False)

        snapped_lat, snapped_lon, dist, edge_index = best
        self._last_edge[cache_key] = edge_index
        return SnapResult(
            lat=snapped_lat,
            lon=snapped_lon,
            matched=True,
            distance_m=dist,
            polyline_index=edges[edge_index].polyline_index,
            edge_index=edge_index,
        )

    @staticmethod
    def _nearest(
        lat: float,
        lon: float,
        edges: Sequence[_Edge],
        candidates: Iterable[int],
        max_dist_m: float,
    ) -> Optional[tuple[float, float, float, int]]:
        best: Optional[tuple[float, float, float, int]] = None
        best_dist = math.inf
        for idx in candidates:
            edge = edges[idx]
            s_lat, s_lon, dist = project_to_segment(lat, lon, edge.a, edge.b)
            if dist < best_dist:
                best_dist = dist
                best = (s_lat, s_lon, dist, idx)
        if best is None or best_dist > max_dist_m:
            return None
        return best
