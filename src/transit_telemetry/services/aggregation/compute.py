"""Pure daily aggregation: positions + reference geometry in, table rows out.

Nothing here touches the database, so the same inputs always produce the
same rows. ``engine.run_daily_aggregation`` handles loading and writing.
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional, Protocol

from transit_telemetry.config import Settings
from transit_telemetry.services.analytics.metrics import (
    compute_grade,
    compute_headway_metrics,
    mean,
    percentile,
    population_std_dev,
)
from transit_telemetry.services.analytics.trips import ReconstructedTrip, reconstruct_trips
from transit_telemetry.services.feed.normalizer import PositionRecord
from transit_telemetry.services.segments.geometry import haversine_m
from transit_telemetry.services.segments.matcher import SegmentLike, SegmentMatcher

MIN_SEGMENT_SAMPLES = 2
MIN_STOP_ARRIVALS = 3
MIN_RUNTIME_SECS = 60

DirectionKey = Optional[int]


class StopLike(Protocol):
    route: str
    direction_id: int
    stop_sequence: int
    stop_id: str
    stop_name: Optional[str]
    lat: float
    lon: float


@dataclass(frozen=True)
class AggregationParams:
    """Tunables for one aggregation run."""

    trip_max_gap_minutes: float = 10.0
    snap_local_window: int = 15
    snap_local_max_m: float = 50.0
    snap_global_max_m: float = 150.0
    stop_radius_m: float = 80.0
    stop_dedupe_window_sec: int = 180
    baseline_speed_kmh: float = 15.4

    @classmethod
    def from_settings(cls, settings: Settings) -> AggregationParams:
        return cls(
            trip_max_gap_minutes=settings.trip_max_gap_minutes,
            snap_local_window=settings.snap_local_window,
            snap_local_max_m=settings.snap_local_max_m,
            snap_global_max_m=settings.snap_global_max_m,
            stop_radius_m=settings.stop_radius_m,
            stop_dedupe_window_sec=settings.stop_dedupe_window_sec,
            baseline_speed_kmh=settings.baseline_commercial_speed_kmh,
        )


@dataclass
class DailyAggregates:
    """Everything one run writes for ``date``."""

    date: date
    positions_collected: int = 0
    segments_loaded: int = 0
    stops_loaded: int = 0
    trips: list[ReconstructedTrip] = field(default_factory=list)
    segment_speeds: list[dict[str, Any]] = field(default_factory=list)
    route_performance: list[dict[str, Any]] = field(default_factory=list)
    stop_headways: list[dict[str, Any]] = field(default_factory=list)
    network_summary: dict[str, Any] = field(default_factory=dict)

    @property
    def trip_rows(self) -> list[dict[str, Any]]:
        return [
            {
                "date": self.date,
                "vehicle_id": trip.vehicle_id,
                "vehicle_num": trip.vehicle_num,
                "route": trip.route,
                "trip_id": trip.trip_id,
                "direction_id": trip.direction_id,
                "started_at": trip.started_at,
                "ended_at": trip.ended_at,
                "runtime_secs": trip.runtime_secs,
                "positions": trip.position_count,
                "avg_speed": trip.avg_speed if trip.avg_speed > 0 else None,
            }
            for trip in self.trips
        ]


def _direction_sort_key(direction_id: DirectionKey) -> int:
    return -1 if direction_id is None else direction_id


def _hour_start(ts: datetime) -> datetime:
    return ts.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def _epoch_ms(ts: datetime) -> int:
    return int(ts.timestamp() * 1000)


# ---------------------------------------------------------------------------
# Step 2: trips
# ---------------------------------------------------------------------------


def build_trips(
    positions: Sequence[PositionRecord], max_gap_minutes: float
) -> list[ReconstructedTrip]:
    """Group by vehicle/route/direction and reconstruct each group."""
    groups: dict[tuple[str, str, DirectionKey], list[PositionRecord]] = defaultdict(list)
    for pos in positions:
        if pos.route is None:
            continue
        groups[(pos.vehicle_id, pos.route, pos.direction_id)].append(pos)

    trips: list[ReconstructedTrip] = []
    for key in sorted(groups, key=lambda k: (k[0], k[1], _direction_sort_key(k[2]))):
        trips.extend(reconstruct_trips(groups[key], max_gap_minutes))

    trips.sort(key=lambda t: (t.started_at, t.vehicle_id))
    return trips


# ---------------------------------------------------------------------------
# Step 3: hourly segment speeds
# ---------------------------------------------------------------------------


def build_segment_speeds(
    positions: Sequence[PositionRecord],
    segments: Sequence[SegmentLike],
    params: AggregationParams,
) -> list[dict[str, Any]]:
    if not segments:
        return []

    matcher = SegmentMatcher(
        segments,
        local_window=params.snap_local_window,
        local_max_m=params.snap_local_max_m,
        global_max_m=params.snap_global_max_m,
    )
    segment_by_id = {seg.id: seg for seg in segments}

    buckets: dict[tuple[str, datetime], list[float]] = defaultdict(list)
    for pos in positions:
        if pos.route is None or pos.speed is None or pos.speed <= 0:
            continue
        segment_id = matcher.match_segment_id(
            pos.vehicle_id, pos.lat, pos.lon, pos.route, pos.direction_id
        )
        if segment_id is None:
            continue
        buckets[(segment_id, _hour_start(pos.recorded_at))].append(pos.speed)

    rows: list[dict[str, Any]] = []
    for (segment_id, hour_start), speeds in sorted(buckets.items()):
        if len(speeds) < MIN_SEGMENT_SAMPLES:
            continue
        seg = segment_by_id[segment_id]
        rows.append(
            {
                "segment_id": segment_id,
                "route": seg.route,
                "direction_id": seg.direction_id,
                "hour_start": hour_start,
                "avg_speed": round(sum(speeds) / len(speeds), 1),
                "median_speed": round(percentile(speeds, 50), 1),
                "p10_speed": round(percentile(speeds, 10), 1),
                "p90_speed": round(percentile(speeds, 90), 1),
                "sample_count": len(speeds),
            }
        )
    return rows


# ---------------------------------------------------------------------------
# Step 4: route performance
# ---------------------------------------------------------------------------


def build_route_performance(
    target_date: date,
    trips: Sequence[ReconstructedTrip],
    params: AggregationParams,
) -> list[dict[str, Any]]:
    by_route: dict[tuple[str, DirectionKey], list[ReconstructedTrip]] = defaultdict(list)
    for trip in trips:
        if trip.route is None:
            continue
        by_route[(trip.route, trip.direction_id)].append(trip)

    rows: list[dict[str, Any]] = []
    for route, direction_id in sorted(by_route, key=lambda k: (k[0], _direction_sort_key(k[1]))):
        group = by_route[(route, direction_id)]
        start_times = sorted(_epoch_ms(t.started_at) for t in group)
        metrics = compute_headway_metrics(start_times)

        runtimes = [t.runtime_secs for t in group if t.runtime_secs > MIN_RUNTIME_SECS]
        speeds = [t.avg_speed for t in group if t.avg_speed > 0]
        avg_runtime = mean(runtimes)
        avg_speed = mean(speeds)
        avg_speed = round(avg_speed, 1) if avg_speed is not None else None

        row: dict[str, Any] = {
            "date": target_date,
            "route": route,
            "direction_id": direction_id,
            "trips_observed": len(group),
            "avg_headway_secs": None,
            "headway_adherence_pct": None,
            "excess_wait_time_secs": None,
            "avg_runtime_secs": round(avg_runtime) if avg_runtime is not None else None,
            "avg_commercial_speed": avg_speed,
            "bunching_pct": None,
            "gapping_pct": None,
        }
        if metrics is not None:
            row.update(
                avg_headway_secs=metrics.avg_headway_secs,
                headway_adherence_pct=metrics.headway_adherence_pct,
                excess_wait_time_secs=metrics.excess_wait_time_secs,
                bunching_pct=metrics.bunching_pct,
                gapping_pct=metrics.gapping_pct,
            )
        row["grade"] = compute_grade(
            row["excess_wait_time_secs"],
            row["headway_adherence_pct"],
            avg_speed,
            baseline_speed_kmh=params.baseline_speed_kmh,
        )
        rows.append(row)
    return rows


# ---------------------------------------------------------------------------
# Step 5: stop headways
# ---------------------------------------------------------------------------


def _nearest_stop(
    pos: PositionRecord, candidates: Iterable[StopLike], radius_m: float
) -> Optional[StopLike]:
    best: Optional[StopLike] = None
    best_dist = math.inf
    for stop in candidates:
        if pos.direction_id is not None and stop.direction_id != pos.direction_id:
            continue
        dist = haversine_m(pos.lat, pos.lon, stop.lat, stop.lon)
        if dist <= radius_m and dist < best_dist:
            best = stop
            best_dist = dist
    return best


def build_stop_headways(
    target_date: date,
    positions: Sequence[PositionRecord],
    stops: Sequence[StopLike],
    params: AggregationParams,
) -> list[dict[str, Any]]:
    """Per-stop headway mean and spread from deduplicated stop visits.

    A vehicle lingering near a stop is counted once per dedupe window.
    """
    if not stops:
        return []

    stops_by_route: dict[str, list[StopLike]] = defaultdict(list)
    for stop in sorted(stops, key=lambda s: (s.route, s.direction_id, s.stop_sequence)):
        stops_by_route[stop.route].append(stop)

    window_ms = params.stop_dedupe_window_sec * 1000
    last_seen: dict[tuple[str, str, DirectionKey, str], int] = {}
    arrivals: dict[tuple[str, DirectionKey, str], list[int]] = defaultdict(list)

    for pos in positions:
        if pos.route is None:
            continue
        candidates = stops_by_route.get(pos.route)
        if not candidates:
            continue
        stop = _nearest_stop(pos, candidates, params.stop_radius_m)
        if stop is None:
            continue

        stop_key = (pos.route, pos.direction_id, stop.stop_id)
        dedupe_key = (pos.vehicle_id, *stop_key)
        ts = _epoch_ms(pos.recorded_at)
        last = last_seen.get(dedupe_key)
        if last is None or ts - last >= window_ms:
            last_seen[dedupe_key] = ts
            arrivals[stop_key].append(ts)

    rows: list[dict[str, Any]] = []
    ordered_keys = sorted(arrivals, key=lambda k: (k[0], _direction_sort_key(k[1]), k[2]))
    for route, direction_id, stop_id in ordered_keys:
        times = sorted(arrivals[(route, direction_id, stop_id)])
        if len(times) < MIN_STOP_ARRIVALS:
            continue
        headways = [(b - a) / 1000.0 for a, b in zip(times, times[1:])]
        avg = mean(headways) or 0.0

        stop_name: Optional[str] = None
        stop_sequence = 0
        for ref in stops_by_route[route]:
            if ref.stop_id == stop_id and (direction_id is None or ref.direction_id == direction_id):
                stop_name = ref.stop_name
                stop_sequence = ref.stop_sequence
                break

        rows.append(
            {
                "date": target_date,
                "route": route,
                "direction_id": direction_id,
                "stop_id": stop_id,
                "stop_name": stop_name,
                "stop_sequence": stop_sequence,
                "avg_headway_secs": round(avg),
                "headway_std_dev": round(population_std_dev(headways), 1),
                "observations": len(times),
            }
        )
    return rows


# ---------------------------------------------------------------------------
# Step 6: network summary
# ---------------------------------------------------------------------------


def build_network_summary(
    target_date: date,
    positions: Sequence[PositionRecord],
    trips: Sequence[ReconstructedTrip],
    route_rows: Sequence[dict[str, Any]],
) -> dict[str, Any]:
    speeds = [r["avg_commercial_speed"] for r in route_rows if r["avg_commercial_speed"] is not None]
    ewts = [r["excess_wait_time_secs"] for r in route_rows if r["excess_wait_time_secs"] is not None]

    worst_route: Optional[str] = None
    worst_ewt: Optional[float] = None
    for row in route_rows:
        ewt = row["excess_wait_time_secs"]
        if ewt is not None and (worst_ewt is None or ewt > worst_ewt):
            worst_ewt = ewt
            worst_route = row["route"]

    avg_speed = mean(speeds)
    avg_ewt = mean(ewts)
    return {
        "date": target_date,
        "active_vehicles": len({p.vehicle_id for p in positions}),
        "total_trips": len(trips),
        "avg_commercial_speed": round(avg_speed, 1) if avg_speed is not None else None,
        "avg_excess_wait_time": round(avg_ewt) if avg_ewt is not None else None,
        "worst_route": worst_route,
        "worst_route_ewt": worst_ewt,
        "positions_collected": len(positions),
    }


def compute_daily_aggregates(
    target_date: date,
    positions: Sequence[PositionRecord],
    segments: Sequence[SegmentLike] = (),
    stops: Sequence[StopLike] = (),
    params: Optional[AggregationParams] = None,
) -> DailyAggregates:
    """Compute every aggregate for ``target_date`` from that day's positions.

    Positions without a route are ignored. Output rows are ordered by their
    natural keys so repeated runs produce identical lists.
    """
    params = params or AggregationParams()
    routed = sorted(
        (p for p in positions if p.route is not None), key=lambda p: p.recorded_at
    )

    trips = build_trips(routed, params.trip_max_gap_minutes)
    route_rows = build_route_performance(target_date, trips, params)

    return DailyAggregates(
        date=target_date,
        positions_collected=len(routed),
        segments_loaded=len(segments),
        stops_loaded=len(stops),
        trips=trips,
        segment_speeds=build_segment_speeds(routed, segments, params),
        route_performance=route_rows,
        stop_headways=build_stop_headways(target_date, routed, stops, params),
        network_summary=build_network_summary(target_date, routed, trips, route_rows),
    )
