"""Trip reconstruction from vehicle position breadcrumbs."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from transit_telemetry.services.feed.normalizer import PositionRecord

DEFAULT_MAX_GAP_MINUTES = 10.0
MIN_TRIP_POSITIONS = 3


@dataclass(frozen=True)
class ReconstructedTrip:
    """A contiguous run of positions believed to be one service run."""

    vehicle_id: str
    vehicle_num: Optional[str]
    route: Optional[str]
    trip_id: Optional[str]
    direction_id: Optional[int]
    started_at: datetime
    ended_at: datetime
    runtime_secs: int
    position_count: int
    avg_speed: float


def reconstruct_trips(
    points: Sequence[PositionRecord],
    max_gap_minutes: float = DEFAULT_MAX_GAP_MINUTES,
) -> list[ReconstructedTrip]:
    """Split one vehicle/route/direction group into trips.

    ``points`` must be sorted by ``recorded_at``. A boundary falls between
    two consecutive points when both carry a trip id and the ids differ, or
    when they are more than ``max_gap_minutes`` apart. Runs shorter than
    three positions are noise and are dropped.
    """
    trips: list[ReconstructedTrip] = []
    if not points:
        return trips

    current: list[PositionRecord] = [points[0]]
    for prev, curr in zip(points, points[1:]):
        gap_minutes = (curr.recorded_at - prev.recorded_at).total_seconds() / 60.0
        trip_changed = (
            curr.trip_id is not None and prev.trip_id is not None and curr.trip_id != prev.trip_id
        )

        if trip_changed or gap_minutes > max_gap_minutes:
            if len(current) >= MIN_TRIP_POSITIONS:
                trips.append(_finalize_trip(current))
            current = [curr]
        else:
            current.append(curr)

    if len(current) >= MIN_TRIP_POSITIONS:
        trips.append(_finalize_trip(current))

    return trips


def _finalize_trip(points: Sequence[PositionRecord]) -> ReconstructedTrip:
    first = points[0]
    last = points[-1]

    speeds = [p.speed for p in points if p.speed is not None and p.speed >= 0]
    avg_speed = sum(speeds) / len(speeds) if speeds else 0.0

    return ReconstructedTrip(
        vehicle_id=first.vehicle_id,
        vehicle_num=first.vehicle_num,
        route=first.route,
        trip_id=first.trip_id,
        direction_id=first.direction_id,
        started_at=first.recorded_at,
        ended_at=last.recorded_at,
        runtime_secs=round((last.recorded_at - first.recorded_at).total_seconds()),
        position_count=len(points),
        avg_speed=round(avg_speed, 1),
    )
