"""Route geometry: segment splitting, map-matching and OTP refresh."""

from transit_telemetry.services.segments.geometry import (
    SegmentDefinition,
    haversine_m,
    project_to_segment,
    split_into_segments,
)
from transit_telemetry.services.segments.matcher import SegmentMatcher, SnapResult
from transit_telemetry.services.segments.refresher import SegmentRefresher, SegmentRefreshError

__all__ = [
    "SegmentDefinition",
    "SegmentMatcher",
    "SegmentRefreshError",
    "SegmentRefresher",
    "SnapResult",
    "haversine_m",
    "project_to_segment",
    "split_into_segments",
]
