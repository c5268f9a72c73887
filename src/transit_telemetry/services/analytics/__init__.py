"""Trip reconstruction and reliability metrics."""

from transit_telemetry.services.analytics.metrics import (
    HeadwayMetrics,
    compute_grade,
    compute_headway_metrics,
    percentile,
)
from transit_telemetry.services.analytics.trips import ReconstructedTrip, reconstruct_trips

__all__ = [
    "HeadwayMetrics",
    "ReconstructedTrip",
    "compute_grade",
    "compute_headway_metrics",
    "percentile",
    "reconstruct_trips",
]
