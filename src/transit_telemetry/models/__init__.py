"""SQLAlchemy models for the transit telemetry store."""

from transit_telemetry.models.aggregates import (
    NetworkSummaryDaily,
    RoutePerformanceDaily,
    SegmentSpeedHourly,
    StopHeadwayDaily,
    TripLog,
)
from transit_telemetry.models.base import Base
from transit_telemetry.models.positions import BusPosition
from transit_telemetry.models.reference import RouteSegment, RouteStop

__all__ = [
    "Base",
    "BusPosition",
    "NetworkSummaryDaily",
    "RoutePerformanceDaily",
    "RouteSegment",
    "RouteStop",
    "SegmentSpeedHourly",
    "StopHeadwayDaily",
    "TripLog",
]
