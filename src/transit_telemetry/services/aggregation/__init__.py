"""Daily reliability aggregation."""

from transit_telemetry.services.aggregation.compute import (
    AggregationParams,
    DailyAggregates,
    compute_daily_aggregates,
)
from transit_telemetry.services.aggregation.engine import previous_utc_day, run_daily_aggregation

__all__ = [
    "AggregationParams",
    "DailyAggregates",
    "compute_daily_aggregates",
    "previous_utc_day",
    "run_daily_aggregation",
]
