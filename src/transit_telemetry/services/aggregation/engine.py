"""Daily aggregation job.

Loads one UTC day of routed positions plus the route reference geometry,
runs ``compute_daily_aggregates`` and replaces that day's aggregate rows.

Design notes
------------
- The day is the half-open UTC interval ``[date, date + 1)``.
- Every table is replaced delete-then-insert inside one transaction, so a
  failed run leaves the previous rows untouched and a re-run for the same
  date yields the same rows.
- A step whose input is empty neither deletes nor inserts.
- ``network_summary_daily`` is upserted on ``date``.
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import date, datetime, time, timedelta, timezone
from time import monotonic
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, text

from transit_telemetry.config import Settings, get_settings
from transit_telemetry.database import bulk_insert, get_session_context
from transit_telemetry.logging import get_logger
from transit_telemetry.models import RouteSegment, RouteStop
from transit_telemetry.services.aggregation.compute import (
    AggregationParams,
    DailyAggregates,
    compute_daily_aggregates,
)
from transit_telemetry.services.feed.normalizer import PositionRecord

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

POSITION_CHUNK_SIZE = 5000

SessionContext = Callable[[], AbstractAsyncContextManager["AsyncSession"]]

# ---------------------------------------------------------------------------
# SQL: read side
# ---------------------------------------------------------------------------
_SELECT_POSITIONS = text("""
SELECT id, recorded_at, vehicle_id, vehicle_num, route, trip_id,
       direction_id, lat, lon, speed, heading
FROM bus_position_log
WHERE recorded_at >= :start
  AND recorded_at < :end
  AND route IS NOT NULL
  AND id > :cursor
ORDER BY id
LIMIT :limit
""")

# ---------------------------------------------------------------------------
# SQL: delete side (one per table)
# ---------------------------------------------------------------------------
_DELETE_TRIPS = text("DELETE FROM trip_log WHERE date = :date")
_DELETE_SEGMENT_SPEEDS = text(
    "DELETE FROM segment_speed_hourly WHERE hour_start >= :start AND hour_start < :end"
)
_DELETE_ROUTE_PERFORMANCE = text("DELETE FROM route_performance_daily WHERE date = :date")
_DELETE_STOP_HEADWAYS = text("DELETE FROM stop_headway_daily WHERE date = :date")

TRIP_COLUMNS = (
    "date",
    "vehicle_id",
    "vehicle_num",
    "route",
    "trip_id",
    "direction_id",
    "started_at",
    "ended_at",
    "runtime_secs",
    "positions",
    "avg_speed",
)
SEGMENT_SPEED_COLUMNS = (
    "segment_id",
    "route",
    "direction_id",
    "hour_start",
    "avg_speed",
    "median_speed",
    "p10_speed",
    "p90_speed",
    "sample_count",
)
ROUTE_PERFORMANCE_COLUMNS = (
    "date",
    "route",
    "direction_id",
    "trips_observed",
    "avg_headway_secs",
    "headway_adherence_pct",
    "excess_wait_time_secs",
    "avg_runtime_secs",
    "avg_commercial_speed",
    "bunching_pct",
    "gapping_pct",
    "grade",
)
STOP_HEADWAY_COLUMNS = (
    "date",
    "route",
    "direction_id",
    "stop_id",
    "stop_name",
    "stop_sequence",
    "avg_headway_secs",
    "headway_std_dev",
    "observations",
)
NETWORK_SUMMARY_COLUMNS = (
    "date",
    "active_vehicles",
    "total_trips",
    "avg_commercial_speed",
    "avg_excess_wait_time",
    "worst_route",
    "worst_route_ewt",
    "positions_collected",
)


def previous_utc_day(now: datetime | None = None) -> date:
    """The most recent fully elapsed UTC calendar day."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).date() - timedelta(days=1)


def day_bounds(target_date: date) -> tuple[datetime, datetime]:
    start = datetime.combine(target_date, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


async def load_positions(
    session: AsyncSession,
    start: datetime,
    end: datetime,
    chunk_size: int = POSITION_CHUNK_SIZE,
) -> list[PositionRecord]:
    """Load routed positions in ``[start, end)`` using keyset pagination on ``id``."""
    positions: list[PositionRecord] = []
    cursor = 0

    while True:
        result = await session.execute(
            _SELECT_POSITIONS,
            {"start": start, "end": end, "cursor": cursor, "limit": chunk_size},
        )
        rows = result.mappings().all()
        for row in rows:
            positions.append(
                PositionRecord(
                    recorded_at=row["recorded_at"],
                    vehicle_id=row["vehicle_id"],
                    lat=row["lat"],
                    lon=row["lon"],
                    vehicle_num=row["vehicle_num"],
                    route=row["route"],
                    trip_id=row["trip_id"],
                    direction_id=row["direction_id"],
                    speed=row["speed"],
                    heading=row["heading"],
                )
            )
        if len(rows) < chunk_size:
            break
        cursor = rows[-1]["id"]
        logger.debug("Loaded position chunk", loaded=len(positions))

    return positions


async def load_segments(session: AsyncSession) -> list[RouteSegment]:
    result = await session.execute(select(RouteSegment))
    return list(result.scalars().all())


async def load_stops(session: AsyncSession) -> list[RouteStop]:
    result = await session.execute(select(RouteStop))
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------


async def write_aggregates(session: AsyncSession, aggregates: DailyAggregates) -> dict[str, int]:
    """Replace the aggregate rows for ``aggregates.date``. Does not commit.

    A table's rows for the date are deleted whenever its step had input
    (routed positions, plus segments or stops for the geometry steps), even
    if the step produced no rows. Steps without input leave the table alone.
    """
    target_date = aggregates.date
    start, end = day_bounds(target_date)
    written: dict[str, int] = {}

    if aggregates.positions_collected:
        await session.execute(_DELETE_TRIPS, {"date": target_date})
        written["trip_log"] = await bulk_insert(
            session, "trip_log", TRIP_COLUMNS, aggregates.trip_rows
        )

        if aggregates.segments_loaded:
            await session.execute(_DELETE_SEGMENT_SPEEDS, {"start": start, "end": end})
            written["segment_speed_hourly"] = await bulk_insert(
                session, "segment_speed_hourly", SEGMENT_SPEED_COLUMNS, aggregates.segment_speeds
            )

        await session.execute(_DELETE_ROUTE_PERFORMANCE, {"date": target_date})
        written["route_performance_daily"] = await bulk_insert(
            session,
            "route_performance_daily",
            ROUTE_PERFORMANCE_COLUMNS,
            aggregates.route_performance,
        )

        if aggregates.stops_loaded:
            await session.execute(_DELETE_STOP_HEADWAYS, {"date": target_date})
            written["stop_headway_daily"] = await bulk_insert(
                session, "stop_headway_daily", STOP_HEADWAY_COLUMNS, aggregates.stop_headways
            )

    written["network_summary_daily"] = await bulk_insert(
        session,
        "network_summary_daily",
        NETWORK_SUMMARY_COLUMNS,
        [aggregates.network_summary],
        conflict_cols=("date",),
        update_cols=NETWORK_SUMMARY_COLUMNS[1:],
    )
    return written


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def run_daily_aggregation(
    target_date: date | None = None,
    settings: Settings | None = None,
    session_context: SessionContext | None = None,
) -> DailyAggregates:
    """Compute and store every aggregate for ``target_date``.

    Args:
        target_date: UTC day to aggregate (default: the previous UTC day).
        settings: Optional Settings override (useful in tests).
        session_context: Optional session factory override.

    Returns:
        The computed aggregates. When the day has no routed positions nothing
        is written and an empty bundle is returned.

    Raises:
        Any database error, after rolling back the transaction.
    """
    settings = settings or get_settings()
    session_context = session_context or get_session_context
    target_date = target_date or previous_utc_day()
    start, end = day_bounds(target_date)
    t0 = monotonic()

    logger.info("Daily aggregation starting", date=target_date.isoformat())

    async with session_context() as session:
        try:
            positions = await load_positions(session, start, end)
            if not positions:
                logger.info("No positions found for date", date=target_date.isoformat())
                return DailyAggregates(date=target_date)

            segments = await load_segments(session)
            stops = await load_stops(session)

            aggregates = compute_daily_aggregates(
                target_date,
                positions,
                segments,
                stops,
                AggregationParams.from_settings(settings),
            )
            written = await write_aggregates(session, aggregates)
            await session.commit()
        except Exception as exc:
            await session.rollback()
            logger.error(
                "Daily aggregation failed",
                date=target_date.isoformat(),
                error=str(exc),
            )
            raise

    logger.info(
        "Daily aggregation complete",
        date=target_date.isoformat(),
        positions=len(positions),
        segments_loaded=len(segments),
        stops_loaded=len(stops),
        trips=len(aggregates.trips),
        written=written,
        duration_ms=int((monotonic() - t0) * 1000),
    )
    return aggregates


def summarize(aggregates: DailyAggregates) -> dict[str, Any]:
    """Compact counts for logging by the scheduler."""
    return {
        "date": aggregates.date.isoformat(),
        "positions": aggregates.positions_collected,
        "trips": len(aggregates.trips),
        "segment_speeds": len(aggregates.segment_speeds),
        "route_performance": len(aggregates.route_performance),
        "stop_headways": len(aggregates.stop_headways),
    }
