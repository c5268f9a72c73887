"""Daily aggregate tables written by the aggregation job.

Every table here is recomputed wholesale for a date: the job deletes the
date's rows and re-inserts them (network summary is upserted on ``date``).
"""

from __future__ import annotations

import datetime as dt
from typing import Optional

from sqlalchemy import (
    REAL,
    BigInteger,
    Date,
    DateTime,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from transit_telemetry.models.base import Base


class TripLog(Base):
    """A reconstructed vehicle trip."""

    __tablename__ = "trip_log"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    vehicle_id: Mapped[str] = mapped_column(Text, nullable=False)
    vehicle_num: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    route: Mapped[str] = mapped_column(Text, nullable=False)
    trip_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    direction_id: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    started_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    runtime_secs: Mapped[int] = mapped_column(Integer, nullable=False)
    positions: Mapped[int] = mapped_column(Integer, nullable=False)
    avg_speed: Mapped[Optional[float]] = mapped_column(REAL, nullable=True)

    __table_args__ = (
        Index("ix_trip_log_date_route", "date", "route"),
        Index("ix_trip_log_vehicle_date", "vehicle_id", "date"),
    )


class SegmentSpeedHourly(Base):
    """Speed distribution on one route segment during one UTC hour."""

    __tablename__ = "segment_speed_hourly"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    segment_id: Mapped[str] = mapped_column(Text, nullable=False)
    route: Mapped[str] = mapped_column(Text, nullable=False)
    direction_id: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    hour_start: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    avg_speed: Mapped[Optional[float]] = mapped_column(REAL, nullable=True)
    median_speed: Mapped[Optional[float]] = mapped_column(REAL, nullable=True)
    p10_speed: Mapped[Optional[float]] = mapped_column(REAL, nullable=True)
    p90_speed: Mapped[Optional[float]] = mapped_column(REAL, nullable=True)
    sample_count: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("segment_id", "hour_start", name="uq_segment_speed_hourly_key"),
        Index("ix_segment_speed_hourly_route_hour", "route", "hour_start"),
        Index("ix_segment_speed_hourly_hour", "hour_start"),
    )


class RoutePerformanceDaily(Base):
    """Headway-derived service quality for one route direction on one day."""

    __tablename__ = "route_performance_daily"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    route: Mapped[str] = mapped_column(Text, nullable=False)
    direction_id: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    trips_observed: Mapped[int] = mapped_column(Integer, nullable=False)
    avg_headway_secs: Mapped[Optional[float]] = mapped_column(REAL, nullable=True)
    headway_adherence_pct: Mapped[Optional[float]] = mapped_column(REAL, nullable=True)
    excess_wait_time_secs: Mapped[Optional[float]] = mapped_column(REAL, nullable=True)
    avg_runtime_secs: Mapped[Optional[float]] = mapped_column(REAL, nullable=True)
    avg_commercial_speed: Mapped[Optional[float]] = mapped_column(REAL, nullable=True)
    bunching_pct: Mapped[Optional[float]] = mapped_column(REAL, nullable=True)
    gapping_pct: Mapped[Optional[float]] = mapped_column(REAL, nullable=True)
    grade: Mapped[str] = mapped_column(String(8), nullable=False, default="N/A")

    __table_args__ = (
        UniqueConstraint(
            "date", "route", "direction_id", name="uq_route_performance_daily_key"
        ),
        Index("ix_route_performance_daily_date", "date"),
        Index("ix_route_performance_daily_route", "route"),
    )


class StopHeadwayDaily(Base):
    """Observed headway regularity at one stop on one day."""

    __tablename__ = "stop_headway_daily"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    route: Mapped[str] = mapped_column(Text, nullable=False)
    direction_id: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    stop_id: Mapped[str] = mapped_column(Text, nullable=False)
    stop_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stop_sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    avg_headway_secs: Mapped[Optional[float]] = mapped_column(REAL, nullable=True)
    headway_std_dev: Mapped[Optional[float]] = mapped_column(REAL, nullable=True)
    observations: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "date", "route", "direction_id", "stop_id", name="uq_stop_headway_daily_key"
        ),
        Index("ix_stop_headway_daily_date_route", "date", "route"),
    )


class NetworkSummaryDaily(Base):
    """One network-wide summary row per day."""

    __tablename__ = "network_summary_daily"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, unique=True)
    active_vehicles: Mapped[int] = mapped_column(Integer, nullable=False)
    total_trips: Mapped[int] = mapped_column(Integer, nullable=False)
    avg_commercial_speed: Mapped[Optional[float]] = mapped_column(REAL, nullable=True)
    avg_excess_wait_time: Mapped[Optional[float]] = mapped_column(REAL, nullable=True)
    worst_route: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    worst_route_ewt: Mapped[Optional[float]] = mapped_column(REAL, nullable=True)
    positions_collected: Mapped[int] = mapped_column(BigInteger, nullable=False)
