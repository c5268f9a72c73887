"""Initial telemetry schema.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # Raw position time series
    op.create_table(
        "bus_position_log",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column(
            "recorded_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("vehicle_id", sa.Text(), nullable=False),
        sa.Column("vehicle_num", sa.Text(), nullable=True),
        sa.Column("route", sa.Text(), nullable=True),
        sa.Column("trip_id", sa.Text(), nullable=True),
        sa.Column("direction_id", sa.SmallInteger(), nullable=True),
        sa.Column("lat", sa.Float(), nullable=False),
        sa.Column("lon", sa.Float(), nullable=False),
        sa.Column("speed", sa.REAL(), nullable=True),
        sa.Column("heading", sa.REAL(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_bus_position_log_recorded_at", "bus_position_log", ["recorded_at"])
    op.create_index(
        "ix_bus_position_log_route_recorded_at", "bus_position_log", ["route", "recorded_at"]
    )
    op.create_index(
        "ix_bus_position_log_vehicle_recorded_at",
        "bus_position_log",
        ["vehicle_id", "recorded_at"],
    )

    # Route reference geometry
    op.create_table(
        "route_segment",
        sa.Column("id", sa.Text(), nullable=False),
        sa.Column("route", sa.Text(), nullable=False),
        sa.Column("direction_id", sa.SmallInteger(), nullable=False),
        sa.Column("segment_index", sa.Integer(), nullable=False),
        sa.Column("start_lat", sa.Float(), nullable=False),
        sa.Column("start_lon", sa.Float(), nullable=False),
        sa.Column("end_lat", sa.Float(), nullable=False),
        sa.Column("end_lon", sa.Float(), nullable=False),
        sa.Column("mid_lat", sa.Float(), nullable=False),
        sa.Column("mid_lon", sa.Float(), nullable=False),
        sa.Column("length_m", sa.REAL(), nullable=False),
        sa.Column("geometry", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_route_segment_route_direction", "route_segment", ["route", "direction_id"]
    )

    op.create_table(
        "route_stop",
        sa.Column("id", sa.Text(), nullable=False),
        sa.Column("route", sa.Text(), nullable=False),
        sa.Column("direction_id", sa.SmallInteger(), nullable=False),
        sa.Column("stop_sequence", sa.Integer(), nullable=False),
        sa.Column("stop_id", sa.Text(), nullable=False),
        sa.Column("stop_name", sa.Text(), nullable=True),
        sa.Column("lat", sa.Float(), nullable=False),
        sa.Column("lon", sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_route_stop_route_direction", "route_stop", ["route", "direction_id"])

    # Daily aggregates
    op.create_table(
        "trip_log",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("vehicle_id", sa.Text(), nullable=False),
        sa.Column("vehicle_num", sa.Text(), nullable=True),
        sa.Column("route", sa.Text(), nullable=False),
        sa.Column("trip_id", sa.Text(), nullable=True),
        sa.Column("direction_id", sa.SmallInteger(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("runtime_secs", sa.Integer(), nullable=False),
        sa.Column("positions", sa.Integer(), nullable=False),
        sa.Column("avg_speed", sa.REAL(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_trip_log_date_route", "trip_log", ["date", "route"])
    op.create_index("ix_trip_log_vehicle_date", "trip_log", ["vehicle_id", "date"])

    op.create_table(
        "segment_speed_hourly",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("segment_id", sa.Text(), nullable=False),
        sa.Column("route", sa.Text(), nullable=False),
        sa.Column("direction_id", sa.SmallInteger(), nullable=True),
        sa.Column("hour_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("avg_speed", sa.REAL(), nullable=True),
        sa.Column("median_speed", sa.REAL(), nullable=True),
        sa.Column("p10_speed", sa.REAL(), nullable=True),
        sa.Column("p90_speed", sa.REAL(), nullable=True),
        sa.Column("sample_count", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("segment_id", "hour_start", name="uq_segment_speed_hourly_key"),
    )
    op.create_index(
        "ix_segment_speed_hourly_route_hour", "segment_speed_hourly", ["route", "hour_start"]
    )
    op.create_index("ix_segment_speed_hourly_hour", "segment_speed_hourly", ["hour_start"])

    op.create_table(
        "route_performance_daily",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("route", sa.Text(), nullable=False),
        sa.Column("direction_id", sa.SmallInteger(), nullable=True),
        sa.Column("trips_observed", sa.Integer(), nullable=False),
        sa.Column("avg_headway_secs", sa.REAL(), nullable=True),
        sa.Column("headway_adherence_pct", sa.REAL(), nullable=True),
        sa.Column("excess_wait_time_secs", sa.REAL(), nullable=True),
        sa.Column("avg_runtime_secs", sa.REAL(), nullable=True),
        sa.Column("avg_commercial_speed", sa.REAL(), nullable=True),
        sa.Column("bunching_pct", sa.REAL(), nullable=True),
        sa.Column("gapping_pct", sa.REAL(), nullable=True),
        sa.Column("grade", sa.String(8), server_default="N/A", nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "date", "route", "direction_id", name="uq_route_performance_daily_key"
        ),
    )
    op.create_index("ix_route_performance_daily_date", "route_performance_daily", ["date"])
    op.create_index("ix_route_performance_daily_route", "route_performance_daily", ["route"])

    op.create_table(
        "stop_headway_daily",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("route", sa.Text(), nullable=False),
        sa.Column("direction_id", sa.SmallInteger(), nullable=True),
        sa.Column("stop_id", sa.Text(), nullable=False),
        sa.Column("stop_name", sa.Text(), nullable=True),
        sa.Column("stop_sequence", sa.Integer(), nullable=False),
        sa.Column("avg_headway_secs", sa.REAL(), nullable=True),
        sa.Column("headway_std_dev", sa.REAL(), nullable=True),
        sa.Column("observations", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "date", "route", "direction_id", "stop_id", name="uq_stop_headway_daily_key"
        ),
    )
    op.create_index(
        "ix_stop_headway_daily_date_route", "stop_headway_daily", ["date", "route"]
    )

    op.create_table(
        "network_summary_daily",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("active_vehicles", sa.Integer(), nullable=False),
        sa.Column("total_trips", sa.Integer(), nullable=False),
        sa.Column("avg_commercial_speed", sa.REAL(), nullable=True),
        sa.Column("avg_excess_wait_time", sa.REAL(), nullable=True),
        sa.Column("worst_route", sa.Text(), nullable=True),
        sa.Column("worst_route_ewt", sa.REAL(), nullable=True),
        sa.Column("positions_collected", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("date"),
    )


def downgrade() -> None:
    op.drop_table("network_summary_daily")
    op.drop_table("stop_headway_daily")
    op.drop_table("route_performance_daily")
    op.drop_table("segment_speed_hourly")
    op.drop_table("trip_log")
    op.drop_table("route_stop")
    op.drop_table("route_segment")
    op.drop_table("bus_position_log")
