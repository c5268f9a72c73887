"""Raw vehicle position time series."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import REAL, BigInteger, DateTime, Float, Index, SmallInteger, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from transit_telemetry.models.base import Base


class BusPosition(Base):
    """One observed GPS fix for one vehicle, as received from the feed.

    Rows are append-only and pruned by the retention cleanup job.
    """

    __tablename__ = "bus_position_log"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    vehicle_id: Mapped[str] = mapped_column(Text, nullable=False)
    vehicle_num: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    route: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    trip_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    direction_id: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lon: Mapped[float] = mapped_column(Float, nullable=False)
    speed: Mapped[Optional[float]] = mapped_column(REAL, nullable=True)
    heading: Mapped[Optional[float]] = mapped_column(REAL, nullable=True)

    __table_args__ = (
        Index("ix_bus_position_log_recorded_at", "recorded_at"),
        Index("ix_bus_position_log_route_recorded_at", "route", "recorded_at"),
        Index("ix_bus_position_log_vehicle_recorded_at", "vehicle_id", "recorded_at"),
    )
