"""Static route reference geometry: segments and stops."""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import REAL, Float, Index, Integer, SmallInteger, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from transit_telemetry.models.base import Base


class RouteSegment(Base):
    """One ~200 m piece of a route pattern polyline.

    ``id`` is ``"{route}:{direction_id}:{segment_index}"`` and ``geometry`` a
    GeoJSON LineString with ``[lon, lat]`` coordinates.
    """

    __tablename__ = "route_segment"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    route: Mapped[str] = mapped_column(Text, nullable=False)
    direction_id: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    segment_index: Mapped[int] = mapped_column(Integer, nullable=False)
    start_lat: Mapped[float] = mapped_column(Float, nullable=False)
    start_lon: Mapped[float] = mapped_column(Float, nullable=False)
    end_lat: Mapped[float] = mapped_column(Float, nullable=False)
    end_lon: Mapped[float] = mapped_column(Float, nullable=False)
    mid_lat: Mapped[float] = mapped_column(Float, nullable=False)
    mid_lon: Mapped[float] = mapped_column(Float, nullable=False)
    length_m: Mapped[float] = mapped_column(REAL, nullable=False)
    geometry: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)

    __table_args__ = (Index("ix_route_segment_route_direction", "route", "direction_id"),)


class RouteStop(Base):
    """A stop served by a route pattern, in pattern order."""

    __tablename__ = "route_stop"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    route: Mapped[str] = mapped_column(Text, nullable=False)
    direction_id: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    stop_sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    stop_id: Mapped[str] = mapped_column(Text, nullable=False)
    stop_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lon: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (Index("ix_route_stop_route_direction", "route", "direction_id"),)
