"""Builders for FIWARE vehicle entities and position series used in tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from transit_telemetry.services.feed.normalizer import PositionRecord

BASE_TIME = datetime(2026, 3, 2, 8, 0, 0, tzinfo=timezone.utc)

# A straight stretch of Avenida da Boavista, Porto, heading west.
ROUTE_701_LINE: list[tuple[float, float]] = [
    (41.1579, -8.6291),
    (41.1581, -8.6340),
    (41.1583, -8.6390),
    (41.1585, -8.6440),
    (41.1587, -8.6490),
    (41.1589, -8.6540),
]


def build_entity(
    entity_id: str = "urn:ngsi-ld:Vehicle:porto:stcp:205:3245",
    lon: float = -8.6291,
    lat: float = 41.1579,
    wrapped: bool = True,
    **attrs: Any,
) -> dict[str, Any]:
    """Build a FIWARE vehicle entity with an optional NGSI ``value`` wrapper."""
    location = {"type": "Point", "coordinates": [lon, lat]}
    entity: dict[str, Any] = {
        "id": entity_id,
        "type": "Vehicle",
        "location": {"type": "geo:json", "value": location} if wrapped else location,
    }
    for key, value in attrs.items():
        entity[key] = {"type": "Property", "value": value} if wrapped else value
    return entity


def position(
    vehicle_id: str = "V1",
    minutes: float = 0.0,
    lat: float = 41.1579,
    lon: float = -8.6291,
    route: str | None = "701",
    direction_id: int | None = 0,
    trip_id: str | None = None,
    speed: float | None = 18.0,
    base: datetime = BASE_TIME,
) -> PositionRecord:
    return PositionRecord(
        recorded_at=base + timedelta(minutes=minutes),
        vehicle_id=vehicle_id,
        vehicle_num=vehicle_id,
        route=route,
        trip_id=trip_id,
        direction_id=direction_id,
        lat=lat,
        lon=lon,
        speed=speed,
    )


def interpolate(line: list[tuple[float, float]], fraction: float) -> tuple[float, float]:
    """Point at ``fraction`` (0..1) of the way along ``line`` by vertex count."""
    fraction = min(max(fraction, 0.0), 1.0)
    scaled = fraction * (len(line) - 1)
    idx = min(int(scaled), len(line) - 2)
    t = scaled - idx
    (lat1, lon1), (lat2, lon2) = line[idx], line[idx + 1]
    return lat1 + (lat2 - lat1) * t, lon1 + (lon2 - lon1) * t


def vehicle_run(
    vehicle_id: str,
    start_offset_min: float,
    duration_min: float = 20.0,
    interval_sec: int = 30,
    route: str = "701",
    direction_id: int = 0,
    speed: float = 18.0,
    line: list[tuple[float, float]] | None = None,
) -> list[PositionRecord]:
    """Evenly spaced reports of one vehicle driving ``line`` end to end."""
    line = line or ROUTE_701_LINE
    steps = int(duration_min * 60 // interval_sec)
    records: list[PositionRecord] = []
    for step in range(steps + 1):
        lat, lon = interpolate(line, step / steps)
        records.append(
            PositionRecord(
                recorded_at=BASE_TIME
                + timedelta(minutes=start_offset_min, seconds=step * interval_sec),
                vehicle_id=vehicle_id,
                vehicle_num=vehicle_id,
                route=route,
                direction_id=direction_id,
                lat=lat,
                lon=lon,
                speed=speed,
            )
        )
    return records
