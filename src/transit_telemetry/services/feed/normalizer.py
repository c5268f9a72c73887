"""Vehicle feed normalizer: loosely-typed FIWARE entities to position records.

FIWARE brokers are inconsistent about field shapes. A scalar attribute may
arrive bare (``"speed": 7.5``) or wrapped (``"speed": {"value": 7.5}``), the
route code may live in any of several attributes or only inside the entity
id, and direction/trip numbers are buried in free-form annotation strings.
Everything here is pure and never raises for a bad entity; only a payload
that is not a non-empty list is an error.
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Any, Optional

from transit_telemetry.logging import get_logger

logger = get_logger(__name__)

DEFAULT_OPERATOR = "STCP"

# Fields that may carry a human-readable vehicle label, in priority order.
VEHICLE_LABEL_FIELDS = ("vehiclePlateIdentifier", "vehicleNumber", "license_plate", "name")

_ROUTE_TOKEN_RE = re.compile(r"^[A-Za-z0-9]{1,4}$")

Entity = Mapping[str, Any]
RouteResolver = Callable[[Entity], Optional[str]]


class FeedPayloadError(Exception):
    """Raised when a feed payload is not a non-empty JSON array."""


@dataclass(frozen=True)
class PositionRecord:
    """One canonical GPS fix for one vehicle at one instant."""

    recorded_at: datetime
    vehicle_id: str
    lat: float
    lon: float
    vehicle_num: Optional[str] = None
    route: Optional[str] = None
    trip_id: Optional[str] = None
    direction_id: Optional[int] = None
    speed: Optional[float] = None
    heading: Optional[float] = None

    def as_row(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Field unwrapping
# ---------------------------------------------------------------------------


def unwrap(raw: Any) -> Any:
    """Return the value of a feed attribute, bare or ``{"value": ...}``-wrapped.

    ``None`` means absent. A mapping without a ``value`` key is absent too.
    """
    if raw is None:
        return None
    if isinstance(raw, Mapping):
        return raw.get("value")
    return raw


def unwrap_str(raw: Any) -> Optional[str]:
    """Unwrap a string attribute; integers are accepted and stringified."""
    value = unwrap(raw)
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return None


def unwrap_float(raw: Any) -> Optional[float]:
    """Unwrap a finite numeric attribute."""
    value = unwrap(raw)
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def unwrap_location(raw: Any) -> Optional[tuple[float, float]]:
    """Extract ``(lat, lon)`` from a GeoJSON point, wrapped or bare.

    GeoJSON orders coordinates ``[lon, lat]``. ``(0, 0)`` and out-of-range
    values are treated as missing.
    """
    if not isinstance(raw, Mapping):
        return None
    point = raw.get("value") if "value" in raw else raw
    if not isinstance(point, Mapping):
        return None

    coords = point.get("coordinates")
    if not isinstance(coords, Sequence) or isinstance(coords, str) or len(coords) < 2:
        return None

    lon = unwrap_float(coords[0])
    lat = unwrap_float(coords[1])
    if lon is None or lat is None:
        return None
    if lon == 0.0 and lat == 0.0:
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return None
    return lat, lon


def unwrap_annotations(raw: Any) -> list[str]:
    """Unwrap the annotations attribute into a list of strings."""
    value = unwrap(raw)
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


# ---------------------------------------------------------------------------
# Route resolution chain
# ---------------------------------------------------------------------------


def _route_from_field(field: str, entity: Entity) -> Optional[str]:
    return unwrap_str(entity.get(field))


def vehicle_label(entity: Entity) -> Optional[str]:
    """First non-empty vehicle label attribute."""
    for field in VEHICLE_LABEL_FIELDS:
        label = unwrap_str(entity.get(field))
        if label:
            return label
    return None


def _route_from_vehicle_label(pattern: re.Pattern[str], entity: Entity) -> Optional[str]:
    label = vehicle_label(entity)
    if not label:
        return None
    match = pattern.search(label)
    return match.group(1) if match else None


def _route_from_entity_id(boilerplate: frozenset[str], entity: Entity) -> Optional[str]:
    entity_id = entity.get("id")
    if not isinstance(entity_id, str) or not entity_id:
        return None

    parts = entity_id.split(":")
    for part in parts[2:-1]:
        if part and part.lower() not in boilerplate and _ROUTE_TOKEN_RE.match(part):
            return part

    if len(parts) >= 4:
        candidate = parts[-2]
        if candidate and candidate.lower() not in boilerplate:
            return candidate
    return None


def build_route_resolvers(operator: str = DEFAULT_OPERATOR) -> tuple[RouteResolver, ...]:
    """Return the route resolvers for ``operator`` in priority order."""
    label_pattern = re.compile(rf"{re.escape(operator)}\s+(\d+)", re.IGNORECASE)
    boilerplate = frozenset({"vehicle", "porto", operator.lower()})
    return (
        partial(_route_from_field, "routeShortName"),
        partial(_route_from_field, "route"),
        partial(_route_from_field, "lineId"),
        partial(_route_from_field, "line"),
        partial(_route_from_vehicle_label, label_pattern),
        partial(_route_from_entity_id, boilerplate),
    )


def resolve_route(entity: Entity, resolvers: Iterable[RouteResolver]) -> Optional[str]:
    """Apply ``resolvers`` in order and return the first non-empty route."""
    for resolver in resolvers:
        route = resolver(entity)
        if route:
            return route
    return None


# ---------------------------------------------------------------------------
# Annotations and vehicle number
# ---------------------------------------------------------------------------


def parse_annotations(
    annotations: Iterable[str], operator: str = DEFAULT_OPERATOR
) -> tuple[Optional[int], Optional[str]]:
    """Extract ``(direction_id, trip_id)`` from operator annotation tags.

    Tags look like ``stcp:sentido:1`` and ``stcp:nr_viagem:12345``. Malformed
    values are ignored; the last well-formed tag of each kind wins.
    """
    direction_prefix = f"{operator.lower()}:sentido:"
    trip_prefix = f"{operator.lower()}:nr_viagem:"
    direction_id: Optional[int] = None
    trip_id: Optional[str] = None

    for annotation in annotations:
        lowered = annotation.lower()
        if lowered.startswith(direction_prefix):
            try:
                value = int(annotation[len(direction_prefix) :].strip())
            except ValueError:
                continue
            if value in (0, 1):
                direction_id = value
        elif lowered.startswith(trip_prefix):
            value_str = annotation[len(trip_prefix) :].strip()
            if value_str:
                trip_id = value_str

    return direction_id, trip_id


def clean_vehicle_num(raw: Optional[str]) -> Optional[str]:
    """Keep the trailing number of a label like ``"STCP 3245"``, else the raw label."""
    if not raw:
        return None
    tokens = raw.split()
    if tokens and tokens[-1].isdigit():
        return tokens[-1]
    return raw


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


class FeedNormalizer:
    """Turns one poll of the vehicle feed into :class:`PositionRecord` values."""

    def __init__(self, operator: str = DEFAULT_OPERATOR) -> None:
        self.operator = operator
        self._route_resolvers = build_route_resolvers(operator)

    def normalize_entity(self, entity: Any, recorded_at: datetime) -> Optional[PositionRecord]:
        """Normalize one entity, or return ``None`` if it has no id or location."""
        if not isinstance(entity, Mapping):
            return None

        entity_id = entity.get("id")
        if not isinstance(entity_id, str) or not entity_id:
            return None

        location = unwrap_location(entity.get("location"))
        if location is None:
            return None
        lat, lon = location

        direction_id, trip_id = parse_annotations(
            unwrap_annotations(entity.get("annotations")), self.operator
        )

        raw_num = vehicle_label(entity) or entity_id.split(":")[-1]

        heading = unwrap_float(entity.get("heading"))
        if heading is None:
            heading = unwrap_float(entity.get("bearing"))

        return PositionRecord(
            recorded_at=recorded_at,
            vehicle_id=entity_id,
            vehicle_num=clean_vehicle_num(raw_num),
            route=resolve_route(entity, self._route_resolvers),
            trip_id=trip_id,
            direction_id=direction_id,
            lat=lat,
            lon=lon,
            speed=unwrap_float(entity.get("speed")),
            heading=heading,
        )

    def normalize_payload(
        self, payload: Any, recorded_at: datetime | None = None
    ) -> list[PositionRecord]:
        """Normalize a full feed response.

        Raises:
            FeedPayloadError: If ``payload`` is not a list or is empty.
        """
        if not isinstance(payload, list):
            msg = f"Feed payload is not an array (got {type(payload).__name__})"
            raise FeedPayloadError(msg)
        if not payload:
            msg = "Feed returned an empty array"
            raise FeedPayloadError(msg)

        received_at = recorded_at or datetime.now(timezone.utc)
        records: list[PositionRecord] = []
        skipped = 0

        for entity in payload:
            try:
                record = self.normalize_entity(entity, received_at)
            except (TypeError, ValueError, AttributeError) as exc:
                entity_id = entity.get("id") if isinstance(entity, Mapping) else None
                logger.warning("Skipping malformed feed entity", entity_id=entity_id, error=str(exc))
                record = None
            if record is None:
                skipped += 1
                continue
            records.append(record)

        if skipped:
            logger.debug("Feed entities without usable location", skipped=skipped)
        return records
