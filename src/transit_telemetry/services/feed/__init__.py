"""Vehicle feed ingestion: fetch, normalize, store."""

from transit_telemetry.services.feed.fetcher import FeedFetcher, FeedFetchError
from transit_telemetry.services.feed.normalizer import (
    FeedNormalizer,
    FeedPayloadError,
    PositionRecord,
)
from transit_telemetry.services.feed.writer import PositionWriter, cleanup_positions

__all__ = [
    "FeedFetchError",
    "FeedFetcher",
    "FeedNormalizer",
    "FeedPayloadError",
    "PositionRecord",
    "PositionWriter",
    "cleanup_positions",
]
