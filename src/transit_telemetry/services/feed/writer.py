"""Position store writer: batched inserts and retention cleanup."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from sqlalchemy import text

from transit_telemetry.database import bulk_insert, get_session_context
from transit_telemetry.logging import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from transit_telemetry.services.feed.normalizer import PositionRecord

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 100

POSITION_COLUMNS = (
    "recorded_at",
    "vehicle_id",
    "vehicle_num",
    "route",
    "trip_id",
    "direction_id",
    "lat",
    "lon",
    "speed",
    "heading",
)

_DELETE_OLD_POSITIONS = text("""
DELETE FROM bus_position_log
WHERE recorded_at < :cutoff
""")

SessionContext = Callable[[], AbstractAsyncContextManager["AsyncSession"]]


class PositionWriter:
    """Append-only writer for the ``bus_position_log`` table.

    Batches from one poll are inserted concurrently, each in its own session.
    A failed batch is logged and dropped; the next poll supersedes it.
    """

    def __init__(
        self,
        batch_size: int = DEFAULT_BATCH_SIZE,
        session_context: SessionContext = get_session_context,
    ) -> None:
        self.batch_size = batch_size
        self._session_context = session_context

    async def write_positions(
        self, records: Sequence[PositionRecord], poll_id: str
    ) -> tuple[int, int]:
        """Insert ``records`` and return ``(rows_written, failed_batches)``."""
        if not records:
            return 0, 0

        batches = [
            records[start : start + self.batch_size]
            for start in range(0, len(records), self.batch_size)
        ]
        results = await asyncio.gather(
            *(self._insert_batch(batch) for batch in batches),
            return_exceptions=True,
        )

        written = 0
        failed = 0
        for index, result in enumerate(results):
            if isinstance(result, BaseException):
                failed += 1
                logger.error(
                    "Position batch insert failed",
                    poll_id=poll_id,
                    batch_index=index,
                    batch_size=len(batches[index]),
                    error=str(result),
                )
            else:
                written += result

        logger.debug(
            "Position insert complete",
            poll_id=poll_id,
            total_rows=len(records),
            written=written,
            failed_batches=failed,
        )
        return written, failed

    async def _insert_batch(self, batch: Sequence[PositionRecord]) -> int:
        rows = [record.as_row() for record in batch]
        async with self._session_context() as session:
            try:
                await bulk_insert(
                    session, "bus_position_log", POSITION_COLUMNS, rows, batch_size=len(rows)
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        return len(batch)


async def cleanup_positions(
    session: AsyncSession,
    retention_days: int,
    now: datetime | None = None,
) -> int:
    """Delete positions older than ``retention_days``; return rows deleted."""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)
    result = await session.execute(_DELETE_OLD_POSITIONS, {"cutoff": cutoff})
    await session.commit()
    deleted = result.rowcount if result.rowcount else 0
    logger.info(
        "Old positions deleted",
        deleted=deleted,
        cutoff=cutoff.isoformat(),
        retention_days=retention_days,
    )
    return deleted
