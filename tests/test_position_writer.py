"""Tests for the position store writer."""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from transit_telemetry.services.feed.normalizer import PositionRecord
from transit_telemetry.services.feed.writer import (
    POSITION_COLUMNS,
    PositionWriter,
    cleanup_positions,
)

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def _records(count: int) -> list[PositionRecord]:
    return [
        PositionRecord(
            recorded_at=NOW,
            vehicle_id=f"urn:ngsi-ld:Vehicle:porto:stcp:205:{i}",
            lat=41.15,
            lon=-8.61,
            vehicle_num=str(i),
            route="205",
            speed=12.0,
        )
        for i in range(count)
    ]


def _session_factory(sessions: list[AsyncMock]):
    """Return a session_context callable that hands out the given sessions."""
    iterator = iter(sessions)

    @asynccontextmanager
    async def factory():
        yield next(iterator)

    return factory


class TestPositionWriter:
    @pytest.mark.asyncio
    async def test_one_multi_row_insert_per_batch(self) -> None:
        session = AsyncMock()
        writer = PositionWriter(batch_size=3, session_context=_session_factory([session]))

        await writer.write_positions(_records(3), "abc")

        session.execute.assert_awaited_once()
        sql = str(session.execute.call_args.args[0])
        assert sql.startswith(f"INSERT INTO bus_position_log ({', '.join(POSITION_COLUMNS)})")
        assert ":vehicle_id_2" in sql
        assert ":vehicle_id_3" not in sql

    @pytest.mark.asyncio
    async def test_empty_is_noop(self) -> None:
        factory = MagicMock()
        writer = PositionWriter(session_context=factory)

        assert await writer.write_positions([], "abc") == (0, 0)
        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_batches_are_split(self) -> None:
        sessions = [AsyncMock() for _ in range(3)]
        writer = PositionWriter(batch_size=2, session_context=_session_factory(sessions))

        written, failed = await writer.write_positions(_records(5), "abc")

        assert (written, failed) == (5, 0)
        for session in sessions:
            session.execute.assert_awaited_once()
            session.commit.assert_awaited_once()
        batch_sizes = sorted(
            sum(1 for key in s.execute.call_args.args[1] if key.startswith("vehicle_id_"))
            for s in sessions
        )
        assert batch_sizes == [1, 2, 2]

    @pytest.mark.asyncio
    async def test_row_parameters(self) -> None:
        session = AsyncMock()
        writer = PositionWriter(session_context=_session_factory([session]))

        await writer.write_positions(_records(1), "abc")

        params = session.execute.call_args.args[1]
        assert params["vehicle_id_0"] == "urn:ngsi-ld:Vehicle:porto:stcp:205:0"
        assert params["route_0"] == "205"
        assert params["recorded_at_0"] == NOW
        assert params["direction_id_0"] is None

    @pytest.mark.asyncio
    async def test_failed_batch_counted_not_raised(self) -> None:
        good = AsyncMock()
        bad = AsyncMock()
        bad.execute.side_effect = RuntimeError("connection reset")
        writer = PositionWriter(batch_size=2, session_context=_session_factory([good, bad]))

        written, failed = await writer.write_positions(_records(4), "abc")

        assert written == 2
        assert failed == 1
        bad.rollback.assert_awaited_once()
        bad.commit.assert_not_awaited()


class TestCleanupPositions:
    @pytest.mark.asyncio
    async def test_deletes_before_cutoff(self) -> None:
        session = AsyncMock()
        result = MagicMock()
        result.rowcount = 42
        session.execute.return_value = result

        deleted = await cleanup_positions(session, retention_days=30, now=NOW)

        assert deleted == 42
        params = session.execute.call_args.args[1]
        assert params["cutoff"] == NOW - timedelta(days=30)
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_nothing_deleted(self) -> None:
        session = AsyncMock()
        result = MagicMock()
        result.rowcount = None
        session.execute.return_value = result

        assert await cleanup_positions(session, retention_days=7, now=NOW) == 0
