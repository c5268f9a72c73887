"""Async engine, session scopes and bulk-write helpers for PostgreSQL."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from transit_telemetry.config import Settings, get_settings
from transit_telemetry.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Sequence

logger = get_logger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

APPLICATION_NAME = "transit-telemetry"
DEFAULT_BULK_BATCH_SIZE = 500


def engine_options(database_url: str, settings: Settings) -> dict[str, Any]:
    """Keyword arguments for ``create_async_engine``.

    asyncpg connections get a server-side ``statement_timeout`` and an
    ``application_name`` so worker sessions are identifiable in
    ``pg_stat_activity``.
    """
    options: dict[str, Any] = {
        "echo": settings.debug,
        "pool_pre_ping": True,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
    }
    if make_url(database_url).get_driver_name() == "asyncpg":
        options["connect_args"] = {
            "server_settings": {
                "application_name": APPLICATION_NAME,
                "statement_timeout": str(settings.db_statement_timeout_ms),
            }
        }
    return options


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url, **engine_options(settings.database_url, settings)
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession, None]:
    """One session per unit of work (a poll batch or a scheduled job)."""
    async with get_session_factory()() as session:
        try:
            yield session
        finally:
            await session.close()


async def check_database_connection() -> bool:
    """Run ``SELECT 1``; log and return False on any failure."""
    settings = get_settings()
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error(
            "Database connectivity check failed",
            database=settings.masked_database_url,
            error=str(exc),
        )
        return False
    return True


async def close_database() -> None:
    """Dispose of the engine pool; the next ``get_engine`` call recreates it."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def bulk_insert(
    session: AsyncSession,
    table: str,
    columns: tuple[str, ...],
    rows: Sequence[dict[str, Any]],
    *,
    json_cols: tuple[str, ...] = (),
    conflict_cols: tuple[str, ...] = (),
    update_cols: tuple[str, ...] = (),
    batch_size: int = DEFAULT_BULK_BATCH_SIZE,
) -> int:
    """Insert ``rows`` with multi-row VALUES statements.

    With ``conflict_cols`` the statement becomes an upsert that overwrites
    ``update_cols``. Values for ``json_cols`` must already be JSON strings.
    The caller owns the transaction; nothing is committed here.
    """
    if not rows:
        return 0

    column_list = ", ".join(columns)
    conflict_sql = ""
    if conflict_cols:
        update_set = ", ".join(f"{col} = EXCLUDED.{col}" for col in update_cols)
        conflict_sql = f" ON CONFLICT ({', '.join(conflict_cols)}) DO UPDATE SET {update_set}"

    def placeholder(col: str, i: int) -> str:
        if col in json_cols:
            return f"CAST(:{col}_{i} AS JSONB)"
        return f":{col}_{i}"

    for batch_start in range(0, len(rows), batch_size):
        batch = rows[batch_start : batch_start + batch_size]
        values_sql = ", ".join(
            "(" + ", ".join(placeholder(col, i) for col in columns) + ")"
            for i in range(len(batch))
        )
        params: dict[str, Any] = {}
        for i, row in enumerate(batch):
            for col in columns:
                params[f"{col}_{i}"] = row[col]

        stmt = text(f"INSERT INTO {table} ({column_list}) VALUES {values_sql}{conflict_sql}")
        await session.execute(stmt, params)

    return len(rows)
