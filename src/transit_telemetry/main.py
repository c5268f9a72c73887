"""Process entry point for the telemetry worker."""

from __future__ import annotations

import asyncio
import sys

from transit_telemetry.config import get_settings
from transit_telemetry.database import check_database_connection, close_database
from transit_telemetry.logging import get_logger, setup_logging
from transit_telemetry.worker import TelemetryWorker

logger = get_logger(__name__)

EXIT_CONFIG_ERROR = 1


async def serve() -> int:
    """Verify the store is reachable, then run the worker until stopped."""
    settings = get_settings()
    logger.info(
        "Starting transit telemetry worker",
        version=settings.app_version,
        environment=settings.environment,
        database=settings.masked_database_url,
        feed_url=settings.feed_url,
    )

    try:
        if not await check_database_connection():
            logger.error("Database unreachable at startup, exiting")
            return EXIT_CONFIG_ERROR

        worker = TelemetryWorker(settings)
        await worker.run_forever()
    finally:
        await close_database()

    logger.info("Shutdown complete")
    return 0


def run() -> None:
    """Console-script entry point."""
    setup_logging()
    settings = get_settings()

    missing = settings.missing_required_env()
    if missing:
        logger.error("Missing required environment variables", missing=missing)
        sys.exit(EXIT_CONFIG_ERROR)

    sys.exit(asyncio.run(serve()))


if __name__ == "__main__":
    run()
