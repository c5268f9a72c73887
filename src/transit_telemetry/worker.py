"""Polling loop and once-per-day job scheduler."""

from __future__ import annotations

import asyncio
import signal
import time
import uuid
from collections.abc import Awaitable, Callable, Sequence
from contextlib import suppress
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from transit_telemetry.config import Settings, get_settings
from transit_telemetry.database import get_session_context
from transit_telemetry.logging import bind_job_context, clear_job_context, get_logger
from transit_telemetry.services.aggregation import DailyAggregates, run_daily_aggregation
from transit_telemetry.services.aggregation.engine import summarize
from transit_telemetry.services.feed import (
    FeedFetcher,
    FeedFetchError,
    FeedNormalizer,
    FeedPayloadError,
    PositionWriter,
    cleanup_positions,
)
from transit_telemetry.services.segments import SegmentRefresher

logger = get_logger(__name__)

JOB_AGGREGATE_DAILY = "aggregate-daily"
JOB_CLEANUP_POSITIONS = "cleanup-positions"
JOB_REFRESH_SEGMENTS = "refresh-segments"

MONDAY = 0


@dataclass(frozen=True)
class ScheduledJob:
    """A job that runs at most once per UTC day at ``hour_utc``.

    ``weekday`` follows ``datetime.weekday()`` (Monday is 0); ``None`` means
    every day.
    """

    name: str
    hour_utc: int
    run: Callable[[], Awaitable[Any]]
    weekday: int | None = None

    def is_due(self, now: datetime, last_run: date | None) -> bool:
        if now.hour != self.hour_utc:
            return False
        if self.weekday is not None and now.weekday() != self.weekday:
            return False
        return last_run != now.date()


async def _run_cleanup() -> int:
    settings = get_settings()
    async with get_session_context() as session:
        return await cleanup_positions(session, settings.position_retention_days)


async def _run_segment_refresh() -> dict[str, int]:
    return await SegmentRefresher().run()


def remaining_interval(interval_sec: float, elapsed_sec: float) -> float:
    """Seconds left before the next poll is due; 0 when the cycle overran."""
    return max(0.0, interval_sec - elapsed_sec)


def default_jobs(settings: Settings) -> list[ScheduledJob]:
    return [
        ScheduledJob(JOB_AGGREGATE_DAILY, settings.aggregate_hour_utc, run_daily_aggregation),
        ScheduledJob(JOB_CLEANUP_POSITIONS, settings.cleanup_hour_utc, _run_cleanup),
        ScheduledJob(
            JOB_REFRESH_SEGMENTS,
            settings.refresh_segments_hour_utc,
            _run_segment_refresh,
            weekday=MONDAY,
        ),
    ]


class TelemetryWorker:
    """Single-process control loop: poll the feed, then run any due job.

    Usage:
        worker = TelemetryWorker()
        await worker.run_forever()   # until SIGTERM/SIGINT or request_stop()

        # Or drive it step by step:
        report = await worker.run_once()
        ran = await worker.check_scheduled_jobs()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        fetcher: FeedFetcher | None = None,
        normalizer: FeedNormalizer | None = None,
        writer: PositionWriter | None = None,
        jobs: Sequence[ScheduledJob] | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._feed_url = settings.feed_url
        self._poll_interval = settings.poll_interval_sec
        self._fetcher = fetcher or FeedFetcher(
            timeout_sec=settings.feed_timeout_sec,
            user_agent=settings.feed_user_agent,
        )
        self._normalizer = normalizer or FeedNormalizer(settings.feed_operator)
        self._writer = writer or PositionWriter(batch_size=settings.position_batch_size)
        self._jobs = list(jobs) if jobs is not None else default_jobs(settings)

        self._stop_event = asyncio.Event()
        self._last_run: dict[str, date] = {}
        self._cycles = 0
        self._errors = 0
        self._positions_collected = 0
        self._started_at: datetime | None = None

    @property
    def cycles(self) -> int:
        return self._cycles

    @property
    def errors(self) -> int:
        return self._errors

    @property
    def positions_collected(self) -> int:
        return self._positions_collected

    @property
    def last_run(self) -> dict[str, date]:
        return dict(self._last_run)

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def request_stop(self) -> None:
        """Ask the loop to exit after the in-flight poll or job."""
        if not self._stop_event.is_set():
            logger.info("Shutdown requested")
        self._stop_event.set()

    def get_status(self) -> dict[str, Any]:
        return {
            "cycles": self._cycles,
            "errors": self._errors,
            "positions_collected": self._positions_collected,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "last_run": {name: day.isoformat() for name, day in self._last_run.items()},
        }

    async def run_once(self) -> dict[str, Any]:
        """Execute one poll cycle: fetch, normalize and store positions.

        Feed and store failures are logged and counted; they never raise.
        """
        poll_id = str(uuid.uuid4())[:8]
        self._cycles += 1
        started_at = datetime.now(timezone.utc)
        bind_job_context(poll_id=poll_id)

        report: dict[str, Any] = {
            "poll_id": poll_id,
            "cycle": self._cycles,
            "started_at": started_at.isoformat(),
            "status": "error",
            "positions": 0,
            "written": 0,
            "failed_batches": 0,
            "error": None,
        }

        try:
            payload = await self._fetcher.fetch_json(self._feed_url, label="vehicles")
            records = self._normalizer.normalize_payload(payload, recorded_at=started_at)
            report["positions"] = len(records)

            written, failed = await self._writer.write_positions(records, poll_id)
            report["written"] = written
            report["failed_batches"] = failed
            self._positions_collected += written
            if failed:
                self._errors += 1
                report["status"] = "partial"
            else:
                report["status"] = "ok"

        except (FeedFetchError, FeedPayloadError) as exc:
            self._errors += 1
            report["error"] = str(exc)
            logger.error("Feed poll failed", poll_id=poll_id, error=str(exc))

        except Exception as exc:
            self._errors += 1
            report["error"] = str(exc)
            logger.error("Unexpected poll error", poll_id=poll_id, exc_info=exc)

        finally:
            clear_job_context()

        report["ended_at"] = datetime.now(timezone.utc).isoformat()
        logger.info(
            "Poll cycle complete",
            poll_id=poll_id,
            status=report["status"],
            positions=report["positions"],
            written=report["written"],
            total_collected=self._positions_collected,
        )
        return report

    async def check_scheduled_jobs(self, now: datetime | None = None) -> str | None:
        """Run the first due job, if any, and return its name.

        The job's last-run date only advances when it succeeds, so a failed
        job is retried on the next check within the same hour.
        """
        now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)

        for job in self._jobs:
            if not job.is_due(now, self._last_run.get(job.name)):
                continue

            bind_job_context(job=job.name)
            logger.info("Running scheduled job", job=job.name)
            try:
                result = await job.run()
            except Exception as exc:
                self._errors += 1
                logger.error("Scheduled job failed", job=job.name, exc_info=exc)
            else:
                self._last_run[job.name] = now.date()
                logger.info("Scheduled job complete", job=job.name, result=_describe(result))
            finally:
                clear_job_context()
            return job.name

        return None

    async def run_forever(self) -> None:
        """Poll every ``poll_interval_sec`` until stopped.

        The interval is measured from the start of each cycle, so a slow poll
        or job shortens the following sleep.
        """
        self._started_at = datetime.now(timezone.utc)
        self._install_signal_handlers()
        logger.info(
            "Telemetry worker started",
            poll_interval_sec=self._poll_interval,
            jobs=[job.name for job in self._jobs],
        )

        try:
            while not self._stop_event.is_set():
                cycle_started = time.monotonic()
                await self.run_once()
                if self._stop_event.is_set():
                    break

                await self.check_scheduled_jobs()
                if self._stop_event.is_set():
                    break

                with suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=remaining_interval(
                            self._poll_interval, time.monotonic() - cycle_started
                        ),
                    )
        finally:
            self._remove_signal_handlers()
            logger.info(
                "Telemetry worker stopped",
                positions_collected=self._positions_collected,
                cycles=self._cycles,
                errors=self._errors,
            )

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            with suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, self.request_stop)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            with suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(sig)


def _describe(result: Any) -> Any:
    if isinstance(result, DailyAggregates):
        return summarize(result)
    if result is None or isinstance(result, (int, float, str, dict)):
        return result
    return repr(result)
