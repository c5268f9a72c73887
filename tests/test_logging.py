"""Tests for structured logging setup."""

import json
import logging
from collections.abc import Iterator

import pytest
import structlog

from transit_telemetry.logging import bind_job_context, clear_job_context, get_logger, setup_logging


@pytest.fixture(autouse=True)
def restore_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


class TestSetupLogging:
    def test_json_lines_carry_job_context(self, capsys: pytest.CaptureFixture[str]) -> None:
        setup_logging(json_logs=True)

        bind_job_context(poll_id="ab12cd34")
        get_logger("tests.logging").info("Poll cycle complete", written=3)
        clear_job_context()
        get_logger("tests.logging").info("Telemetry worker stopped")

        lines = capsys.readouterr().out.strip().splitlines()
        first, second = (json.loads(line) for line in lines[-2:])

        assert first["event"] == "Poll cycle complete"
        assert first["written"] == 3
        assert first["poll_id"] == "ab12cd34"
        assert first["level"] == "info"
        assert first["service"] == "Transit Telemetry Worker"
        assert "timestamp" in first
        assert "poll_id" not in second

    def test_console_renderer(self, capsys: pytest.CaptureFixture[str]) -> None:
        setup_logging(json_logs=False)

        get_logger("tests.logging").warning("Fetch failed, retrying", attempt=1)

        out = capsys.readouterr().out
        assert "Fetch failed, retrying" in out
        assert "attempt" in out

    def test_noisy_loggers_quieted(self) -> None:
        setup_logging(json_logs=True)

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
