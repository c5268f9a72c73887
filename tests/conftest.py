"""Pytest configuration and fixtures."""

from collections.abc import Iterator

import pytest

from transit_telemetry.config import get_settings


@pytest.fixture(autouse=True)
def fresh_settings() -> Iterator[None]:
    """Re-read settings from the environment for every test."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
