"""JSON feed fetcher with optional retry and backoff."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx

from transit_telemetry.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SEC = 15.0
DEFAULT_MAX_RETRIES = 1
DEFAULT_BACKOFF_BASE = 2.0
MAX_BACKOFF_SEC = 10.0


class FeedFetchError(Exception):
    """Raised when a feed request fails after all attempts."""


class FeedFetcher:
    """Fetches JSON documents over HTTP.

    The live vehicle feed is fetched with a single attempt: the next poll
    cycle is the retry. Reference-data jobs pass ``max_retries > 1`` to get
    exponential backoff on network errors and 5xx responses. Client errors
    (4xx) are never retried.
    """

    def __init__(
        self,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        user_agent: str | None = None,
    ) -> None:
        self.timeout_sec = timeout_sec
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        self.user_agent = user_agent

    async def fetch_json(
        self,
        url: str,
        *,
        label: str,
        method: str = "GET",
        json_body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Request ``url`` and return the decoded JSON body.

        Args:
            url: Full URL to request.
            label: Short name used in log events (e.g. "vehicles").
            method: HTTP method, GET for the feed, POST for GraphQL.
            json_body: Optional JSON request body.
            headers: Extra request headers.

        Raises:
            FeedFetchError: If every attempt fails or the body is not JSON.
        """
        request_headers = {"Accept": "application/json", "Cache-Control": "no-cache"}
        if self.user_agent:
            request_headers["User-Agent"] = self.user_agent
        if headers:
            request_headers.update(headers)

        last_error: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(
                    timeout=httpx.Timeout(self.timeout_sec),
                    follow_redirects=True,
                ) as client:
                    response = await client.request(
                        method, url, json=json_body, headers=request_headers
                    )
                    response.raise_for_status()
                    try:
                        return response.json()
                    except ValueError as exc:
                        msg = f"{label} response is not valid JSON"
                        raise FeedFetchError(msg) from exc

            except httpx.HTTPStatusError as exc:
                last_error = exc
                status = exc.response.status_code
                if 400 <= status < 500:
                    break
            except (httpx.RequestError, FeedFetchError) as exc:
                last_error = exc

            if attempt < self.max_retries - 1:
                delay = min(self.backoff_base**attempt, MAX_BACKOFF_SEC)
                logger.warning(
                    "Fetch failed, retrying",
                    label=label,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay_sec=delay,
                    error=str(last_error),
                )
                await asyncio.sleep(delay)

        msg = f"Failed to fetch {label}: {last_error}"
        raise FeedFetchError(msg) from last_error
