"""
HTTP Fetcher Module
===================

Retrieves MySideline listing and detail pages with per-request
timeouts, retries with jittered exponential backoff, and polite
spacing between requests.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable
from types import TracebackType

import httpx

from carnival_sync.core.config import PipelineConfig
from carnival_sync.core.enums import FetchErrorKind
from carnival_sync.core.errors import Cancelled, FetchError

logger = logging.getLogger(__name__)


async def cancellable_sleep(delay: float, cancel_event: asyncio.Event | None) -> None:
    """
    Sleep for ``delay`` seconds, waking early if the run is cancelled.

    Raises:
        Cancelled: If ``cancel_event`` is set before or during the wait.
    """
    if cancel_event is None:
        if delay > 0:
            await asyncio.sleep(delay)
        return
    if cancel_event.is_set():
        raise Cancelled("Run cancelled")
    if delay <= 0:
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except TimeoutError:
        return
    raise Cancelled("Run cancelled")


class RequestSpacer:
    """
    Enforces a minimum interval between request starts.

    Shared by all concurrent detail workers of a run, so the source sees
    at most one request per interval regardless of concurrency.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.min_interval = min_interval
        self._clock = clock
        self._last_start: float | None = None
        self._lock = asyncio.Lock()

    async def acquire(self, cancel_event: asyncio.Event | None = None) -> None:
        """Wait until the next request may start."""
        async with self._lock:
            if self._last_start is not None:
                wait_time = self._last_start + self.min_interval - self._clock()
                if wait_time > 0:
                    await cancellable_sleep(wait_time, cancel_event)
            self._last_start = self._clock()


class Fetcher:
    """
    Async HTTP client for the MySideline source.

    Use as an async context manager; the underlying httpx client lives
    for the duration of one run.

    Retried: timeouts, network errors, HTTP 5xx and 429.
    Not retried: other 4xx and undecodable bodies.
    """

    def __init__(
        self,
        config: PipelineConfig,
        cancel_event: asyncio.Event | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        uniform: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.config = config
        self.cancel_event = cancel_event
        self._transport = transport
        self._uniform = uniform
        self._spacer = RequestSpacer(config.min_request_interval)
        self._client: httpx.AsyncClient | None = None
        self.request_count = 0

    async def __aenter__(self) -> Fetcher:
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.request_timeout),
            headers={"User-Agent": self.config.user_agent},
            follow_redirects=True,
            transport=self._transport,
        )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def max_attempts(self) -> int:
        """First attempt plus the configured retries."""
        return self.config.retry_attempts + 1

    def backoff_ceiling(self, retry_number: int) -> float:
        """
        Upper bound of the delay before retry ``retry_number`` (0-based).

        Doubles from the base delay and is capped.
        """
        return min(self.config.backoff_cap, self.config.backoff_base * (2**retry_number))

    def backoff_delay(self, retry_number: int) -> float:
        """Full-jitter delay: uniform between zero and the ceiling."""
        return self._uniform(0.0, self.backoff_ceiling(retry_number))

    async def fetch_listing(self) -> bytes:
        """Fetch the listing page configured as MYSIDELINE_URL."""
        return await self.fetch(self.config.listing_url)

    async def fetch_detail(self, source_id: str, url: str | None = None) -> bytes:
        """Fetch the detail page for a record, deriving the URL if not given."""
        return await self.fetch(url or self.config.detail_url_for(source_id))

    async def fetch(self, url: str) -> bytes:
        """
        Fetch a URL with retries.

        Args:
            url: Absolute URL to fetch

        Returns:
            The response body (content-encoding already decoded)

        Raises:
            FetchError: When the request fails permanently
            Cancelled: When the run is cancelled between attempts
        """
        if self._client is None:
            raise RuntimeError("Fetcher must be used as an async context manager")

        last_error: FetchError | None = None
        for attempt in range(1, self.max_attempts + 1):
            if self.cancel_event is not None and self.cancel_event.is_set():
                raise Cancelled("Run cancelled")

            await self._spacer.acquire(self.cancel_event)
            self.request_count += 1

            try:
                response = await self._client.get(url)
            except httpx.TimeoutException as e:
                last_error = FetchError(
                    FetchErrorKind.TIMEOUT, url, attempt, detail=f"Timeout after {self.config.request_timeout}s"
                )
                logger.warning(f"Timeout fetching {url} (attempt {attempt}/{self.max_attempts}): {e}")
            except httpx.DecodingError as e:
                raise FetchError(FetchErrorKind.DECODE, url, attempt, detail=str(e)) from e
            except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
                # A malformed URL fails the same way on every attempt
                logger.warning(f"Invalid URL {url!r}: {e}; not retrying")
                raise FetchError(FetchErrorKind.NETWORK, url, attempt, detail=f"invalid URL: {e}") from e
            except httpx.RequestError as e:
                last_error = FetchError(FetchErrorKind.NETWORK, url, attempt, detail=str(e))
                logger.warning(f"Network error fetching {url}: {e} (attempt {attempt}/{self.max_attempts})")
            else:
                status = response.status_code
                if 200 <= status < 300:
                    logger.debug(f"Fetched {url} ({status}, {len(response.content)} bytes)")
                    return response.content

                last_error = FetchError(FetchErrorKind.HTTP_STATUS, url, attempt, last_status=status)
                if not last_error.retryable:
                    logger.warning(f"HTTP {status} fetching {url}; not retrying")
                    raise last_error
                logger.warning(f"HTTP {status} fetching {url} (attempt {attempt}/{self.max_attempts})")

            # Wait before retry with exponential backoff
            if attempt < self.max_attempts:
                await cancellable_sleep(self.backoff_delay(attempt - 1), self.cancel_event)

        assert last_error is not None
        raise last_error
