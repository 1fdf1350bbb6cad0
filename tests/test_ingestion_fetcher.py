"""Tests for the HTTP fetcher module."""

import asyncio
import time

import httpx
import pytest

from carnival_sync.core.enums import FetchErrorKind
from carnival_sync.core.errors import Cancelled, FetchError
from carnival_sync.ingestion.fetcher import Fetcher, RequestSpacer, cancellable_sleep
from conftest import LISTING_URL, no_jitter


def scripted_transport(responses: list) -> tuple[httpx.MockTransport, list[httpx.Request]]:
    """Serve responses (or raise exceptions) in order."""
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        item = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, int):
            return httpx.Response(item, text=f"status {item}")
        return item

    return httpx.MockTransport(handler), seen


class TestFetcherRetries:
    """Tests for retry semantics."""

    @pytest.mark.asyncio
    async def test_503_three_times_then_200(self, config) -> None:
        """Listing recovers after three 503s within the retry budget."""
        transport, seen = scripted_transport([503, 503, 503, httpx.Response(200, text="<html>ok</html>")])
        async with Fetcher(config, transport=transport, uniform=no_jitter) as fetcher:
            body = await fetcher.fetch_listing()

        assert body == b"<html>ok</html>"
        assert len(seen) == 4
        assert fetcher.request_count == 4

    @pytest.mark.asyncio
    async def test_429_is_retried(self, config) -> None:
        transport, seen = scripted_transport([429, httpx.Response(200, text="ok")])
        async with Fetcher(config, transport=transport, uniform=no_jitter) as fetcher:
            assert await fetcher.fetch(LISTING_URL) == b"ok"
        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_404_is_not_retried(self, config) -> None:
        """4xx other than 429 returns eagerly."""
        transport, seen = scripted_transport([404])
        async with Fetcher(config, transport=transport, uniform=no_jitter) as fetcher:
            with pytest.raises(FetchError) as exc_info:
                await fetcher.fetch(LISTING_URL)

        assert len(seen) == 1
        assert exc_info.value.kind == FetchErrorKind.HTTP_STATUS
        assert exc_info.value.last_status == 404
        assert exc_info.value.attempts == 1
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_persistent_5xx_exhausts_attempts(self, config) -> None:
        transport, seen = scripted_transport([500])
        async with Fetcher(config, transport=transport, uniform=no_jitter) as fetcher:
            with pytest.raises(FetchError) as exc_info:
                await fetcher.fetch(LISTING_URL)

        assert len(seen) == config.retry_attempts + 1
        assert exc_info.value.attempts == config.retry_attempts + 1
        assert exc_info.value.last_status == 500

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self, config) -> None:
        request = httpx.Request("GET", LISTING_URL)
        transport, seen = scripted_transport([httpx.ReadTimeout("slow", request=request), 200])
        async with Fetcher(config, transport=transport, uniform=no_jitter) as fetcher:
            await fetcher.fetch(LISTING_URL)
        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_timeout_exhaustion_reports_timeout(self, config) -> None:
        request = httpx.Request("GET", LISTING_URL)
        transport, seen = scripted_transport([httpx.ReadTimeout("slow", request=request)])
        cfg = config.with_overrides(retry_attempts=1)
        async with Fetcher(cfg, transport=transport, uniform=no_jitter) as fetcher:
            with pytest.raises(FetchError) as exc_info:
                await fetcher.fetch(LISTING_URL)

        assert exc_info.value.kind == FetchErrorKind.TIMEOUT
        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_network_error_is_retried(self, config) -> None:
        request = httpx.Request("GET", LISTING_URL)
        transport, seen = scripted_transport([httpx.ConnectError("refused", request=request)])
        cfg = config.with_overrides(retry_attempts=2)
        async with Fetcher(cfg, transport=transport, uniform=no_jitter) as fetcher:
            with pytest.raises(FetchError) as exc_info:
                await fetcher.fetch(LISTING_URL)

        assert exc_info.value.kind == FetchErrorKind.NETWORK
        assert len(seen) == 3

    @pytest.mark.asyncio
    async def test_zero_retries_means_one_attempt(self, config) -> None:
        transport, seen = scripted_transport([503])
        cfg = config.with_overrides(retry_attempts=0)
        async with Fetcher(cfg, transport=transport, uniform=no_jitter) as fetcher:
            with pytest.raises(FetchError):
                await fetcher.fetch(LISTING_URL)
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_malformed_url_is_not_retried(self, config) -> None:
        transport, seen = scripted_transport([200])
        async with Fetcher(config, transport=transport, uniform=no_jitter) as fetcher:
            with pytest.raises(FetchError) as exc_info:
                await fetcher.fetch("https://mysideline.test:bad/event")

        assert seen == []
        assert fetcher.request_count == 1
        assert exc_info.value.kind == FetchErrorKind.NETWORK
        assert exc_info.value.attempts == 1

    @pytest.mark.asyncio
    async def test_detail_url_is_derived_from_source_id(self, config) -> None:
        transport, seen = scripted_transport([200])
        async with Fetcher(config, transport=transport, uniform=no_jitter) as fetcher:
            await fetcher.fetch_detail("abc 123")
        assert str(seen[0].url) == "https://mysideline.test/event?id=abc%20123"

    @pytest.mark.asyncio
    async def test_sends_user_agent(self, config) -> None:
        transport, seen = scripted_transport([200])
        async with Fetcher(config, transport=transport) as fetcher:
            await fetcher.fetch(LISTING_URL)
        assert seen[0].headers["User-Agent"] == config.user_agent

    @pytest.mark.asyncio
    async def test_fetch_outside_context_manager_fails(self, config) -> None:
        fetcher = Fetcher(config)
        with pytest.raises(RuntimeError):
            await fetcher.fetch(LISTING_URL)


class TestBackoff:
    """Tests for backoff timing."""

    def test_ceilings_double_until_cap(self) -> None:
        """Backoff starts at 500 ms and is capped at 8 s."""
        from carnival_sync.core.config import PipelineConfig

        fetcher = Fetcher(PipelineConfig())
        ceilings = [fetcher.backoff_ceiling(n) for n in range(7)]

        assert ceilings == [0.5, 1.0, 2.0, 4.0, 8.0, 8.0, 8.0]
        assert ceilings == sorted(ceilings)

    def test_delay_is_full_jitter(self) -> None:
        """Each delay is drawn uniformly between zero and the ceiling."""
        from carnival_sync.core.config import PipelineConfig

        calls: list[tuple[float, float]] = []

        def recording_uniform(low: float, high: float) -> float:
            calls.append((low, high))
            return high / 2

        fetcher = Fetcher(PipelineConfig(), uniform=recording_uniform)
        delays = [fetcher.backoff_delay(n) for n in range(3)]

        assert calls == [(0.0, 0.5), (0.0, 1.0), (0.0, 2.0)]
        assert delays == [0.25, 0.5, 1.0]

    def test_default_jitter_stays_within_ceiling(self) -> None:
        from carnival_sync.core.config import PipelineConfig

        fetcher = Fetcher(PipelineConfig())
        samples = [fetcher.backoff_delay(2) for _ in range(200)]
        assert all(0.0 <= s <= 2.0 for s in samples)
        assert len(set(samples)) > 1

    @pytest.mark.asyncio
    async def test_retries_wait_between_attempts(self, config) -> None:
        delays: list[float] = []

        def recording_uniform(low: float, high: float) -> float:
            delays.append(high)
            return 0.0

        transport, _ = scripted_transport([503])
        async with Fetcher(config, transport=transport, uniform=recording_uniform) as fetcher:
            with pytest.raises(FetchError):
                await fetcher.fetch(LISTING_URL)

        # One wait between each pair of attempts, none after the last
        assert len(delays) == config.retry_attempts
        assert delays == sorted(delays)


class TestCancellation:
    """Tests for cancellation during fetches and waits."""

    @pytest.mark.asyncio
    async def test_cancelled_before_fetch(self, config) -> None:
        cancel = asyncio.Event()
        cancel.set()
        transport, seen = scripted_transport([200])
        async with Fetcher(config, cancel_event=cancel, transport=transport) as fetcher:
            with pytest.raises(Cancelled):
                await fetcher.fetch(LISTING_URL)
        assert seen == []

    @pytest.mark.asyncio
    async def test_cancellable_sleep_wakes_early(self) -> None:
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, cancel.set)

        started = time.monotonic()
        with pytest.raises(Cancelled):
            await cancellable_sleep(5.0, cancel)
        assert time.monotonic() - started < 1.0

    @pytest.mark.asyncio
    async def test_cancellable_sleep_completes(self) -> None:
        await cancellable_sleep(0.01, asyncio.Event())
        await cancellable_sleep(0.0, None)


class TestRequestSpacer:
    """Tests for polite spacing between requests."""

    @pytest.mark.asyncio
    async def test_spaces_consecutive_requests(self) -> None:
        spacer = RequestSpacer(min_interval=0.05)

        started = time.monotonic()
        await spacer.acquire()
        await spacer.acquire()
        await spacer.acquire()

        assert time.monotonic() - started >= 0.09

    @pytest.mark.asyncio
    async def test_first_request_is_immediate(self) -> None:
        spacer = RequestSpacer(min_interval=10.0)
        started = time.monotonic()
        await spacer.acquire()
        assert time.monotonic() - started < 1.0
