"""
Ingestion Pipeline Module
=========================

Runs one MySideline ingestion end to end:

1. Reserve the single-flight slot (IngestionRun 'running')
2. Optionally deactivate past carnivals
3. Fetch and parse the listing
4. Enrich candidates from their detail pages
5. Normalize
6. Classify all candidates against a store snapshot
7. Persist in listing order, one transaction per candidate
8. Record the run's outcome
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from datetime import date as calendar_date

import httpx
from sqlalchemy.orm import Session, sessionmaker

from carnival_sync.core.config import PipelineConfig
from carnival_sync.core.enums import RunStatus, SkipReason, TriggerSource
from carnival_sync.core.errors import Cancelled, FetchError, NormalizationReject, ParseError
from carnival_sync.core.logging_context import correlation_scope
from carnival_sync.core.schema import IngestionRun
from carnival_sync.db.repositories import CarnivalRepository
from carnival_sync.ingestion.audit import AuditLogger, RunHandle, RunTally
from carnival_sync.ingestion.enricher import DetailEnricher, EnrichedCandidate
from carnival_sync.ingestion.fetcher import Fetcher
from carnival_sync.ingestion.normalizer import Candidate, Normalizer
from carnival_sync.ingestion.parser import ListingParser
from carnival_sync.ingestion.persister import Persister
from carnival_sync.ingestion.reconciler import Classification, Reconciler, Skip, StoreSnapshot

logger = logging.getLogger(__name__)

# Skip reasons that come from candidate data rather than the store
REJECT_REASONS = {SkipReason.NO_STATE, SkipReason.NO_DATE, SkipReason.STALE}


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


class IngestionPipeline:
    """
    Orchestrates the ingestion components for one run at a time.

    Storage calls run on worker threads so the event loop stays free
    for detail fetches and the scheduler.
    """

    def __init__(
        self,
        config: PipelineConfig,
        session_factory: sessionmaker[Session],
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = _utc_now,
        uniform: Callable[[float, float], float] = random.uniform,
    ) -> None:
        """
        Args:
            config: Pipeline configuration
            session_factory: Factory for store sessions
            transport: Optional httpx transport (tests use httpx.MockTransport)
            clock: Returns the current time (timezone-aware)
            uniform: Jitter source for retry backoff
        """
        self.config = config
        self.session_factory = session_factory
        self.transport = transport
        self.clock = clock
        self.uniform = uniform
        self.audit = AuditLogger(session_factory, clock=clock)
        self.normalizer = Normalizer(config)
        self.reconciler = Reconciler(config, today=self.today)
        self.persister = Persister(session_factory, self.reconciler, clock=clock)

    def today(self) -> calendar_date:
        """Current calendar date in the pipeline timezone."""
        return self.clock().astimezone(self.config.tz).date()

    def begin(self, trigger_source: TriggerSource, correlation_id: str | None = None) -> RunHandle:
        """
        Reserve the run slot.

        Raises:
            RunInProgress: If another run is active
        """
        return self.audit.begin_run(trigger_source, correlation_id)

    async def run(
        self,
        trigger_source: TriggerSource = TriggerSource.CLI,
        cancel_event: asyncio.Event | None = None,
    ) -> IngestionRun:
        """Reserve the slot and execute a full run."""
        handle = await asyncio.to_thread(self.begin, trigger_source)
        return await self.execute(handle, cancel_event)

    async def execute(self, handle: RunHandle, cancel_event: asyncio.Event | None = None) -> IngestionRun:
        """
        Execute a run whose slot is already reserved.

        The run always reaches a terminal status, including when the
        task itself is cancelled.
        """
        tally = RunTally(sample_limit=self.config.error_sample_limit)

        with correlation_scope(handle.correlation_id):
            logger.info(f"Ingestion run started (trigger={handle.trigger_source.value})")
            try:
                status, summary = await self._execute(tally, cancel_event)
            except asyncio.CancelledError:
                logger.warning("Ingestion task cancelled")
                self.audit.finish_run(handle, RunStatus.FAILED, tally, "task cancelled")
                raise
            except Exception as e:
                logger.exception(f"Ingestion run failed: {e}")
                status, summary = RunStatus.FAILED, f"unexpected error: {e}"

            run = await asyncio.to_thread(self.audit.finish_run, handle, status, tally, summary)

        if run is None:
            run = IngestionRun(
                id="",
                correlation_id=handle.correlation_id,
                status=status,
                trigger_source=handle.trigger_source,
                started_at=handle.started_at,
                completed_at=self.clock(),
                counters=tally.counters,
                skip_reasons=dict(tally.skip_reasons),
                error_samples=tally.error_samples,
                error_summary=summary,
                deactivated=tally.deactivated,
            )
        return run

    async def _execute(
        self,
        tally: RunTally,
        cancel_event: asyncio.Event | None,
    ) -> tuple[RunStatus, str | None]:
        if self.config.deactivate_past:
            tally.deactivated = await asyncio.to_thread(self._deactivate_past)

        if not self.config.enable_scraping:
            logger.info("Scraping disabled; run completes without fetching")
            return RunStatus.OK, None

        async with Fetcher(self.config, cancel_event, self.transport, self.uniform) as fetcher:
            try:
                body = await fetcher.fetch_listing()
            except FetchError as e:
                logger.error(f"Listing fetch failed: {e}")
                tally.add_sample(str(e))
                return RunStatus.FAILED, f"listing fetch failed: {e}"
            except Cancelled:
                return RunStatus.FAILED, "cancelled before the listing was fetched"

            parser = ListingParser(base_url=self.config.listing_url, event_url=self.config.event_url)
            try:
                parsed = await asyncio.to_thread(parser.parse, body)
            except ParseError as e:
                logger.error(f"Listing parse failed: {e}")
                tally.add_sample(str(e))
                return RunStatus.FAILED, f"listing parse failed: {e}"

            for warning in parsed.warnings:
                tally.add_sample(warning)
            raws = parsed.candidates
            tally.counters.scanned = len(raws)

            enricher = DetailEnricher(fetcher, self.config, cancel_event=cancel_event)
            enriched = await enricher.enrich_all(raws)
            logger.info(f"Enriched {len(enriched)}/{len(raws)} candidates ({fetcher.request_count} requests)")

        if self._cancelled(cancel_event):
            return self._finish_cancelled(tally, processed=0, total=len(raws))

        for item in enriched:
            if item.error:
                tally.add_sample(f"{item.raw.source_id}: {item.error}")

        classifications = await asyncio.to_thread(self._classify, enriched)
        for classification in classifications:
            if isinstance(classification, Skip) and classification.reason in REJECT_REASONS:
                tally.add_sample(str(NormalizationReject(classification.reason, classification.candidate.source_id)))

        processed = 0
        for classification in classifications:
            if self._cancelled(cancel_event):
                break
            result = await asyncio.to_thread(self.persister.apply, classification)
            tally.record_outcome(result.outcome, result.reason, result.error)
            processed += 1

        if processed < len(raws):
            return self._finish_cancelled(tally, processed, len(raws))
        if tally.counters.errored:
            return RunStatus.PARTIAL, f"{tally.counters.errored} candidate(s) failed to persist"
        return RunStatus.OK, None

    def _classify(self, enriched: Sequence[EnrichedCandidate]) -> list[Classification]:
        candidates: list[Candidate] = [self.normalizer.normalize_enriched(item) for item in enriched]
        with self.session_factory() as session:
            snapshot = StoreSnapshot.load(session, [c.source_id for c in candidates], self.normalizer)
        return self.reconciler.classify_all(candidates, snapshot)

    def _deactivate_past(self) -> int:
        with self.session_factory() as session:
            count = CarnivalRepository(session).deactivate_past(self.today())
            session.commit()
        if count:
            logger.info(f"Deactivated {count} past carnival(s)")
        return count

    @staticmethod
    def _cancelled(cancel_event: asyncio.Event | None) -> bool:
        return cancel_event is not None and cancel_event.is_set()

    @staticmethod
    def _finish_cancelled(tally: RunTally, processed: int, total: int) -> tuple[RunStatus, str | None]:
        remaining = total - processed
        for _ in range(remaining):
            tally.record_skip(SkipReason.CANCELLED)
        logger.warning(f"Run cancelled; {processed} candidate(s) persisted, {remaining} not processed")
        status = RunStatus.PARTIAL if processed > 0 else RunStatus.FAILED
        return status, f"cancelled after {processed} of {total} candidate(s)"
