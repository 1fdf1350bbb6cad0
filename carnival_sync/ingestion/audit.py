"""
Audit Logger Module
===================

Records each ingestion run's lifecycle, counters and first error
messages, and answers operator queries over past runs.

Writes never raise to the pipeline: if the audit store is unavailable
the run continues and a diagnostic goes to stderr.
"""

from __future__ import annotations

import logging
import sys
import uuid
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from carnival_sync.core.enums import PersistOutcome, RunStatus, SkipReason, TriggerSource
from carnival_sync.core.errors import RunInProgress
from carnival_sync.core.schema import IngestionRun, RunCounters, RunStats
from carnival_sync.db.repositories import IngestionRunRepository

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


def _stderr(message: str) -> None:
    sys.stderr.write(f"carnival-sync audit: {message}\n")
    sys.stderr.flush()


@dataclass
class RunHandle:
    """A run's identity; ``persisted`` is False when the audit store was unreachable."""

    correlation_id: str
    trigger_source: TriggerSource
    started_at: datetime
    persisted: bool = True


@dataclass
class RunTally:
    """In-memory counters for the run in progress."""

    sample_limit: int = 10
    counters: RunCounters = field(default_factory=RunCounters)
    skip_reasons: Counter[str] = field(default_factory=Counter)
    error_samples: list[str] = field(default_factory=list)
    deactivated: int = 0

    def add_sample(self, message: str) -> None:
        """Keep the first ``sample_limit`` messages."""
        if len(self.error_samples) < self.sample_limit:
            self.error_samples.append(message)

    def record_skip(self, reason: SkipReason | str, sample: str | None = None) -> None:
        self.counters.skipped += 1
        self.skip_reasons[reason.value if isinstance(reason, SkipReason) else reason] += 1
        if sample:
            self.add_sample(sample)

    def record_outcome(self, outcome: PersistOutcome, reason: str | None = None, error: str | None = None) -> None:
        if outcome == PersistOutcome.CREATED:
            self.counters.created += 1
        elif outcome == PersistOutcome.UPDATED:
            self.counters.updated += 1
        elif outcome == PersistOutcome.BLOCKED:
            self.counters.blocked += 1
        elif outcome == PersistOutcome.SKIPPED:
            self.record_skip(reason or "unspecified")
        else:
            self.counters.errored += 1
            self.add_sample(error or "unknown error")


class AuditLogger:
    """Persists IngestionRun rows and serves the run history."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock

    def begin_run(
        self,
        trigger_source: TriggerSource,
        correlation_id: str | None = None,
    ) -> RunHandle:
        """
        Reserve the single-flight slot by creating a 'running' row.

        Raises:
            RunInProgress: If another run already holds the slot
        """
        handle = RunHandle(
            correlation_id=correlation_id or str(uuid.uuid4()),
            trigger_source=trigger_source,
            started_at=self.clock(),
        )
        try:
            with self.session_factory() as session:
                repo = IngestionRunRepository(session)
                try:
                    repo.create_running(handle.correlation_id, trigger_source, handle.started_at)
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    running = repo.get_running()
                    raise RunInProgress(running.correlation_id if running else None) from None
        except SQLAlchemyError as e:
            _stderr(f"could not record start of run {handle.correlation_id}: {e}")
            logger.error(f"Audit store unavailable at run start: {e}")
            handle.persisted = False
        return handle

    def finish_run(
        self,
        handle: RunHandle,
        status: RunStatus,
        tally: RunTally,
        error_summary: str | None = None,
    ) -> IngestionRun | None:
        """Record the run's terminal state. Never raises."""
        logger.info(
            f"Run finished: status={status.value} scanned={tally.counters.scanned} "
            f"created={tally.counters.created} updated={tally.counters.updated} "
            f"blocked={tally.counters.blocked} skipped={tally.counters.skipped} "
            f"errored={tally.counters.errored}"
        )
        if not handle.persisted:
            _stderr(f"run {handle.correlation_id} finished {status.value} but was not recorded")
            return None
        try:
            with self.session_factory() as session:
                run = IngestionRunRepository(session).finish(
                    handle.correlation_id,
                    status,
                    tally.counters,
                    skip_reasons=dict(tally.skip_reasons),
                    error_samples=tally.error_samples,
                    error_summary=error_summary,
                    deactivated=tally.deactivated,
                    completed_at=self.clock(),
                )
                session.commit()
                return run
        except SQLAlchemyError as e:
            _stderr(f"could not record end of run {handle.correlation_id}: {e}")
            logger.error(f"Audit store unavailable at run end: {e}")
            return None

    def recover_stale_runs(self) -> int:
        """Fail runs left 'running' by a previous process. Never raises."""
        try:
            with self.session_factory() as session:
                count = IngestionRunRepository(session).mark_interrupted()
                session.commit()
        except SQLAlchemyError as e:
            _stderr(f"could not recover stale runs: {e}")
            return 0
        if count:
            logger.warning(f"Marked {count} interrupted run(s) as failed")
        return count

    def current_run(self) -> IngestionRun | None:
        with self.session_factory() as session:
            return IngestionRunRepository(session).get_running()

    def get_run(self, correlation_id: str) -> IngestionRun | None:
        with self.session_factory() as session:
            return IngestionRunRepository(session).get_by_correlation_id(correlation_id)

    def list_recent(self, limit: int = 10) -> list[IngestionRun]:
        """Runs ordered by start time, newest first."""
        with self.session_factory() as session:
            return IngestionRunRepository(session).list_recent(limit)

    def last_success_within(self, hours: float) -> IngestionRun | None:
        """The latest 'ok' run if it completed within ``hours``."""
        with self.session_factory() as session:
            run = IngestionRunRepository(session).last_successful()
        if run is None or run.completed_at is None:
            return None
        if run.completed_at >= self.clock() - timedelta(hours=hours):
            return run
        return None

    def get_stats(self, window_days: int = 30) -> RunStats:
        """
        Aggregate finished runs started within the trailing window.

        A run counts as successful only with status 'ok'.
        """
        cutoff = self.clock() - timedelta(days=window_days)
        with self.session_factory() as session:
            runs = IngestionRunRepository(session).list_since(cutoff)

        finished = [r for r in runs if r.status != RunStatus.RUNNING]
        successes = [r for r in finished if r.status == RunStatus.OK]
        partials = [r for r in finished if r.status == RunStatus.PARTIAL]
        failures = [r for r in finished if r.status == RunStatus.FAILED]

        def latest(items: list[IngestionRun]) -> datetime | None:
            stamps = [r.completed_at or r.started_at for r in items]
            return max(stamps) if stamps else None

        return RunStats(
            window_days=window_days,
            total_runs=len(finished),
            successful_runs=len(successes),
            partial_runs=len(partials),
            failed_runs=len(failures),
            success_rate=round(len(successes) / len(finished), 4) if finished else 0.0,
            last_success_at=latest(successes),
            last_failure_at=latest(failures),
        )
