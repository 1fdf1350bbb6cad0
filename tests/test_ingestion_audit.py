"""Tests for the run audit log."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from carnival_sync.core.enums import PersistOutcome, RunStatus, SkipReason, TriggerSource
from carnival_sync.core.errors import RunInProgress
from carnival_sync.db.engine import create_db_engine
from carnival_sync.ingestion.audit import AuditLogger, RunTally
from conftest import FIXED_NOW


class MutableClock:
    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def audit(session_factory, clock) -> AuditLogger:
    return AuditLogger(session_factory, clock=clock)


def finish_at(audit: AuditLogger, clock: MutableClock, when: datetime, status: RunStatus) -> str:
    clock.now = when
    handle = audit.begin_run(TriggerSource.SCHEDULED)
    audit.finish_run(handle, status, RunTally())
    return handle.correlation_id


class TestRunTally:
    def test_counts_outcomes(self) -> None:
        tally = RunTally()
        tally.record_outcome(PersistOutcome.CREATED)
        tally.record_outcome(PersistOutcome.UPDATED)
        tally.record_outcome(PersistOutcome.BLOCKED, "manual-owned")
        tally.record_outcome(PersistOutcome.SKIPPED, "no-change")
        tally.record_outcome(PersistOutcome.ERRORED, error="B: boom")

        assert tally.counters.created == 1
        assert tally.counters.updated == 1
        assert tally.counters.blocked == 1
        assert tally.counters.skipped == 1
        assert tally.counters.errored == 1
        assert tally.skip_reasons == {"no-change": 1}
        assert tally.error_samples == ["B: boom"]

    def test_sample_limit(self) -> None:
        tally = RunTally(sample_limit=2)
        for n in range(5):
            tally.record_skip(SkipReason.NO_STATE, sample=f"sample {n}")

        assert tally.error_samples == ["sample 0", "sample 1"]
        assert tally.counters.skipped == 5
        assert tally.skip_reasons["no-state"] == 5


class TestRunLifecycle:
    """Tests for begin/finish and single-flight."""

    def test_begin_and_finish(self, audit: AuditLogger) -> None:
        handle = audit.begin_run(TriggerSource.MANUAL)

        running = audit.current_run()
        assert running is not None
        assert running.correlation_id == handle.correlation_id
        assert running.status == RunStatus.RUNNING

        tally = RunTally()
        tally.counters.scanned = 2
        tally.record_outcome(PersistOutcome.CREATED)
        tally.record_outcome(PersistOutcome.SKIPPED, "stale")
        run = audit.finish_run(handle, RunStatus.OK, tally)

        assert run.status == RunStatus.OK
        assert run.completed_at == FIXED_NOW
        assert run.counters.scanned == 2
        assert run.counters.created == 1
        assert run.skip_reasons == {"stale": 1}
        assert audit.current_run() is None
        assert audit.get_run(handle.correlation_id).trigger_source == TriggerSource.MANUAL

    def test_second_begin_is_rejected(self, audit: AuditLogger) -> None:
        first = audit.begin_run(TriggerSource.SCHEDULED)

        with pytest.raises(RunInProgress) as exc_info:
            audit.begin_run(TriggerSource.MANUAL)

        assert exc_info.value.correlation_id == first.correlation_id

    def test_begin_after_finish(self, audit: AuditLogger) -> None:
        first = audit.begin_run(TriggerSource.SCHEDULED)
        audit.finish_run(first, RunStatus.FAILED, RunTally(), "listing fetch failed")

        second = audit.begin_run(TriggerSource.MANUAL)

        assert second.correlation_id != first.correlation_id
        assert audit.get_run(first.correlation_id).error_summary == "listing fetch failed"

    def test_recover_stale_runs(self, audit: AuditLogger) -> None:
        handle = audit.begin_run(TriggerSource.STARTUP)

        assert audit.recover_stale_runs() == 1

        run = audit.get_run(handle.correlation_id)
        assert run.status == RunStatus.FAILED
        assert run.error_summary == "interrupted"
        assert audit.recover_stale_runs() == 0
        audit.begin_run(TriggerSource.MANUAL)

    def test_list_recent_newest_first(self, audit: AuditLogger, clock: MutableClock) -> None:
        ids = [finish_at(audit, clock, FIXED_NOW + timedelta(minutes=n), RunStatus.OK) for n in range(3)]

        runs = audit.list_recent(limit=2)

        assert [r.correlation_id for r in runs] == [ids[2], ids[1]]

    def test_get_unknown_run(self, audit: AuditLogger) -> None:
        assert audit.get_run("missing") is None


class TestUnavailableStore:
    """Audit failures never reach the pipeline."""

    @pytest.fixture
    def broken_audit(self, tmp_path) -> AuditLogger:
        # No tables: every statement fails with OperationalError
        engine = create_db_engine(tmp_path / "empty.db")
        return AuditLogger(sessionmaker(bind=engine))

    def test_begin_degrades(self, broken_audit: AuditLogger, capsys) -> None:
        handle = broken_audit.begin_run(TriggerSource.MANUAL)

        assert handle.persisted is False
        assert "could not record start" in capsys.readouterr().err

    def test_finish_does_not_raise(self, broken_audit: AuditLogger, capsys) -> None:
        handle = broken_audit.begin_run(TriggerSource.MANUAL)
        capsys.readouterr()

        assert broken_audit.finish_run(handle, RunStatus.OK, RunTally()) is None
        assert "was not recorded" in capsys.readouterr().err

    def test_recover_does_not_raise(self, broken_audit: AuditLogger) -> None:
        assert broken_audit.recover_stale_runs() == 0


class TestStats:
    """Tests for run statistics."""

    def test_empty_window(self, audit: AuditLogger) -> None:
        stats = audit.get_stats(30)
        assert stats.total_runs == 0
        assert stats.success_rate == 0.0
        assert stats.last_success_at is None

    def test_window_aggregates(self, audit: AuditLogger, clock: MutableClock) -> None:
        finish_at(audit, clock, FIXED_NOW - timedelta(days=40), RunStatus.OK)
        finish_at(audit, clock, FIXED_NOW - timedelta(days=5), RunStatus.OK)
        finish_at(audit, clock, FIXED_NOW - timedelta(days=3), RunStatus.FAILED)
        finish_at(audit, clock, FIXED_NOW - timedelta(days=1), RunStatus.PARTIAL)
        clock.now = FIXED_NOW
        audit.begin_run(TriggerSource.MANUAL)

        stats = audit.get_stats(30)

        assert stats.window_days == 30
        assert stats.total_runs == 3
        assert stats.successful_runs == 1
        assert stats.failed_runs == 1
        assert stats.partial_runs == 1
        assert stats.success_rate == pytest.approx(0.3333)
        assert stats.last_success_at == FIXED_NOW - timedelta(days=5)
        assert stats.last_failure_at == FIXED_NOW - timedelta(days=3)

    def test_last_success_within(self, audit: AuditLogger, clock: MutableClock) -> None:
        cid = finish_at(audit, clock, FIXED_NOW - timedelta(hours=3), RunStatus.OK)
        clock.now = FIXED_NOW

        assert audit.last_success_within(6).correlation_id == cid
        assert audit.last_success_within(2) is None
