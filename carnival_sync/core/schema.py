"""Pydantic v2 models for carnivals and ingestion runs."""

from datetime import UTC, datetime
from datetime import date as calendar_date

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from carnival_sync.core.enums import AustralianState, RunStatus, TriggerSource


def _utc_now() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(UTC)


class CamelModel(BaseModel):
    """Base model serialised with camelCase keys for the operator API."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Carnival(CamelModel):
    """
    Canonical carnival record as seen by the pipeline.

    Only the columns the pipeline reads or writes are represented.
    """

    id: str
    source_id: str | None = None
    title: str = ""
    date: calendar_date | None = None
    state: AustralianState | None = None
    location_address: str | None = None
    registration_link: str | None = None
    organiser_contact_email: str | None = None
    organiser_contact_name: str | None = None
    organiser_contact_phone: str | None = None
    logo_url: str | None = None
    description: str | None = None
    is_manually_entered: bool = False
    last_imported_at: datetime | None = None
    is_active: bool = True
    manual_override_fields: frozenset[str] = Field(default_factory=frozenset)


class RunCounters(CamelModel):
    """Per-run tallies."""

    scanned: int = 0
    created: int = 0
    updated: int = 0
    blocked: int = 0
    skipped: int = 0
    errored: int = 0


class IngestionRun(CamelModel):
    """One execution of the ingestion pipeline."""

    id: str
    correlation_id: str
    status: RunStatus = RunStatus.RUNNING
    trigger_source: TriggerSource = TriggerSource.MANUAL
    started_at: datetime = Field(default_factory=_utc_now)
    completed_at: datetime | None = None
    counters: RunCounters = Field(default_factory=RunCounters)
    skip_reasons: dict[str, int] = Field(default_factory=dict)
    error_samples: list[str] = Field(default_factory=list)
    error_summary: str | None = None
    deactivated: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.completed_at is not None


class RunStats(CamelModel):
    """Aggregate run statistics over a trailing window."""

    window_days: int
    total_runs: int = 0
    successful_runs: int = 0
    partial_runs: int = 0
    failed_runs: int = 0
    success_rate: float = 0.0
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None


class TriggerResult(CamelModel):
    """Outcome of asking for an immediate run."""

    accepted: bool
    correlation_id: str | None = None
    reason: str | None = None


class SchedulerStatus(CamelModel):
    """Snapshot of the scheduler for the admin UI."""

    enabled: bool
    running_correlation_id: str | None = None
    next_run_at: datetime | None = None
    schedule: str
    timezone: str
