"""Repository classes for database operations."""

import json
import re
from collections.abc import Iterable, Mapping
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from carnival_sync.core.enums import AustralianState, RunStatus, TriggerSource
from carnival_sync.core.schema import Carnival, IngestionRun, RunCounters
from carnival_sync.db.models import CarnivalDB, IngestionRunDB

# Carnival columns the pipeline may write, in patch order
MANAGED_FIELDS: tuple[str, ...] = (
    "title",
    "date",
    "state",
    "location_address",
    "registration_link",
    "organiser_contact_email",
    "organiser_contact_name",
    "organiser_contact_phone",
    "logo_url",
    "description",
)

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on read; stored values are always UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def normalize_field_name(name: str) -> str:
    """Map a website field name (camelCase or snake_case) to a column name."""
    return _CAMEL_BOUNDARY.sub("_", name.strip()).lower()


class CarnivalRepository:
    """Repository for the pipeline-managed subset of carnival rows."""

    def __init__(self, session: Session):
        self.session = session

    def get_row(self, carnival_id: str) -> CarnivalDB | None:
        """Get the ORM row for a carnival, for writing."""
        return self.session.get(CarnivalDB, carnival_id)

    def get_by_id(self, carnival_id: str) -> Carnival | None:
        db_item = self.get_row(carnival_id)
        return self._to_domain(db_item) if db_item else None

    def get_by_source_id(self, source_id: str) -> Carnival | None:
        """
        Get a carnival by its MySideline identifier.

        Args:
            source_id: The MySideline record id.

        Returns:
            The Carnival if found, None otherwise.
        """
        stmt = select(CarnivalDB).where(CarnivalDB.source_id == source_id)
        db_item = self.session.execute(stmt).scalar_one_or_none()
        return self._to_domain(db_item) if db_item else None

    def find_by_source_ids(self, source_ids: Iterable[str]) -> dict[str, Carnival]:
        """Get all carnivals whose source id is in ``source_ids``, keyed by source id."""
        ids = list(dict.fromkeys(source_ids))
        found: dict[str, Carnival] = {}
        # Chunked to stay under SQLite's bound-parameter limit
        for start in range(0, len(ids), 500):
            chunk = ids[start : start + 500]
            stmt = select(CarnivalDB).where(CarnivalDB.source_id.in_(chunk))
            for db_item in self.session.execute(stmt).scalars():
                found[db_item.source_id] = self._to_domain(db_item)
        return found

    def list_unsourced(self) -> list[Carnival]:
        """List carnivals with no MySideline id that could be fingerprint-matched."""
        stmt = (
            select(CarnivalDB)
            .where(CarnivalDB.source_id.is_(None))
            .where(CarnivalDB.date.is_not(None))
            .where(CarnivalDB.state.is_not(None))
        )
        return [self._to_domain(row) for row in self.session.execute(stmt).scalars()]

    def create(self, values: Mapping[str, Any], imported_at: datetime | None = None) -> Carnival:
        """
        Insert a pipeline-owned carnival.

        Args:
            values: Managed field values plus ``source_id``.
            imported_at: Import timestamp (defaults to now).

        Returns:
            The created Carnival.
        """
        data = {k: v for k, v in values.items() if k in MANAGED_FIELDS}
        if isinstance(data.get("state"), AustralianState):
            data["state"] = data["state"].value
        db_item = CarnivalDB(
            source_id=values.get("source_id"),
            is_manually_entered=False,
            manual_override_fields_json="[]",
            is_active=True,
            last_imported_at=imported_at or _utc_now(),
            **data,
        )
        self.session.add(db_item)
        self.session.flush()
        return self._to_domain(db_item)

    def apply_patch(
        self,
        db_item: CarnivalDB,
        patch: Mapping[str, Any],
        imported_at: datetime | None = None,
    ) -> list[str]:
        """
        Apply an import patch to a row, honouring its current locks.

        Locks are re-read from the row so edits the website made after
        classification still win.

        Args:
            db_item: The row to update.
            patch: Field values keyed by column name (``source_id`` allowed).
            imported_at: Import timestamp (defaults to now).

        Returns:
            Names of the fields that were written.
        """
        locked = {normalize_field_name(f) for f in db_item.manual_override_fields}
        written: list[str] = []
        for field_name, value in patch.items():
            if field_name == "source_id":
                if db_item.source_id is None:
                    db_item.source_id = value
                    written.append(field_name)
                continue
            if field_name not in MANAGED_FIELDS or field_name in locked:
                continue
            if isinstance(value, AustralianState):
                value = value.value
            setattr(db_item, field_name, value)
            written.append(field_name)
        db_item.last_imported_at = imported_at or _utc_now()
        self.session.flush()
        return written

    def deactivate_past(self, today: date) -> int:
        """
        Deactivate active, pipeline-owned carnivals dated before ``today``.

        Rows that are manually entered, or whose ``is_active`` flag is
        manually overridden, are left alone.

        Returns:
            Number of rows deactivated.
        """
        stmt = (
            select(CarnivalDB)
            .where(CarnivalDB.is_active.is_(True))
            .where(CarnivalDB.is_manually_entered.is_(False))
            .where(CarnivalDB.date < today)
        )
        count = 0
        for db_item in self.session.execute(stmt).scalars():
            locked = {normalize_field_name(f) for f in db_item.manual_override_fields}
            if "is_active" in locked:
                continue
            db_item.is_active = False
            count += 1
        self.session.flush()
        return count

    def _to_domain(self, db_item: CarnivalDB) -> Carnival:
        """Convert database model to domain model."""
        return Carnival(
            id=db_item.id,
            source_id=db_item.source_id,
            title=db_item.title or "",
            date=db_item.date,
            state=AustralianState(db_item.state) if db_item.state in AustralianState.__members__ else None,
            location_address=db_item.location_address,
            registration_link=db_item.registration_link,
            organiser_contact_email=db_item.organiser_contact_email,
            organiser_contact_name=db_item.organiser_contact_name,
            organiser_contact_phone=db_item.organiser_contact_phone,
            logo_url=db_item.logo_url,
            description=db_item.description,
            is_manually_entered=bool(db_item.is_manually_entered),
            last_imported_at=_as_utc(db_item.last_imported_at),
            is_active=bool(db_item.is_active),
            manual_override_fields=frozenset(
                normalize_field_name(f) for f in db_item.manual_override_fields
            ),
        )


class IngestionRunRepository:
    """Repository for IngestionRun rows."""

    def __init__(self, session: Session):
        self.session = session

    def create_running(
        self,
        correlation_id: str,
        trigger_source: TriggerSource,
        started_at: datetime | None = None,
    ) -> IngestionRun:
        """
        Insert a run in 'running' state.

        Raises sqlalchemy.exc.IntegrityError if another run is running.
        """
        db_item = IngestionRunDB(
            correlation_id=correlation_id,
            status=RunStatus.RUNNING.value,
            trigger_source=trigger_source.value,
            started_at=started_at or _utc_now(),
        )
        self.session.add(db_item)
        self.session.flush()
        return self._to_domain(db_item)

    def get_running(self) -> IngestionRun | None:
        stmt = select(IngestionRunDB).where(IngestionRunDB.status == RunStatus.RUNNING.value)
        db_item = self.session.execute(stmt).scalars().first()
        return self._to_domain(db_item) if db_item else None

    def get_by_correlation_id(self, correlation_id: str) -> IngestionRun | None:
        stmt = select(IngestionRunDB).where(IngestionRunDB.correlation_id == correlation_id)
        db_item = self.session.execute(stmt).scalar_one_or_none()
        return self._to_domain(db_item) if db_item else None

    def finish(
        self,
        correlation_id: str,
        status: RunStatus,
        counters: RunCounters,
        skip_reasons: Mapping[str, int] | None = None,
        error_samples: list[str] | None = None,
        error_summary: str | None = None,
        deactivated: int = 0,
        completed_at: datetime | None = None,
    ) -> IngestionRun | None:
        """
        Record a run's terminal state.

        Returns:
            The updated IngestionRun, or None if no such run exists.
        """
        stmt = select(IngestionRunDB).where(IngestionRunDB.correlation_id == correlation_id)
        db_item = self.session.execute(stmt).scalar_one_or_none()
        if db_item is None:
            return None

        db_item.status = status.value
        db_item.completed_at = completed_at or _utc_now()
        db_item.scanned = counters.scanned
        db_item.created = counters.created
        db_item.updated = counters.updated
        db_item.blocked = counters.blocked
        db_item.skipped = counters.skipped
        db_item.errored = counters.errored
        db_item.deactivated = deactivated
        db_item.skip_reasons_json = json.dumps(dict(skip_reasons or {}))
        db_item.error_samples_json = json.dumps(list(error_samples or []))
        db_item.error_summary = error_summary
        self.session.flush()
        return self._to_domain(db_item)

    def list_recent(self, limit: int = 10) -> list[IngestionRun]:
        """List runs, newest first."""
        stmt = select(IngestionRunDB).order_by(IngestionRunDB.started_at.desc()).limit(limit)
        return [self._to_domain(row) for row in self.session.execute(stmt).scalars()]

    def list_since(self, cutoff: datetime) -> list[IngestionRun]:
        """List runs started at or after ``cutoff``, newest first."""
        stmt = (
            select(IngestionRunDB)
            .where(IngestionRunDB.started_at >= cutoff.astimezone(UTC).replace(tzinfo=None))
            .order_by(IngestionRunDB.started_at.desc())
        )
        return [self._to_domain(row) for row in self.session.execute(stmt).scalars()]

    def last_successful(self) -> IngestionRun | None:
        stmt = (
            select(IngestionRunDB)
            .where(IngestionRunDB.status == RunStatus.OK.value)
            .order_by(IngestionRunDB.completed_at.desc())
            .limit(1)
        )
        db_item = self.session.execute(stmt).scalar_one_or_none()
        return self._to_domain(db_item) if db_item else None

    def mark_interrupted(self, summary: str = "interrupted") -> int:
        """
        Fail any run left in 'running' state by a process that died.

        Returns:
            Number of runs released.
        """
        result = self.session.execute(
            update(IngestionRunDB)
            .where(IngestionRunDB.status == RunStatus.RUNNING.value)
            .values(
                status=RunStatus.FAILED.value,
                completed_at=_utc_now().replace(tzinfo=None),
                error_summary=summary,
            )
        )
        self.session.flush()
        return result.rowcount or 0

    def _to_domain(self, db_item: IngestionRunDB) -> IngestionRun:
        """Convert database model to domain model."""
        return IngestionRun(
            id=db_item.id,
            correlation_id=db_item.correlation_id,
            status=RunStatus(db_item.status),
            trigger_source=TriggerSource(db_item.trigger_source),
            started_at=_as_utc(db_item.started_at),
            completed_at=_as_utc(db_item.completed_at),
            counters=RunCounters(
                scanned=db_item.scanned or 0,
                created=db_item.created or 0,
                updated=db_item.updated or 0,
                blocked=db_item.blocked or 0,
                skipped=db_item.skipped or 0,
                errored=db_item.errored or 0,
            ),
            skip_reasons=json.loads(db_item.skip_reasons_json or "{}"),
            error_samples=json.loads(db_item.error_samples_json or "[]"),
            error_summary=db_item.error_summary,
            deactivated=db_item.deactivated or 0,
        )
