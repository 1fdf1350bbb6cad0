"""
Persister Module
================

Applies classifications to the carnival store, one transaction per
candidate. A failed candidate is rolled back and counted as errored;
it never aborts the run.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from carnival_sync.core.enums import PersistOutcome, SkipReason
from carnival_sync.core.errors import PersistError
from carnival_sync.db.repositories import CarnivalRepository
from carnival_sync.ingestion.reconciler import (
    Classification,
    Create,
    Reconciler,
    Skip,
    StoreSnapshot,
    UpdateBlocked,
    UpdateSafe,
)

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


@dataclass
class PersistResult:
    """What happened to one candidate."""

    outcome: PersistOutcome
    source_id: str
    row_id: str | None = None
    reason: str | None = None
    error: str | None = None
    written_fields: tuple[str, ...] = ()


class Persister:
    """
    Writes classified candidates.

    A unique-constraint violation on ``source_id`` (another writer got
    there first) is retried once after re-reading the row and
    re-classifying against it.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        reconciler: Reconciler,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.reconciler = reconciler
        self.clock = clock

    def apply(self, classification: Classification) -> PersistResult:
        """
        Apply one classification.

        Returns:
            PersistResult; errors are reported in it, never raised
        """
        source_id = classification.candidate.source_id
        try:
            return self._write(classification)
        except IntegrityError as e:
            logger.warning(f"Unique constraint hit for {source_id}; re-reading and retrying once")
            logger.debug(f"IntegrityError detail: {e}")
        except (SQLAlchemyError, PersistError) as e:
            logger.error(f"Persist failed for {source_id}: {e}")
            return PersistResult(PersistOutcome.ERRORED, source_id, error=f"{source_id}: {e}")

        try:
            return self._write(self._reclassify(classification))
        except (SQLAlchemyError, PersistError) as e:
            logger.error(f"Persist retry failed for {source_id}: {e}")
            return PersistResult(PersistOutcome.ERRORED, source_id, error=f"{source_id}: persist failed after retry")

    def _reclassify(self, classification: Classification) -> Classification:
        candidate = classification.candidate
        with self.session_factory() as session:
            current = CarnivalRepository(session).get_by_source_id(candidate.source_id)
        snapshot = StoreSnapshot(by_source_id={candidate.source_id: current} if current else {})
        return self.reconciler.classify(candidate, snapshot)

    def _write(self, classification: Classification) -> PersistResult:
        candidate = classification.candidate
        source_id = candidate.source_id

        if isinstance(classification, Skip):
            return PersistResult(
                PersistOutcome.SKIPPED, source_id, classification.row_id, reason=classification.reason.value
            )
        if isinstance(classification, UpdateBlocked):
            return PersistResult(
                PersistOutcome.BLOCKED, source_id, classification.row_id, reason=classification.reason.value
            )

        with self.session_factory() as session:
            try:
                repo = CarnivalRepository(session)
                now = self.clock()

                if isinstance(classification, Create):
                    values = dict(candidate.field_values(), source_id=source_id)
                    created = repo.create(values, imported_at=now)
                    session.commit()
                    logger.info(f"Created carnival {created.id} for {source_id}")
                    return PersistResult(PersistOutcome.CREATED, source_id, created.id)

                assert isinstance(classification, UpdateSafe)
                db_item = repo.get_row(classification.row_id)
                if db_item is None:
                    raise PersistError(f"carnival {classification.row_id} no longer exists")

                # Ownership may have changed since the snapshot
                if db_item.is_manually_entered:
                    session.rollback()
                    return PersistResult(PersistOutcome.BLOCKED, source_id, db_item.id, reason="manual-owned")
                if classification.set_source_id and db_item.source_id not in (None, source_id):
                    session.rollback()
                    return PersistResult(
                        PersistOutcome.SKIPPED, source_id, db_item.id, reason=SkipReason.AMBIGUOUS.value
                    )

                patch = dict(classification.patch)
                if classification.set_source_id:
                    patch["source_id"] = source_id
                written = repo.apply_patch(db_item, patch, imported_at=now)
                session.commit()
                logger.info(f"Updated carnival {db_item.id} for {source_id}: {', '.join(written) or 'no fields'}")
                return PersistResult(PersistOutcome.UPDATED, source_id, db_item.id, written_fields=tuple(written))
            except (SQLAlchemyError, PersistError):
                session.rollback()
                raise
