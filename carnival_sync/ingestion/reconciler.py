"""
Reconciler Module
=================

Classifies normalized candidates against a snapshot of the carnival
store. Classification is pure: it reads the snapshot taken at the start
of reconciliation and never the rows written earlier in the same run.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date as calendar_date
from datetime import timedelta
from typing import Any

from sqlalchemy.orm import Session

from carnival_sync.core.config import PipelineConfig
from carnival_sync.core.enums import BlockReason, ClassificationKind, SkipReason
from carnival_sync.core.schema import Carnival
from carnival_sync.db.repositories import MANAGED_FIELDS, CarnivalRepository
from carnival_sync.ingestion.normalizer import Candidate, Normalizer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Create:
    candidate: Candidate
    kind: ClassificationKind = ClassificationKind.CREATE


@dataclass(frozen=True)
class UpdateSafe:
    """Patch a pipeline-owned row; ``set_source_id`` links a fingerprint match."""

    candidate: Candidate
    row_id: str
    patch: dict[str, Any]
    set_source_id: bool = False
    kind: ClassificationKind = ClassificationKind.UPDATE_SAFE


@dataclass(frozen=True)
class UpdateBlocked:
    candidate: Candidate
    row_id: str
    reason: BlockReason = BlockReason.MANUAL_OWNED
    kind: ClassificationKind = ClassificationKind.UPDATE_BLOCKED


@dataclass(frozen=True)
class Skip:
    candidate: Candidate
    reason: SkipReason
    row_id: str | None = None
    kind: ClassificationKind = ClassificationKind.SKIP


Classification = Create | UpdateSafe | UpdateBlocked | Skip


@dataclass
class StoreSnapshot:
    """
    The rows reconciliation may match against.

    ``by_source_id`` holds rows matching this run's source ids;
    ``by_fingerprint`` groups rows without a source id.
    """

    by_source_id: dict[str, Carnival] = field(default_factory=dict)
    by_fingerprint: dict[str, list[Carnival]] = field(default_factory=dict)

    @classmethod
    def load(
        cls,
        session: Session,
        source_ids: Iterable[str],
        normalizer: Normalizer | None = None,
    ) -> StoreSnapshot:
        """Read the snapshot for a batch of candidates."""
        normalizer = normalizer or Normalizer()
        repo = CarnivalRepository(session)
        snapshot = cls(by_source_id=repo.find_by_source_ids(source_ids))
        for row in repo.list_unsourced():
            fingerprint = normalizer.fingerprint(normalizer.canonical_title(row.title), row.state, row.date)
            if fingerprint is not None:
                snapshot.by_fingerprint.setdefault(fingerprint, []).append(row)
        return snapshot


def compute_patch(candidate: Candidate, row: Carnival) -> tuple[dict[str, Any], list[str]]:
    """
    Work out which managed fields the candidate would change.

    Absent candidate values never clear stored values.

    Returns:
        Tuple of (patch for unlocked fields, names of changed fields that are locked)
    """
    values = candidate.field_values()
    patch: dict[str, Any] = {}
    locked_changes: list[str] = []
    for name in MANAGED_FIELDS:
        value = values[name]
        if value is None or value == getattr(row, name):
            continue
        if name in row.manual_override_fields:
            locked_changes.append(name)
        else:
            patch[name] = value
    return patch, locked_changes


class Reconciler:
    """
    Decides create / update-safe / update-blocked / skip for each candidate.

    Deterministic for a given candidate order and snapshot.
    """

    def __init__(
        self,
        config: PipelineConfig,
        today: Callable[[], calendar_date],
    ) -> None:
        """
        Args:
            config: Pipeline configuration (stale threshold)
            today: Returns the current calendar date in the pipeline timezone
        """
        self.config = config
        self.today = today

    def stale_cutoff(self) -> calendar_date:
        return self.today() - timedelta(days=self.config.stale_days)

    def classify_all(self, candidates: Sequence[Candidate], snapshot: StoreSnapshot) -> list[Classification]:
        """Classify a batch in order against one snapshot."""
        cutoff = self.stale_cutoff()
        claimed: set[str] = set()
        return [self.classify(c, snapshot, cutoff, claimed) for c in candidates]

    def classify(
        self,
        candidate: Candidate,
        snapshot: StoreSnapshot,
        cutoff: calendar_date | None = None,
        claimed: set[str] | None = None,
    ) -> Classification:
        """
        Classify one candidate.

        Args:
            candidate: The normalized candidate
            snapshot: Store snapshot for the run
            cutoff: Dates before this are stale (defaults to today - stale_days)
            claimed: Row ids already linked by fingerprint earlier in the run
        """
        if candidate.state is None:
            return Skip(candidate, SkipReason.NO_STATE)
        if candidate.date is None:
            return Skip(candidate, SkipReason.NO_DATE)
        if candidate.date < (cutoff or self.stale_cutoff()):
            return Skip(candidate, SkipReason.STALE)

        row = snapshot.by_source_id.get(candidate.source_id)
        if row is not None:
            return self._classify_existing(candidate, row)

        if candidate.fingerprint is not None:
            matches = snapshot.by_fingerprint.get(candidate.fingerprint, [])
            if len(matches) > 1:
                logger.info(f"Candidate {candidate.source_id} matches {len(matches)} rows by fingerprint")
                return Skip(candidate, SkipReason.AMBIGUOUS)
            if len(matches) == 1:
                match = matches[0]
                if claimed is not None:
                    if match.id in claimed:
                        return Skip(candidate, SkipReason.AMBIGUOUS, row_id=match.id)
                    claimed.add(match.id)
                if match.is_manually_entered:
                    return UpdateBlocked(candidate, match.id)
                patch, _locked = compute_patch(candidate, match)
                return UpdateSafe(candidate, match.id, patch, set_source_id=True)

        return Create(candidate)

    def _classify_existing(self, candidate: Candidate, row: Carnival) -> Classification:
        if row.is_manually_entered:
            return UpdateBlocked(candidate, row.id)

        patch, locked_changes = compute_patch(candidate, row)
        if patch:
            return UpdateSafe(candidate, row.id, patch)
        if locked_changes:
            return Skip(candidate, SkipReason.FIELD_LOCKED, row_id=row.id)
        return Skip(candidate, SkipReason.NO_CHANGE, row_id=row.id)
