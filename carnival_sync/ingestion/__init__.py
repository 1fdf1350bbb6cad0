"""
Carnival Sync Ingestion Pipeline
================================

Imports Masters Rugby League carnivals from MySideline into the
canonical carnival store.

Pipeline Stages:
1. Fetch - Listing and detail pages with retry, backoff and polite spacing
2. Parse - Listing cards (HTML) or registration-search JSON into raw candidates
3. Enrich - Detail pages on a bounded worker pool, output in listing order
4. Normalize - State codes, Sydney calendar dates, contacts, fingerprint
5. Reconcile - Classify against a store snapshot (create/update/blocked/skip)
6. Persist - One transaction per candidate
7. Audit - IngestionRun rows with counters and error samples
"""

from carnival_sync.ingestion.audit import AuditLogger, RunHandle, RunTally
from carnival_sync.ingestion.enricher import (
    DetailEnricher,
    DetailParser,
    DetailRecord,
    EnrichedCandidate,
)
from carnival_sync.ingestion.fetcher import Fetcher, RequestSpacer, cancellable_sleep
from carnival_sync.ingestion.normalizer import Candidate, Normalizer
from carnival_sync.ingestion.parser import ListingParser, ListingParseResult, RawCandidate
from carnival_sync.ingestion.persister import Persister, PersistResult
from carnival_sync.ingestion.pipeline import IngestionPipeline
from carnival_sync.ingestion.reconciler import (
    Classification,
    Create,
    Reconciler,
    Skip,
    StoreSnapshot,
    UpdateBlocked,
    UpdateSafe,
)
from carnival_sync.ingestion.scheduler import SyncScheduler

__all__ = [
    # Fetch
    "Fetcher",
    "RequestSpacer",
    "cancellable_sleep",
    # Parse
    "ListingParser",
    "ListingParseResult",
    "RawCandidate",
    # Enrich
    "DetailEnricher",
    "DetailParser",
    "DetailRecord",
    "EnrichedCandidate",
    # Normalize
    "Candidate",
    "Normalizer",
    # Reconcile
    "Classification",
    "Create",
    "Reconciler",
    "Skip",
    "StoreSnapshot",
    "UpdateBlocked",
    "UpdateSafe",
    # Persist
    "Persister",
    "PersistResult",
    # Audit
    "AuditLogger",
    "RunHandle",
    "RunTally",
    # Orchestration
    "IngestionPipeline",
    "SyncScheduler",
]
