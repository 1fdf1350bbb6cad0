"""Enums for carnival ingestion fields."""

from enum import Enum


class AustralianState(str, Enum):
    """Australian state and territory codes."""

    NSW = "NSW"
    QLD = "QLD"
    VIC = "VIC"
    WA = "WA"
    SA = "SA"
    TAS = "TAS"
    NT = "NT"
    ACT = "ACT"


STATE_NAMES: dict[str, AustralianState] = {
    "new south wales": AustralianState.NSW,
    "queensland": AustralianState.QLD,
    "victoria": AustralianState.VIC,
    "western australia": AustralianState.WA,
    "south australia": AustralianState.SA,
    "tasmania": AustralianState.TAS,
    "northern territory": AustralianState.NT,
    "australian capital territory": AustralianState.ACT,
}


class RunStatus(str, Enum):
    """Lifecycle status of an ingestion run."""

    RUNNING = "running"
    OK = "ok"
    PARTIAL = "partial"
    FAILED = "failed"


class TriggerSource(str, Enum):
    """What started an ingestion run."""

    SCHEDULED = "scheduled"
    STARTUP = "startup"
    MANUAL = "manual"
    CLI = "cli"


class ClassificationKind(str, Enum):
    """Reconciler decision for a candidate."""

    CREATE = "create"
    UPDATE_SAFE = "update-safe"
    UPDATE_BLOCKED = "update-blocked"
    SKIP = "skip"


class SkipReason(str, Enum):
    """Why a candidate produced no write."""

    NO_CHANGE = "no-change"
    FIELD_LOCKED = "field-locked-no-other-change"
    AMBIGUOUS = "ambiguous"
    NO_STATE = "no-state"
    NO_DATE = "no-date"
    STALE = "stale"
    CANCELLED = "cancelled"


class BlockReason(str, Enum):
    """Why an update was refused."""

    MANUAL_OWNED = "manual-owned"


class FetchErrorKind(str, Enum):
    """Failure category for an HTTP fetch."""

    TIMEOUT = "timeout"
    NETWORK = "network"
    HTTP_STATUS = "httpStatus"
    DECODE = "decode"


class PersistOutcome(str, Enum):
    """Result of applying a classification to the store."""

    CREATED = "created"
    UPDATED = "updated"
    BLOCKED = "blocked"
    SKIPPED = "skipped"
    ERRORED = "errored"
