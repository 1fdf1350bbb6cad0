"""Core domain types, configuration and error definitions."""

from carnival_sync.core.config import PipelineConfig
from carnival_sync.core.enums import (
    AustralianState,
    ClassificationKind,
    FetchErrorKind,
    RunStatus,
    SkipReason,
    TriggerSource,
)
from carnival_sync.core.errors import (
    Cancelled,
    FetchError,
    NormalizationReject,
    ParseError,
    PersistError,
    RunInProgress,
    SyncError,
)

__all__ = [
    "PipelineConfig",
    "AustralianState",
    "ClassificationKind",
    "FetchErrorKind",
    "RunStatus",
    "SkipReason",
    "TriggerSource",
    "Cancelled",
    "FetchError",
    "NormalizationReject",
    "ParseError",
    "PersistError",
    "RunInProgress",
    "SyncError",
]
