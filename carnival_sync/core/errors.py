"""Exception types raised by the ingestion pipeline."""

from __future__ import annotations

from carnival_sync.core.enums import FetchErrorKind, SkipReason


class SyncError(Exception):
    """Base class for all pipeline errors."""


class FetchError(SyncError):
    """An HTTP fetch failed after exhausting its retry budget."""

    def __init__(
        self,
        kind: FetchErrorKind,
        url: str,
        attempts: int,
        last_status: int | None = None,
        detail: str = "",
    ) -> None:
        self.kind = kind
        self.url = url
        self.attempts = attempts
        self.last_status = last_status
        self.detail = detail
        message = f"{kind.value} fetching {url} after {attempts} attempt(s)"
        if last_status is not None:
            message += f" (last status {last_status})"
        if detail:
            message += f": {detail}"
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        """Whether another attempt could succeed."""
        if self.kind in (FetchErrorKind.TIMEOUT, FetchErrorKind.NETWORK):
            return True
        if self.kind == FetchErrorKind.HTTP_STATUS and self.last_status is not None:
            return self.last_status == 429 or self.last_status >= 500
        return False


class ParseError(SyncError):
    """A listing or detail page could not be interpreted."""


class NormalizationReject(SyncError):
    """A candidate cannot be reconciled and is skipped."""

    def __init__(self, reason: SkipReason, source_id: str | None = None) -> None:
        self.reason = reason
        self.source_id = source_id
        super().__init__(f"{source_id or '?'}: {reason.value}")


class PersistError(SyncError):
    """A per-candidate write failed and was rolled back."""


class Cancelled(SyncError):
    """The run was asked to stop."""


class RunInProgress(SyncError):
    """Another run already holds the single-flight reservation."""

    def __init__(self, correlation_id: str | None) -> None:
        self.correlation_id = correlation_id
        super().__init__(f"Run already in progress: {correlation_id}")
