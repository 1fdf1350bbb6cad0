"""
Pipeline Configuration Module
=============================

Loads the MySideline ingestion settings from environment variables,
optionally layered over a YAML file. All pipeline components receive
an explicit ``PipelineConfig`` rather than reading globals.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from carnival_sync import __version__

DEFAULT_LISTING_URL = (
    "https://profile.mysideline.com.au/register/clubsearch/"
    "?criteria=Masters&source=rugby-league"
)
DEFAULT_EVENT_URL = (
    "https://profile.mysideline.com.au/register/clubsearch/"
    "?source=rugby-league&entityType=team&isEntityIdSearch=true&entity=true&criteria="
)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def parse_bool(value: str | bool | None, default: bool) -> bool:
    """Interpret a config flag, falling back to ``default`` when unset."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


@dataclass(frozen=True)
class PipelineConfig:
    """Settings for one ingestion pipeline instance."""

    listing_url: str = DEFAULT_LISTING_URL
    event_url: str = DEFAULT_EVENT_URL
    sync_enabled: bool = True
    enable_scraping: bool = True
    request_timeout_ms: int = 10_000
    retry_attempts: int = 3
    backoff_base_ms: int = 500
    backoff_cap_ms: int = 8_000
    min_request_interval_ms: int = 250
    schedule: str = "0 3 * * *"
    stale_days: int = 365
    detail_concurrency: int = 4
    description_max_length: int = 4000
    error_sample_limit: int = 10
    startup_delay_seconds: float = 1.0
    initial_sync_hours: float = 0.0
    deactivate_past: bool = False
    user_agent: str = f"carnival-sync/{__version__}"
    timezone: str = "Australia/Sydney"

    # Environment variable -> field name
    ENV_VARS = {
        "MYSIDELINE_URL": "listing_url",
        "MYSIDELINE_EVENT_URL": "event_url",
        "MYSIDELINE_SYNC_ENABLED": "sync_enabled",
        "MYSIDELINE_ENABLE_SCRAPING": "enable_scraping",
        "MYSIDELINE_REQUEST_TIMEOUT": "request_timeout_ms",
        "MYSIDELINE_RETRY_ATTEMPTS": "retry_attempts",
        "MYSIDELINE_BACKOFF_BASE": "backoff_base_ms",
        "MYSIDELINE_BACKOFF_CAP": "backoff_cap_ms",
        "MYSIDELINE_MIN_REQUEST_INTERVAL": "min_request_interval_ms",
        "MYSIDELINE_SCHEDULE": "schedule",
        "MYSIDELINE_STALE_DAYS": "stale_days",
        "MYSIDELINE_DETAIL_CONCURRENCY": "detail_concurrency",
        "MYSIDELINE_DESCRIPTION_MAX_LENGTH": "description_max_length",
        "MYSIDELINE_ERROR_SAMPLE_LIMIT": "error_sample_limit",
        "MYSIDELINE_STARTUP_DELAY": "startup_delay_seconds",
        "MYSIDELINE_INITIAL_SYNC_HOURS": "initial_sync_hours",
        "MYSIDELINE_DEACTIVATE_PAST": "deactivate_past",
        "MYSIDELINE_USER_AGENT": "user_agent",
        "TZ": "timezone",
    }

    def __post_init__(self) -> None:
        if self.retry_attempts < 0:
            raise ValueError("retry_attempts must be >= 0")
        if self.detail_concurrency < 1:
            raise ValueError("detail_concurrency must be >= 1")
        if self.stale_days < 0:
            raise ValueError("stale_days must be >= 0")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {self.timezone}") from e

    @property
    def tz(self) -> ZoneInfo:
        """Timezone used for date parsing and cron evaluation."""
        return ZoneInfo(self.timezone)

    @property
    def request_timeout(self) -> float:
        """Per-request timeout in seconds."""
        return self.request_timeout_ms / 1000.0

    @property
    def backoff_base(self) -> float:
        return self.backoff_base_ms / 1000.0

    @property
    def backoff_cap(self) -> float:
        return self.backoff_cap_ms / 1000.0

    @property
    def min_request_interval(self) -> float:
        return self.min_request_interval_ms / 1000.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PipelineConfig:
        """Create from a snake_case mapping, using defaults for missing values."""
        if not data:
            return cls()
        kwargs: dict[str, Any] = {}
        for f in fields(cls):
            if f.name in data and data[f.name] is not None:
                kwargs[f.name] = _coerce(f.name, data[f.name])
        return cls(**kwargs)

    @classmethod
    def from_env(
        cls,
        environ: dict[str, str] | None = None,
        config_path: Path | str | None = None,
    ) -> PipelineConfig:
        """
        Build configuration from the environment.

        Values from the YAML file named by ``config_path`` (or
        MYSIDELINE_CONFIG_PATH) are applied first; environment
        variables override them.

        Args:
            environ: Mapping to read instead of ``os.environ``
            config_path: Optional YAML settings file

        Returns:
            PipelineConfig
        """
        env = os.environ if environ is None else environ
        data: dict[str, Any] = {}

        path = config_path or env.get("MYSIDELINE_CONFIG_PATH")
        if path:
            data.update(load_yaml_settings(path))

        for var, field_name in cls.ENV_VARS.items():
            if var in env and env[var] != "":
                data[field_name] = env[var]

        return cls.from_dict(data)

    def with_overrides(self, **overrides: Any) -> PipelineConfig:
        """Return a copy with the given fields replaced."""
        return replace(self, **overrides)

    def detail_url_for(self, source_id: str) -> str:
        """Build the detail page URL for a MySideline record."""
        if "{source_id}" in self.event_url:
            return self.event_url.replace("{source_id}", quote(source_id, safe=""))
        return f"{self.event_url}{quote(source_id, safe='')}"


_INT_FIELDS = {
    "request_timeout_ms",
    "retry_attempts",
    "backoff_base_ms",
    "backoff_cap_ms",
    "min_request_interval_ms",
    "stale_days",
    "detail_concurrency",
    "description_max_length",
    "error_sample_limit",
}
_FLOAT_FIELDS = {"startup_delay_seconds", "initial_sync_hours"}
_BOOL_FIELDS = {"sync_enabled", "enable_scraping", "deactivate_past"}


def _coerce(name: str, value: Any) -> Any:
    if name in _INT_FIELDS:
        return int(value)
    if name in _FLOAT_FIELDS:
        return float(value)
    if name in _BOOL_FIELDS:
        return parse_bool(value, default=False)
    return str(value)


def load_yaml_settings(config_path: Path | str) -> dict[str, Any]:
    """
    Load pipeline settings from a YAML file.

    The file may hold the settings at the top level or under a
    ``mysideline`` key.
    """
    path = Path(config_path).expanduser().resolve()
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Configuration file must contain a mapping: {path}")
    return data.get("mysideline", data)
