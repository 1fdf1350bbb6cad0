"""SQLAlchemy ORM models for Carnival Sync database."""

import json
from datetime import UTC, datetime
from datetime import date as calendar_date
from uuid import uuid4

from sqlalchemy import Boolean, Date, DateTime, Index, Integer, String, Text, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utc_now() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(UTC)


def _generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class CarnivalDB(Base):
    """
    Database model for canonical carnivals.

    The table is shared with the website. The pipeline writes only the
    MySideline-managed columns and never rows that are manually entered.
    """

    __tablename__ = "carnivals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    source_id: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True, index=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    date: Mapped[calendar_date | None] = mapped_column(Date, nullable=True, index=True)
    state: Mapped[str | None] = mapped_column(String(3), nullable=True, index=True)
    location_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    registration_link: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Organiser contact
    organiser_contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    organiser_contact_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    organiser_contact_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)

    logo_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Ownership and status
    is_manually_entered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_imported_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    manual_override_fields_json: Mapped[str] = mapped_column(Text, default="[]")  # JSON array

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    @property
    def manual_override_fields(self) -> list[str]:
        try:
            value = json.loads(self.manual_override_fields_json or "[]")
        except (json.JSONDecodeError, TypeError):
            return []
        return [str(v) for v in value] if isinstance(value, list) else []

    def __repr__(self) -> str:
        return f"<CarnivalDB(id={self.id}, source_id={self.source_id}, title='{self.title}')>"


class IngestionRunDB(Base):
    """
    Database model for ingestion runs.

    Creating a row with status 'running' is the single-flight
    reservation: the partial unique index admits only one such row.
    """

    __tablename__ = "ingestion_runs"
    __table_args__ = (
        Index(
            "ux_ingestion_runs_single_running",
            "status",
            unique=True,
            sqlite_where=text("status = 'running'"),
            postgresql_where=text("status = 'running'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    correlation_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")
    trigger_source: Mapped[str] = mapped_column(String(20), nullable=False, default="manual")
    started_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Counters
    scanned: Mapped[int] = mapped_column(Integer, default=0)
    created: Mapped[int] = mapped_column(Integer, default=0)
    updated: Mapped[int] = mapped_column(Integer, default=0)
    blocked: Mapped[int] = mapped_column(Integer, default=0)
    skipped: Mapped[int] = mapped_column(Integer, default=0)
    errored: Mapped[int] = mapped_column(Integer, default=0)
    deactivated: Mapped[int] = mapped_column(Integer, default=0)

    skip_reasons_json: Mapped[str] = mapped_column(Text, default="{}")  # JSON object
    error_samples_json: Mapped[str] = mapped_column(Text, default="[]")  # JSON array
    error_summary: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<IngestionRunDB(correlation_id={self.correlation_id}, status='{self.status}')>"
