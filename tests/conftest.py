"""Shared fixtures for the carnival sync tests."""

import asyncio
import json
import tempfile
from collections.abc import Callable
from datetime import UTC, datetime
from datetime import date as calendar_date
from pathlib import Path
from typing import Any

import httpx
import pytest
from sqlalchemy.orm import Session, sessionmaker

from carnival_sync.core.config import PipelineConfig
from carnival_sync.db.engine import create_db_engine
from carnival_sync.db.models import Base, CarnivalDB

# 2026-05-01 12:00 in Sydney
FIXED_NOW = datetime(2026, 5, 1, 2, 0, tzinfo=UTC)

LISTING_URL = "https://mysideline.test/listing"
EVENT_URL = "https://mysideline.test/event?id="


def fixed_clock() -> datetime:
    return FIXED_NOW


def no_jitter(low: float, high: float) -> float:
    return 0.0


def card(
    source_id: str | None,
    title: str,
    date: str | None = None,
    address: str | None = None,
) -> str:
    """Render one listing card the way the club-search page does."""
    id_attr = f' id="clubsearch_{source_id}"' if source_id else ' class="el-card"'
    parts = [f'<div{id_attr}><h3 class="title">{title}</h3>']
    if date:
        parts.append(f'<span class="date">{date}</span>')
    if address:
        parts.append(f"<address>{address}</address>")
    parts.append("</div>")
    return "".join(parts)


def listing_page(*cards: str) -> str:
    return f"<html><body><main>{''.join(cards)}</main></body></html>"


S1_LISTING = listing_page(
    card("A", "Sydney Masters 2026", "20/06/2026", "Sydney NSW 2000"),
    card("B", "Brisbane Masters 2026", "27/06/2026", "Brisbane QLD 4000"),
)


def seed_carnival(
    session_factory: sessionmaker[Session],
    source_id: str | None = "A",
    title: str = "Sydney Masters",
    date: calendar_date | None = calendar_date(2026, 6, 20),
    state: str | None = "NSW",
    location_address: str | None = "Sydney NSW 2000",
    is_manually_entered: bool = False,
    manual_override_fields: list[str] | None = None,
    **extra: Any,
) -> str:
    """Insert a carnival row directly, as the website would; returns its id."""
    with session_factory() as session:
        row = CarnivalDB(
            source_id=source_id,
            title=title,
            date=date,
            state=state,
            location_address=location_address,
            is_manually_entered=is_manually_entered,
            manual_override_fields_json=json.dumps(manual_override_fields or []),
            **extra,
        )
        session.add(row)
        session.commit()
        return row.id


def load_carnival(session_factory: sessionmaker[Session], carnival_id: str) -> CarnivalDB:
    with session_factory() as session:
        row = session.get(CarnivalDB, carnival_id)
        session.expunge(row)
        return row


class FakeMySideline:
    """
    In-memory MySideline for httpx.MockTransport.

    ``listing_statuses`` are served before the listing itself; detail
    pages not in ``details`` return 404.
    """

    def __init__(self, listing: str = S1_LISTING) -> None:
        self.listing = listing
        self.listing_statuses: list[int] = []
        self.details: dict[str, str] = {}
        self.detail_statuses: dict[str, int] = {}
        self.requests: list[httpx.Request] = []
        self.listing_delay: float = 0.0

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/listing":
            if self.listing_delay:
                await asyncio.sleep(self.listing_delay)
            if self.listing_statuses:
                return httpx.Response(self.listing_statuses.pop(0))
            return httpx.Response(200, text=self.listing)
        if request.url.path == "/event":
            source_id = request.url.params.get("id", "")
            if source_id in self.detail_statuses:
                return httpx.Response(self.detail_statuses[source_id])
            if source_id in self.details:
                return httpx.Response(200, text=self.details[source_id])
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def listing_requests(self) -> int:
        return sum(1 for r in self.requests if r.url.path == "/listing")


@pytest.fixture
def temp_db_path():
    """Create a temporary database file."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test.db"


@pytest.fixture
def engine(temp_db_path):
    """Create a test database engine."""
    engine = create_db_engine(temp_db_path)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """Create a database session for testing."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def config() -> PipelineConfig:
    """Configuration pointed at the fake source, with no waiting."""
    return PipelineConfig(
        listing_url=LISTING_URL,
        event_url=EVENT_URL,
        min_request_interval_ms=0,
        backoff_base_ms=1,
        backoff_cap_ms=8,
        startup_delay_seconds=-1,
    )


@pytest.fixture
def source() -> FakeMySideline:
    return FakeMySideline()


@pytest.fixture
def clock() -> Callable[[], datetime]:
    return fixed_clock
