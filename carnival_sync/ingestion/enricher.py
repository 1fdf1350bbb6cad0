"""
Detail Enricher Module
======================

Fetches each candidate's MySideline detail page and extracts venue,
date, registration link, organiser contacts, logo and description.

Detail fetches run on a bounded pool of workers; results are released
in listing order regardless of completion order.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Any
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from carnival_sync.core.config import PipelineConfig
from carnival_sync.core.errors import Cancelled, FetchError, ParseError
from carnival_sync.ingestion.fetcher import Fetcher
from carnival_sync.ingestion.parser import RawCandidate

logger = logging.getLogger(__name__)

EVENT_TYPES = {"Event", "SportsEvent"}


@dataclass
class DetailRecord:
    """Fields extracted from a detail page. Every field is best-effort."""

    title: str | None = None
    date_raw: str | None = None
    date_range_raw: str | None = None
    location_address: str | None = None
    state_raw: str | None = None
    registration_link: str | None = None
    organiser_contact_email: str | None = None
    organiser_contact_name: str | None = None
    organiser_contact_phone: str | None = None
    logo_url: str | None = None
    description: str | None = None
    extractor_method: str = "css_selector"

    def is_empty(self) -> bool:
        return not any(
            (
                self.title,
                self.date_raw,
                self.location_address,
                self.registration_link,
                self.organiser_contact_email,
                self.logo_url,
                self.description,
            )
        )


@dataclass
class EnrichedCandidate:
    """A raw candidate with its detail page outcome."""

    sequence: int
    raw: RawCandidate
    detail: DetailRecord | None = None
    error: str | None = None

    @property
    def degraded(self) -> bool:
        return self.detail is None


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    value = " ".join(str(value).split())
    return value or None


def _node_text(node: Tag | None) -> str | None:
    if node is None:
        return None
    return _clean(node.get_text(" ", strip=True))


class DetailParser:
    """
    Extracts a DetailRecord from detail page HTML.

    schema.org JSON-LD (Event/SportsEvent) is preferred; CSS selectors
    and mailto:/tel: links fill whatever it leaves empty.
    """

    def parse(self, body: bytes | str, page_url: str) -> DetailRecord:
        """
        Parse a detail page.

        Args:
            body: Page content
            page_url: URL the page was fetched from, for resolving links

        Raises:
            ParseError: If the page is empty or holds no event content
        """
        if not body or not (body.strip() if isinstance(body, str) else body.strip()):
            raise ParseError(f"Detail page is empty: {page_url}")

        soup = BeautifulSoup(body, "html.parser")
        record = self._from_jsonld(soup) or DetailRecord()
        self._fill_from_html(soup, record)

        for attr in ("registration_link", "logo_url"):
            value = getattr(record, attr)
            if value:
                setattr(record, attr, urljoin(page_url, value))

        if record.is_empty():
            raise ParseError(f"No event content found on detail page: {page_url}")
        return record

    def _from_jsonld(self, soup: BeautifulSoup) -> DetailRecord | None:
        for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
            try:
                data = json.loads(script.string or "")
            except (json.JSONDecodeError, TypeError):
                logger.debug("Ignoring malformed JSON-LD block")
                continue
            event = self._find_event(data)
            if event is not None:
                return self._event_to_record(event)
        return None

    def _find_event(self, data: Any) -> dict[str, Any] | None:
        if isinstance(data, list):
            for item in data:
                found = self._find_event(item)
                if found is not None:
                    return found
            return None
        if not isinstance(data, dict):
            return None
        types = data.get("@type")
        types = set(types) if isinstance(types, list) else {types}
        if types & EVENT_TYPES:
            return data
        if "@graph" in data:
            return self._find_event(data["@graph"])
        return None

    def _event_to_record(self, event: dict[str, Any]) -> DetailRecord:
        record = DetailRecord(extractor_method="jsonld")
        record.title = _clean(event.get("name"))
        record.description = _clean(event.get("description"))

        start = _clean(event.get("startDate"))
        end = _clean(event.get("endDate"))
        record.date_raw = start
        if start and end and end[:10] != start[:10]:
            record.date_range_raw = f"{start[:10]} to {end[:10]}"

        location = event.get("location")
        if isinstance(location, list):
            location = location[0] if location else None
        if isinstance(location, dict):
            address = location.get("address")
            if isinstance(address, dict):
                parts = [
                    address.get("streetAddress"),
                    address.get("addressLocality"),
                    address.get("addressRegion"),
                    address.get("postalCode"),
                ]
                record.location_address = _clean(" ".join(str(p) for p in parts if p))
                record.state_raw = _clean(address.get("addressRegion"))
            else:
                record.location_address = _clean(address) or _clean(location.get("name"))
        elif isinstance(location, str):
            record.location_address = _clean(location)

        offers = event.get("offers")
        if isinstance(offers, list):
            offers = offers[0] if offers else None
        if isinstance(offers, dict):
            record.registration_link = _clean(offers.get("url"))
        record.registration_link = record.registration_link or _clean(event.get("url"))

        organizer = event.get("organizer")
        if isinstance(organizer, list):
            organizer = organizer[0] if organizer else None
        if isinstance(organizer, dict):
            record.organiser_contact_name = _clean(organizer.get("name"))
            email = _clean(organizer.get("email"))
            record.organiser_contact_email = email.removeprefix("mailto:") if email else None
            phone = _clean(organizer.get("telephone"))
            record.organiser_contact_phone = phone.removeprefix("tel:") if phone else None

        image = event.get("image")
        if isinstance(image, list):
            image = image[0] if image else None
        if isinstance(image, dict):
            image = image.get("url")
        record.logo_url = _clean(image)
        return record

    def _fill_from_html(self, soup: BeautifulSoup, record: DetailRecord) -> None:
        if not record.title:
            record.title = _node_text(soup.select_one(".event-title")) or _node_text(soup.select_one("h1"))

        if not record.date_raw:
            time_tag = soup.select_one("time[datetime]")
            if time_tag is not None:
                record.date_raw = _clean(time_tag.get("datetime"))
            else:
                record.date_raw = _node_text(soup.select_one(".event-date")) or _node_text(
                    soup.select_one(".date")
                )

        if not record.location_address:
            for selector in (".venue-address", "address", ".address", ".venue"):
                record.location_address = _node_text(soup.select_one(selector))
                if record.location_address:
                    break

        if not record.state_raw:
            record.state_raw = _node_text(soup.select_one(".state"))

        if not record.registration_link:
            link = (
                soup.select_one("a.register[href]")
                or soup.select_one("a.registration-link[href]")
                or soup.select_one('a[href*="register"]')
            )
            if link is not None:
                record.registration_link = _clean(link.get("href"))

        if not record.organiser_contact_email:
            mail = soup.select_one('a[href^="mailto:"]')
            if mail is not None:
                address = str(mail.get("href")).removeprefix("mailto:").split("?", 1)[0]
                record.organiser_contact_email = _clean(address)

        if not record.organiser_contact_phone:
            tel = soup.select_one('a[href^="tel:"]')
            if tel is not None:
                record.organiser_contact_phone = _clean(str(tel.get("href")).removeprefix("tel:"))

        if not record.organiser_contact_name:
            record.organiser_contact_name = _node_text(
                soup.select_one(".contact-name")
            ) or _node_text(soup.select_one(".organiser-name"))

        if not record.logo_url:
            logo = soup.select_one("img.logo[src]") or soup.select_one(".logo img[src]")
            if logo is not None:
                record.logo_url = _clean(logo.get("src"))
            else:
                og_image = soup.select_one('meta[property="og:image"]')
                if og_image is not None:
                    record.logo_url = _clean(og_image.get("content"))

        if not record.description:
            record.description = _node_text(soup.select_one(".event-description")) or _node_text(
                soup.select_one(".description")
            )
            if not record.description:
                meta = soup.select_one('meta[name="description"]')
                if meta is not None:
                    record.description = _clean(meta.get("content"))


class DetailEnricher:
    """
    Enriches raw candidates with detail page data.

    A failed or unparseable detail page degrades the candidate to its
    listing data; it never fails the run.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        config: PipelineConfig,
        parser: DetailParser | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.config = config
        self.parser = parser or DetailParser()
        self.cancel_event = cancel_event

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    async def enrich_one(self, sequence: int, raw: RawCandidate) -> EnrichedCandidate:
        """
        Fetch and parse one detail page.

        Raises:
            Cancelled: If the run is cancelled before the page is fetched
        """
        url = raw.detail_url or self.config.detail_url_for(raw.source_id)
        try:
            body = await self.fetcher.fetch_detail(raw.source_id, url)
            detail = await asyncio.to_thread(self.parser.parse, body, url)
        except FetchError as e:
            logger.warning(f"Detail fetch failed for {raw.source_id}: {e}")
            return EnrichedCandidate(sequence, raw, error=f"detail fetch failed ({e.kind.value})")
        except ParseError as e:
            logger.warning(f"Detail page unparseable for {raw.source_id}: {e}")
            return EnrichedCandidate(sequence, raw, error="detail page unparseable")
        except Cancelled:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error enriching {raw.source_id}: {e}")
            return EnrichedCandidate(sequence, raw, error=f"detail enrichment failed ({type(e).__name__})")
        return EnrichedCandidate(sequence, raw, detail=detail)

    async def _worker(
        self,
        queue: asyncio.Queue[tuple[int, RawCandidate]],
        results: asyncio.Queue[EnrichedCandidate | None],
    ) -> None:
        try:
            while not self._cancelled():
                try:
                    sequence, raw = queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                try:
                    results.put_nowait(await self.enrich_one(sequence, raw))
                except Cancelled:
                    break
        finally:
            # Sentinel: this worker is done
            results.put_nowait(None)

    async def stream(self, raws: Sequence[RawCandidate]) -> AsyncIterator[EnrichedCandidate]:
        """
        Enrich candidates concurrently, yielding them in input order.

        On cancellation the stream ends after the longest completed
        prefix; candidates past that point are not yielded.
        """
        if not raws:
            return

        queue: asyncio.Queue[tuple[int, RawCandidate]] = asyncio.Queue()
        for sequence, raw in enumerate(raws):
            queue.put_nowait((sequence, raw))
        results: asyncio.Queue[EnrichedCandidate | None] = asyncio.Queue()

        worker_count = min(self.config.detail_concurrency, len(raws))
        workers = [asyncio.create_task(self._worker(queue, results)) for _ in range(worker_count)]

        reorder: dict[int, EnrichedCandidate] = {}
        next_sequence = 0
        finished = 0
        try:
            while next_sequence < len(raws) and finished < worker_count:
                item = await results.get()
                if item is None:
                    finished += 1
                    continue
                reorder[item.sequence] = item
                while next_sequence in reorder:
                    yield reorder.pop(next_sequence)
                    next_sequence += 1
            # Drain anything that completed before the last sentinel
            while not results.empty():
                item = results.get_nowait()
                if item is not None:
                    reorder[item.sequence] = item
            while next_sequence in reorder:
                yield reorder.pop(next_sequence)
                next_sequence += 1
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

    async def enrich_all(self, raws: Sequence[RawCandidate]) -> list[EnrichedCandidate]:
        """Enrich all candidates and return them in input order."""
        return [item async for item in self.stream(raws)]
