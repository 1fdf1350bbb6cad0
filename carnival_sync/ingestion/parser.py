"""
Listing Parser Module
=====================

Turns a MySideline listing body into ordered raw candidates. Two
layouts are understood:

- the HTML club-search page, one card per carnival
  (``id="clubsearch_<id>"``, ``data-event-id`` or ``data-id``)
- the JSON registration-search payload (``{"data": [...]}``)

Parsing is a pure function of the input bytes.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from carnival_sync.core.errors import ParseError

logger = logging.getLogger(__name__)

CARD_SELECTOR = '[id^="clubsearch_"], [data-event-id], [data-id], .el-card'
TITLE_SELECTORS = [".title", ".event-title", ".el-card__header", "h1", "h2", "h3", "h4"]
DATE_SELECTORS = ["time", ".date", ".event-date"]
LOCATION_SELECTORS = ["address", ".address", ".location", ".venue"]


@dataclass
class RawCandidate:
    """
    One listing entry before enrichment and normalization.

    Only ``source_id`` and ``title_raw`` are guaranteed; every other
    field is absent when the listing does not carry it.
    """

    source_id: str
    title_raw: str
    location_raw: str | None = None
    date_raw: str | None = None
    detail_url: str | None = None

    # Extra fields some listing layouts expose
    state_raw: str | None = None
    registration_link: str | None = None
    organiser_contact_email: str | None = None
    organiser_contact_name: str | None = None
    organiser_contact_phone: str | None = None
    logo_url: str | None = None
    description: str | None = None


@dataclass
class ListingParseResult:
    """Parsed listing plus any per-entry warnings."""

    candidates: list[RawCandidate] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    format: str = "html"
    duplicates: int = 0


def _text(node: Tag | None) -> str | None:
    if node is None:
        return None
    value = " ".join(node.get_text(" ", strip=True).split())
    return value or None


def _first_text(card: Tag, selectors: list[str]) -> str | None:
    for selector in selectors:
        value = _text(card.select_one(selector))
        if value:
            return value
    return None


def _attr(node: Tag | None, name: str) -> str | None:
    if node is None:
        return None
    value = node.get(name)
    if isinstance(value, list):
        value = " ".join(value)
    value = (value or "").strip()
    return value or None


def _nested_get(data: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class ListingParser:
    """
    Extracts raw candidates from a listing page.

    Candidates keep document order; a ``source_id`` seen twice keeps the
    later entry. Entries without a ``source_id`` are dropped with a warning.
    """

    def __init__(self, base_url: str = "", event_url: str = "") -> None:
        """
        Args:
            base_url: URL the listing was fetched from, for resolving relative links
            event_url: Registration URL prefix used by the JSON layout
        """
        self.base_url = base_url
        self.event_url = event_url

    def parse(self, body: bytes | str) -> ListingParseResult:
        """
        Parse a listing body.

        Raises:
            ParseError: If the body is empty or structurally malformed
        """
        text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
        stripped = text.lstrip()
        if not stripped:
            raise ParseError("Listing body is empty")

        if stripped[0] in "{[":
            result = self._parse_json(stripped)
        else:
            result = self._parse_html(body)

        result.candidates, result.duplicates = self._dedupe(result.candidates)
        if result.duplicates:
            logger.info(f"Dropped {result.duplicates} duplicate listing entries (kept last occurrence)")
        logger.info(f"Parsed {len(result.candidates)} candidates from {result.format} listing")
        return result

    @staticmethod
    def _dedupe(candidates: list[RawCandidate]) -> tuple[list[RawCandidate], int]:
        """Keep the last occurrence of each source id, in document order."""
        last_seen: dict[str, tuple[int, RawCandidate]] = {}
        for index, candidate in enumerate(candidates):
            last_seen[candidate.source_id] = (index, candidate)
        kept = [c for _, c in sorted(last_seen.values(), key=lambda item: item[0])]
        return kept, len(candidates) - len(kept)

    # ------------------------------------------------------------------
    # HTML layout
    # ------------------------------------------------------------------

    def _parse_html(self, body: bytes | str) -> ListingParseResult:
        result = ListingParseResult(format="html")
        soup = BeautifulSoup(body, "html.parser")

        matched = soup.select(CARD_SELECTOR)
        # Matches inside a card that has already been taken
        claimed: set[int] = set()

        for position, card in enumerate(matched):
            if id(card) in claimed:
                continue

            inner = card.select(CARD_SELECTOR)
            source_id = self._card_source_id(card)
            if not source_id:
                # A wrapper without an id takes the id of the single card inside it;
                # a wrapper around several id-bearing cards leaves each one standalone
                inner_ids = [sid for sid in map(self._card_source_id, inner) if sid]
                if len(inner_ids) > 1:
                    continue
                if inner_ids:
                    source_id = inner_ids[0]
            claimed.update(id(node) for node in inner)

            title = _first_text(card, TITLE_SELECTORS) or _attr(card.select_one("img[alt]"), "alt")
            if not source_id:
                warning = f"Listing entry {position + 1} ('{title or 'untitled'}') has no source id; discarded"
                logger.warning(warning)
                result.warnings.append(warning)
                continue

            time_tag = card.select_one("time[datetime]")
            date_raw = _attr(time_tag, "datetime") or _first_text(card, DATE_SELECTORS)

            link = card.select_one("a.detail-link[href]") or card.select_one("a[href]")
            href = _attr(link, "href")
            logo = _attr(card.select_one("img[src]"), "src")

            result.candidates.append(
                RawCandidate(
                    source_id=source_id,
                    title_raw=title or "",
                    location_raw=_first_text(card, LOCATION_SELECTORS),
                    date_raw=date_raw,
                    detail_url=urljoin(self.base_url, href) if href else None,
                    state_raw=_first_text(card, [".state"]),
                    logo_url=urljoin(self.base_url, logo) if logo else None,
                )
            )
        return result

    @staticmethod
    def _card_source_id(card: Tag) -> str | None:
        for attr_name in ("data-event-id", "data-id"):
            value = _attr(card, attr_name)
            if value:
                return value
        element_id = _attr(card, "id")
        if element_id and element_id.startswith("clubsearch_"):
            return element_id[len("clubsearch_") :] or None
        return None

    # ------------------------------------------------------------------
    # JSON layout
    # ------------------------------------------------------------------

    def _parse_json(self, text: str) -> ListingParseResult:
        result = ListingParseResult(format="json")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise ParseError(f"Listing JSON is malformed: {e}") from e

        items = payload.get("data") if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise ParseError("Listing JSON has no 'data' array")

        for position, item in enumerate(items):
            if not isinstance(item, dict):
                warning = f"Listing entry {position + 1} is not an object; discarded"
                logger.warning(warning)
                result.warnings.append(warning)
                continue
            if not is_relevant_masters_item(item):
                continue

            source_id = _str_or_none(item.get("_id") or item.get("id"))
            title = _str_or_none(item.get("name")) or ""
            if not source_id:
                warning = f"Listing entry {position + 1} ('{title or 'untitled'}') has no source id; discarded"
                logger.warning(warning)
                result.warnings.append(warning)
                continue

            address = _nested_get(item, "venue", "address") or _nested_get(item, "contact", "address") or {}
            contact = item.get("contact") if isinstance(item.get("contact"), dict) else {}
            detail_url = _str_or_none(item.get("url"))

            result.candidates.append(
                RawCandidate(
                    source_id=source_id,
                    title_raw=title,
                    location_raw=_str_or_none(address.get("formatted")) if isinstance(address, dict) else None,
                    date_raw=_str_or_none(item.get("startDate") or item.get("date")),
                    detail_url=urljoin(self.base_url, detail_url) if detail_url else None,
                    state_raw=_str_or_none(address.get("state")) if isinstance(address, dict) else None,
                    registration_link=f"{self.event_url}{source_id}" if self.event_url else None,
                    organiser_contact_email=_str_or_none(contact.get("email")),
                    organiser_contact_name=_str_or_none(contact.get("name")),
                    organiser_contact_phone=_str_or_none(contact.get("number") or contact.get("phone")),
                    logo_url=_str_or_none(item.get("logo") or _nested_get(item, "meta", "logo")),
                    description=_str_or_none(_nested_get(item, "finderDetails", "description")),
                )
            )
        return result


def is_relevant_masters_item(item: dict[str, Any]) -> bool:
    """
    Check whether a registration-search item is a Masters rugby league event.

    Touch football and "all ages" entries are excluded.
    """
    if not item.get("name"):
        return False

    age_level = str(item.get("ageLvl") or "").lower()
    region = str(_nested_get(item, "orgtree", "region", "name") or "").lower()
    association = str(_nested_get(item, "association", "name") or "").lower()
    competition = str(_nested_get(item, "competition", "name") or "").lower()
    club = str(_nested_get(item, "club", "name") or "").lower()

    if "touch" in association or "touch" in competition or "all ages" in age_level:
        return False

    return (
        "masters" in age_level
        or "nrl masters" in region
        or "nrl masters" in association
        or "masters" in competition
        or "masters" in club
        or "masters" in str(item.get("name")).lower()
    )
