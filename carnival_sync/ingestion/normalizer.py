"""
Data Normalizer Module
======================

Cleans and standardizes raw carnival data into candidates ready for
reconciliation: state codes, calendar dates in Australia/Sydney,
trimmed contact fields, derived titles and a dedup fingerprint.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import date as calendar_date
from datetime import datetime
from typing import Any

from carnival_sync.core.config import PipelineConfig
from carnival_sync.core.enums import STATE_NAMES, AustralianState
from carnival_sync.ingestion.enricher import DetailRecord, EnrichedCandidate
from carnival_sync.ingestion.parser import RawCandidate

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Masters Rugby League Carnival"

MONTHS: dict[str, int] = {
    "january": 1, "jan": 1,
    "february": 2, "feb": 2,
    "march": 3, "mar": 3,
    "april": 4, "apr": 4,
    "may": 5,
    "june": 6, "jun": 6,
    "july": 7, "jul": 7,
    "august": 8, "aug": 8,
    "september": 9, "sep": 9, "sept": 9,
    "october": 10, "oct": 10,
    "november": 11, "nov": 11,
    "december": 12, "dec": 12,
}  # fmt: skip

_MONTH = r"(?P<month>[A-Za-z]{3,9})\.?"
_ORD = r"(?:st|nd|rd|th)?"

# Single-date forms, tried together so a string with two dates is seen as a range
DATE_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("dmy", re.compile(r"\b(?P<day>\d{1,2})/(?P<month>\d{1,2})/(?P<year>\d{4})\b")),
    ("dmy", re.compile(r"\b(?P<day>\d{1,2})-(?P<month>\d{1,2})-(?P<year>\d{4})\b")),
    ("ymd", re.compile(r"\b(?P<year>\d{4})-(?P<month>\d{1,2})-(?P<day>\d{1,2})\b")),
    ("d_month_y", re.compile(rf"\b(?P<day>\d{{1,2}}){_ORD}\s+{_MONTH},?\s+(?P<year>\d{{4}})\b", re.I)),
    ("month_d_y", re.compile(rf"\b{_MONTH}\s+(?P<day>\d{{1,2}}){_ORD},?\s+(?P<year>\d{{4}})\b", re.I)),
]

# "20-21 June 2026", "20th & 21st June 2026"
COMPACT_RANGE = re.compile(
    rf"\b(?P<day>\d{{1,2}}){_ORD}\s*(?:-|–|to|&|and)\s*\d{{1,2}}{_ORD}\s+{_MONTH},?\s+(?P<year>\d{{4}})\b",
    re.I,
)

ISO_DATETIME = re.compile(r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}")

_DATE_TOKEN = r"\d{1,2}[/\-]\d{1,2}[/\-]\d{4}"
_LONG_TOKEN = rf"\d{{1,2}}{_ORD}\s+[A-Za-z]{{3,9}}\.?\s+\d{{4}}"
_US_TOKEN = r"[A-Za-z]{3,9}\.?\s+\d{1,2}(?:st|nd|rd|th)?,?\s+\d{4}"

# Dates embedded in titles, most specific first
TITLE_DATE_PATTERNS: list[re.Pattern[str]] = [
    re.compile(rf"\s*\(\s*({_DATE_TOKEN}|{_LONG_TOKEN}|{_US_TOKEN})\s*\)\s*", re.I),
    re.compile(rf"\s*[-|–]\s*({_DATE_TOKEN}|{_LONG_TOKEN}|{_US_TOKEN})\s*$", re.I),
    re.compile(rf"\s+({_DATE_TOKEN}|{_LONG_TOKEN}|{_US_TOKEN})\s*$", re.I),
]

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
POSTCODE_SUFFIX = re.compile(r"[\s,]*\b\d{4}\s*$")
COUNTRY_SUFFIX = re.compile(r"[\s,]*\baustralia\s*$", re.I)
PUNCTUATION = re.compile(r"[^\w\s]")
TITLE_SUFFIXES = ("masters", "rugby league")


@dataclass
class Candidate:
    """
    A normalized carnival ready for reconciliation.

    ``canonical_title`` and ``fingerprint`` are derived for matching
    and are never stored.
    """

    source_id: str
    title: str
    date: calendar_date | None = None
    state: AustralianState | None = None
    location_address: str | None = None
    registration_link: str | None = None
    organiser_contact_email: str | None = None
    organiser_contact_name: str | None = None
    organiser_contact_phone: str | None = None
    logo_url: str | None = None
    description: str | None = None

    canonical_title: str = ""
    fingerprint: str | None = None
    date_raw: str | None = None
    is_range: bool = False

    def field_values(self) -> dict[str, Any]:
        """Values of the store-managed fields, keyed by column name."""
        return {
            "title": self.title,
            "date": self.date,
            "state": self.state,
            "location_address": self.location_address,
            "registration_link": self.registration_link,
            "organiser_contact_email": self.organiser_contact_email,
            "organiser_contact_name": self.organiser_contact_name,
            "organiser_contact_phone": self.organiser_contact_phone,
            "logo_url": self.logo_url,
            "description": self.description,
        }


class Normalizer:
    """
    Normalizes raw and enriched carnival data into canonical forms.

    Handles:
    - State derivation from an explicit field or the address suffix
    - Date parsing (numeric, long-form, ISO datetimes, ranges)
    - Dates embedded in titles
    - Whitespace, email and URL cleanup
    - Canonical title and fingerprint for dedup
    """

    def __init__(self, config: PipelineConfig | None = None) -> None:
        self.config = config or PipelineConfig()

    def normalize(self, raw: RawCandidate, detail: DetailRecord | None = None) -> Candidate:
        """
        Build a Candidate from a listing entry and its optional detail record.

        Detail values supersede listing values field by field.
        """
        listing_title, title_date = self.extract_title_date(raw.title_raw)
        detail_title, detail_title_date = (None, None)
        if detail is not None and detail.title:
            detail_title, detail_title_date = self.extract_title_date(detail.title)

        title = detail_title or listing_title or DEFAULT_TITLE

        date_raw = self.clean_string(
            (detail.date_raw if detail else None) or raw.date_raw or detail_title_date or title_date
        )
        parsed_date, is_range = self.parse_date(date_raw)
        range_raw = detail.date_range_raw if detail else None
        if range_raw:
            is_range = True
            date_raw = range_raw

        location = self.clean_string((detail.location_address if detail else None) or raw.location_raw)
        state_raw = (detail.state_raw if detail else None) or raw.state_raw
        state = self.derive_state(location, explicit=state_raw)

        description = self.clean_string((detail.description if detail else None) or raw.description)
        if is_range and date_raw:
            note = f"Dates: {date_raw}"
            description = f"{description}\n\n{note}" if description else note
        description = self.trim_description(description)

        def pick(attr: str) -> Any:
            value = getattr(detail, attr) if detail is not None else None
            return value or getattr(raw, attr)

        canonical = self.canonical_title(title)
        candidate = Candidate(
            source_id=raw.source_id,
            title=title,
            date=parsed_date,
            state=state,
            location_address=location,
            registration_link=self.normalize_url(pick("registration_link")),
            organiser_contact_email=self.normalize_email(pick("organiser_contact_email")),
            organiser_contact_name=self.clean_string(pick("organiser_contact_name")),
            organiser_contact_phone=self.clean_string(pick("organiser_contact_phone")),
            logo_url=self.normalize_url(pick("logo_url")),
            description=description,
            canonical_title=canonical,
            fingerprint=self.fingerprint(canonical, state, parsed_date),
            date_raw=date_raw,
            is_range=is_range,
        )
        return candidate

    def normalize_enriched(self, item: EnrichedCandidate) -> Candidate:
        return self.normalize(item.raw, item.detail)

    def clean_string(self, value: Any) -> str | None:
        """Collapse internal whitespace and strip; empty strings become None."""
        if value is None:
            return None
        s = re.sub(r"\s+", " ", str(value)).strip()
        return s or None

    def normalize_email(self, value: Any) -> str | None:
        """Lowercase an email address; invalid addresses become None."""
        email = self.clean_string(value)
        if email is None:
            return None
        email = email.removeprefix("mailto:").lower()
        if not EMAIL_PATTERN.match(email):
            logger.debug(f"Discarding invalid organiser email: {email}")
            return None
        return email

    def normalize_url(self, value: Any) -> str | None:
        """Give a URL an explicit scheme, defaulting to https."""
        url = self.clean_string(value)
        if url is None:
            return None
        if url.startswith("//"):
            return f"https:{url}"
        if not re.match(r"^[a-z][a-z0-9+.\-]*://", url, re.I):
            return f"https://{url}"
        return url

    def trim_description(self, value: str | None) -> str | None:
        if value is None:
            return None
        limit = self.config.description_max_length
        return value[:limit].rstrip() if len(value) > limit else value

    # ------------------------------------------------------------------
    # Dates
    # ------------------------------------------------------------------

    def parse_date(self, value: str | None) -> tuple[calendar_date | None, bool]:
        """
        Parse a date string to a calendar date in the configured timezone.

        Ranges resolve to their earliest day.

        Returns:
            Tuple of (date or None, whether the string held a range)
        """
        text = self.clean_string(value)
        if text is None:
            return None, False

        if ISO_DATETIME.match(text):
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                parsed = None
            if parsed is not None:
                if parsed.tzinfo is not None:
                    return parsed.astimezone(self.config.tz).date(), False
                return parsed.date(), False

        found: list[tuple[int, calendar_date]] = []

        compact = COMPACT_RANGE.search(text)
        if compact:
            start = self._build_date(compact.group("year"), compact.group("month"), compact.group("day"))
            if start is not None:
                return start, True

        for _kind, pattern in DATE_PATTERNS:
            for match in pattern.finditer(text):
                parsed_date = self._build_date(match.group("year"), match.group("month"), match.group("day"))
                if parsed_date is not None:
                    found.append((match.start(), parsed_date))

        if not found:
            return None, False
        distinct = {d for _, d in found}
        return min(distinct), len(distinct) > 1

    def _build_date(self, year: str, month: str, day: str) -> calendar_date | None:
        if month.isdigit():
            month_number = int(month)
        else:
            month_number = MONTHS.get(month.lower().rstrip("."), 0)
        try:
            return calendar_date(int(year), month_number, int(day))
        except ValueError:
            return None

    def extract_title_date(self, title: str | None) -> tuple[str | None, str | None]:
        """
        Strip an embedded date from a title.

        Handles "(19/07/2025)", "- 21/06/2025", "| 20th Sep 2024" and a
        trailing "5 Feb 2026". A title that would become empty is kept.

        Returns:
            Tuple of (cleaned title, extracted date string or None)
        """
        text = self.clean_string(title)
        if text is None:
            return None, None

        for pattern in TITLE_DATE_PATTERNS:
            match = pattern.search(text)
            if match is None:
                continue
            date_string = match.group(1)
            if self.parse_date(date_string)[0] is None:
                continue
            cleaned = (text[: match.start()] + " " + text[match.end() :]).strip()
            cleaned = re.sub(r"\s*[-|–]\s*$", "", cleaned)
            cleaned = re.sub(r"^\s*[-|–]\s*", "", cleaned)
            cleaned = self.clean_string(cleaned.replace("()", ""))
            return (cleaned or text), date_string

        return text, None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def parse_state(self, value: str | None) -> AustralianState | None:
        """Map a state code or full state name to an AustralianState."""
        text = self.clean_string(value)
        if text is None:
            return None
        upper = text.upper()
        if upper in AustralianState.__members__:
            return AustralianState(upper)
        return STATE_NAMES.get(text.lower())

    def derive_state(self, address: str | None, explicit: str | None = None) -> AustralianState | None:
        """
        Derive the state for a carnival.

        An explicit state wins when valid. Otherwise the address suffix
        is used ("Sydney NSW 2000", "Brisbane, QLD, Australia"). A state
        code elsewhere in the address is ignored, so an address without a
        state suffix gives None.
        """
        state = self.parse_state(explicit)
        if state is not None:
            return state
        if not address:
            return None

        # "Western Australia" must be matched before the country is stripped
        tail = POSTCODE_SUFFIX.sub("", address).rstrip(" ,.")
        for candidate_tail in (tail, POSTCODE_SUFFIX.sub("", COUNTRY_SUFFIX.sub("", tail)).rstrip(" ,.")):
            lowered = candidate_tail.lower()
            for name, named_state in STATE_NAMES.items():
                if lowered.endswith(name):
                    return named_state
            last_word = re.split(r"[\s,]+", candidate_tail)[-1] if candidate_tail else ""
            if last_word.upper() in AustralianState.__members__:
                return AustralianState(last_word.upper())

        return None

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def canonical_title(self, title: str | None) -> str:
        """Lowercase, strip punctuation and the Masters/rugby league suffix."""
        if not title:
            return ""
        text = PUNCTUATION.sub(" ", title.lower())
        text = re.sub(r"\s+", " ", text).strip()
        stripped = True
        while stripped:
            stripped = False
            for suffix in TITLE_SUFFIXES:
                if text == suffix:
                    continue
                if text.endswith(" " + suffix):
                    text = text[: -len(suffix)].strip()
                    stripped = True
        return text

    def fingerprint(
        self,
        canonical_title: str,
        state: AustralianState | None,
        event_date: calendar_date | None,
    ) -> str | None:
        """SHA-256 over title, state and ISO date; None when state or date is missing."""
        if state is None or event_date is None:
            return None
        payload = f"{canonical_title}|{state.value}|{event_date.isoformat()}"
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()
