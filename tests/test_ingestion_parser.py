"""Tests for the listing parser."""

import json

import pytest

from carnival_sync.core.errors import ParseError
from carnival_sync.ingestion.parser import ListingParser, is_relevant_masters_item
from conftest import S1_LISTING, card, listing_page


class TestHtmlListing:
    """Tests for the HTML club-search layout."""

    def test_parses_cards_in_order(self) -> None:
        result = ListingParser().parse(S1_LISTING.encode())

        assert result.format == "html"
        assert [c.source_id for c in result.candidates] == ["A", "B"]
        first = result.candidates[0]
        assert first.title_raw == "Sydney Masters 2026"
        assert first.date_raw == "20/06/2026"
        assert first.location_raw == "Sydney NSW 2000"
        assert result.warnings == []

    def test_duplicate_source_id_keeps_last(self) -> None:
        body = listing_page(
            card("A", "Old title", "01/07/2026"),
            card("B", "Other", "02/07/2026"),
            card("A", "New title", "03/07/2026"),
        )

        result = ListingParser().parse(body)

        assert [c.source_id for c in result.candidates] == ["B", "A"]
        assert result.candidates[1].title_raw == "New title"
        assert result.duplicates == 1

    def test_entry_without_source_id_is_discarded(self) -> None:
        body = listing_page(card(None, "Mystery Carnival"), card("A", "Known Carnival"))

        result = ListingParser().parse(body)

        assert [c.source_id for c in result.candidates] == ["A"]
        assert len(result.warnings) == 1
        assert "Mystery Carnival" in result.warnings[0]

    def test_data_attribute_ids(self) -> None:
        body = (
            '<div data-event-id="ev-1"><h2>Perth Masters</h2><time datetime="2026-08-01">1 Aug</time></div>'
            '<div data-id="ev-2"><h2>Hobart Masters</h2></div>'
        )

        result = ListingParser().parse(body)

        assert [c.source_id for c in result.candidates] == ["ev-1", "ev-2"]
        assert result.candidates[0].date_raw == "2026-08-01"
        assert result.candidates[1].date_raw is None

    def test_nested_matches_belong_to_outer_card(self) -> None:
        body = '<div id="clubsearch_X"><h3 class="title">Outer</h3><div class="el-card">inner</div></div>'

        result = ListingParser().parse(body)

        assert [c.source_id for c in result.candidates] == ["X"]
        assert result.warnings == []

    def test_id_inside_card_wrapper(self) -> None:
        body = (
            '<div class="el-card is-always-shadow"><div id="clubsearch_X1">'
            '<h3 class="title">Perth Masters</h3></div>'
            '<span class="location">Perth WA 6000</span></div>'
        )

        result = ListingParser().parse(body)

        assert [(c.source_id, c.title_raw) for c in result.candidates] == [("X1", "Perth Masters")]
        assert result.candidates[0].location_raw == "Perth WA 6000"
        assert result.warnings == []

    def test_wrapper_around_several_cards(self) -> None:
        body = (
            '<div class="el-card">'
            '<div id="clubsearch_A"><h3>Sydney Masters</h3></div>'
            '<div id="clubsearch_B"><h3>Brisbane Masters</h3></div>'
            "</div>"
        )

        result = ListingParser().parse(body)

        assert [(c.source_id, c.title_raw) for c in result.candidates] == [
            ("A", "Sydney Masters"),
            ("B", "Brisbane Masters"),
        ]
        assert result.warnings == []

    def test_relative_links_resolved(self) -> None:
        body = (
            '<div id="clubsearch_A"><h3>Sydney Masters</h3>'
            '<a href="/event/A">More</a><img src="logos/a.png" alt="logo"></div>'
        )

        result = ListingParser(base_url="https://mysideline.test/listing").parse(body)

        assert result.candidates[0].detail_url == "https://mysideline.test/event/A"
        assert result.candidates[0].logo_url == "https://mysideline.test/logos/a.png"

    def test_page_without_cards_is_empty(self) -> None:
        result = ListingParser().parse("<html><body><p>No carnivals</p></body></html>")
        assert result.candidates == []

    @pytest.mark.parametrize("body", [b"", b"   \n", ""])
    def test_empty_body_raises(self, body) -> None:
        with pytest.raises(ParseError):
            ListingParser().parse(body)


class TestJsonListing:
    """Tests for the JSON registration-search layout."""

    def _item(self, **overrides) -> dict:
        item = {
            "_id": "j1",
            "name": "Gold Coast Masters Carnival",
            "ageLvl": "Masters",
            "startDate": "2026-09-12",
            "venue": {"address": {"formatted": "Runaway Bay QLD 4216", "state": "QLD"}},
            "contact": {"name": "Pat Smith", "email": "Pat@Example.com", "number": "0400 000 000"},
            "logo": "https://cdn.test/logo.png",
        }
        item.update(overrides)
        return item

    def test_parses_items(self) -> None:
        body = json.dumps({"data": [self._item()]})

        result = ListingParser(event_url="https://mysideline.test/event?id=").parse(body)

        assert result.format == "json"
        candidate = result.candidates[0]
        assert candidate.source_id == "j1"
        assert candidate.location_raw == "Runaway Bay QLD 4216"
        assert candidate.state_raw == "QLD"
        assert candidate.organiser_contact_email == "Pat@Example.com"
        assert candidate.organiser_contact_phone == "0400 000 000"
        assert candidate.registration_link == "https://mysideline.test/event?id=j1"

    def test_relative_item_url_resolved(self) -> None:
        body = json.dumps({"data": [self._item(url="/event/j1")]})

        result = ListingParser(base_url="https://mysideline.test/listing").parse(body)

        assert result.candidates[0].detail_url == "https://mysideline.test/event/j1"

    def test_irrelevant_items_filtered(self) -> None:
        body = json.dumps(
            {
                "data": [
                    self._item(_id="touch", association={"name": "Touch Football"}),
                    self._item(_id="junior", name="Junior Carnival", ageLvl="Under 12"),
                    self._item(_id="keep"),
                ]
            }
        )

        result = ListingParser().parse(body)

        assert [c.source_id for c in result.candidates] == ["keep"]

    def test_item_without_id_warns(self) -> None:
        item = self._item()
        del item["_id"]

        result = ListingParser().parse(json.dumps([item]))

        assert result.candidates == []
        assert len(result.warnings) == 1

    def test_malformed_json_raises(self) -> None:
        with pytest.raises(ParseError, match="malformed"):
            ListingParser().parse('{"data": [')

    def test_missing_data_array_raises(self) -> None:
        with pytest.raises(ParseError):
            ListingParser().parse('{"results": {}}')


class TestRelevance:
    @pytest.mark.parametrize(
        "item,expected",
        [
            ({"name": "Carnival", "ageLvl": "Masters"}, True),
            ({"name": "Carnival", "orgtree": {"region": {"name": "NRL Masters NSW"}}}, True),
            ({"name": "Tweed Masters Day"}, True),
            ({"name": "Carnival", "ageLvl": "All Ages Masters"}, False),
            ({"name": "Carnival", "competition": {"name": "Masters Touch"}}, False),
            ({"ageLvl": "Masters"}, False),
            ({"name": "Open Carnival"}, False),
        ],
    )
    def test_is_relevant(self, item, expected) -> None:
        assert is_relevant_masters_item(item) is expected
