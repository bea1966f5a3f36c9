"""
Tests for the listing extractor.
"""

import json
from datetime import datetime

import pytest

from auction_scraper.errors import ExtractionError
from auction_scraper.models import CandidateListing, FetchResult, FilterParams, ListingStatus, ScrapeTarget
from auction_scraper.pipeline.extractor import (
    ListingExtractor,
    apply_buyer_fee,
    calculate_buyer_fee,
    is_vehicle,
    matches_trim,
    reconcile,
    status_from_text,
)
from auction_scraper.sources import BuyerFeePolicy, get_source

from conftest import bat_card, bat_page


BAT = get_source("bring-a-trailer")
CARS_AND_BIDS = get_source("cars-and-bids")

GT4_TARGET = ScrapeTarget(
    model="718 Cayman",
    slug="718-cayman",
    trim="GT4",
    search_url="https://bringatrailer.com/porsche/cayman-gt4/",
)

GT4_URL = "https://bringatrailer.com/listing/2022-porsche-718-cayman-gt4-12/"
GT4_RS_URL = "https://bringatrailer.com/listing/2023-porsche-718-cayman-gt4-rs-3/"
RENDERED_ONLY_URL = "https://bringatrailer.com/listing/2020-porsche-718-cayman-gt4-40/"


def embedded(items: list[dict]) -> str:
    return f"var auctionsCompletedInitialData = {json.dumps({'items': items})};"


def gt4_search_page() -> str:
    items = [
        {
            "url": "/listing/2022-porsche-718-cayman-gt4-12/",
            "title": "2022 Porsche 718 Cayman GT4 6-Speed",
            "current_bid": 140000,
            "sold_text": "Sold for USD $145,000 on 3/14/24",
            "year": "2022",
            "id": 12,
        },
        {
            "url": GT4_RS_URL,
            "title": "2023 Porsche 718 Cayman GT4 RS Weissach",
            "sold_text": "Sold for USD $250,000 on 2/1/24",
        },
        {
            "url": "https://bringatrailer.com/listing/fuchs-wheels-7/",
            "title": "Set of Porsche Fuchs Wheels",
            "sold_text": "Sold for USD $20,000 on 1/5/24",
        },
        {
            "url": "https://bringatrailer.com/listing/2016-porsche-cayman-gt4-8/",
            "title": "2016 Porsche Cayman GT4 Project",
            "sold_text": "Sold for USD $9,000 on 1/9/24",
        },
        {
            "url": "https://bringatrailer.com/listing/2017-porsche-cayman-gt4-9/",
            "title": "2017 Porsche Cayman GT4",
            "sold_text": "Bid to USD $80,000 on 1/10/24",
        },
        {"title": "missing url"},
    ]
    cards = [
        # Same listing as the embedded item, with a different rendered price
        bat_card(GT4_URL, "2022 Porsche 718 Cayman GT4 6-Speed", "Sold for USD $1 on 3/14/24"),
        bat_card(RENDERED_ONLY_URL, "2020 Porsche 718 Cayman GT4", "Sold for USD $98,500 on 3/1/24"),
        '<a class="listing-card" href="https://bringatrailer.com/listing/no-result/"><h3>2020 GT4</h3></a>',
    ]
    return bat_page(cards, embedded(items))


class TestBuyerFee:
    """Tests for buyer fee computation."""

    def test_fee_examples(self):
        """Test 5% fee with a $7,500 cap."""
        assert calculate_buyer_fee(100000) == 5000
        assert calculate_buyer_fee(200000) == 7500
        assert calculate_buyer_fee(1000) == 50

    def test_fee_annotation(self):
        """Test fee-inclusive totals."""
        policy = BuyerFeePolicy(rate=0.05, cap=7500.0)

        fee = apply_buyer_fee(100000, policy)
        assert (fee.amount, fee.price_with_fee, fee.price_before_fee) == (5000, 105000, 100000)

        fee = apply_buyer_fee(200000, policy)
        assert (fee.amount, fee.price_with_fee) == (7500, 207500)

        fee = apply_buyer_fee(1000, policy)
        assert (fee.amount, fee.price_with_fee) == (50, 1050)

    def test_zero_price(self):
        """Test that a missing price carries no fee."""
        assert calculate_buyer_fee(0) == 0.0


class TestTitleFilters:
    """Tests for trim disambiguation and keyword filters."""

    def test_less_specific_trim_excludes_rs(self):
        """Test that a GT4 request rejects GT4 RS titles."""
        known = BAT.known_trims

        assert matches_trim("2022 Porsche 718 Cayman GT4 6-Speed", "GT4", known) is True
        assert matches_trim("2023 Porsche 718 Cayman GT4 RS Weissach", "GT4", known) is False
        assert matches_trim("2023 Porsche 718 Cayman GT4RS", "GT4", known) is False

    def test_specific_trim_requires_variant(self):
        """Test that a GT4 RS request needs the RS in the title."""
        known = BAT.known_trims

        assert matches_trim("2023 Porsche 718 Cayman GT4 RS", "GT4 RS", known) is True
        assert matches_trim("2022 Porsche 718 Cayman GT4", "GT4", known) is True
        assert matches_trim("2022 Porsche 718 Cayman GT4", "GT4 RS", known) is False

    def test_carrera_variants(self):
        """Test that Carrera excludes Carrera S and Carrera 4 but not Speedster."""
        known = BAT.known_trims

        assert matches_trim("1995 Porsche 911 Carrera Coupe 6-Speed", "Carrera", known) is True
        assert matches_trim("2012 Porsche 911 Carrera S Coupe", "Carrera", known) is False
        assert matches_trim("2001 Porsche 911 Carrera 4 Cabriolet", "Carrera", known) is False
        assert matches_trim("1989 Porsche 911 Carrera Speedster", "Carrera", known) is True

    def test_generic_trim_not_required_in_title(self):
        """Test that a generic trim such as Base matches titles that omit it."""
        assert matches_trim("2020 Porsche 718 Cayman 6-Speed", "Base", BAT.known_trims, ("Base",)) is True

    def test_vehicle_keywords(self):
        """Test blocklist, allowlist override and hard exclusions."""
        block, allow = BAT.blocklist, BAT.allowlist

        assert is_vehicle("Set of Porsche Fuchs Wheels", block, allow) is False
        assert is_vehicle("2019 Porsche 911 GT3 on Center-Lock Wheels", block, allow) is True
        assert is_vehicle("2019 Porsche Cayenne Turbo", block, allow, ("cayenne",)) is False

    def test_status_from_text(self):
        """Test auction outcome detection."""
        assert status_from_text("Sold for USD $45,000") is ListingStatus.SOLD
        assert status_from_text("Bid to USD $45,000") is ListingStatus.UNSOLD
        assert status_from_text("Current Bid: $45,000") is ListingStatus.ACTIVE
        assert status_from_text(None) is ListingStatus.ACTIVE


class TestReconcile:
    """Tests for strategy reconciliation."""

    def _listing(self, url: str, price: float) -> CandidateListing:
        return CandidateListing(url=url, title=url, price=price)

    def test_structured_wins(self):
        """Test that the structured version of a shared URL is kept."""
        structured = [self._listing("a", 100)]
        rendered = [self._listing("a", 1), self._listing("b", 2)]

        merged = {l.url: l.price for l in reconcile(structured, rendered)}
        assert merged == {"a": 100, "b": 2}

    def test_idempotent(self):
        """Test that reconciling again yields the same set."""
        structured = [self._listing("a", 100), self._listing("c", 300), self._listing("a", 101)]
        rendered = [self._listing("a", 1), self._listing("b", 2)]

        once = reconcile(structured, rendered)
        assert reconcile(once, rendered) == once
        assert reconcile(once, once) == once
        assert reconcile(structured, rendered) == once
        assert len({l.url for l in once}) == len(once)


class TestListingExtractor:
    """Tests for ListingExtractor.extract()."""

    def test_search_page(self):
        """Test merge, filters and fee annotation on a search page."""
        extractor = ListingExtractor(BAT)
        raw = FetchResult(url=GT4_TARGET.search_url, html=gt4_search_page())

        listings = extractor.extract(raw, GT4_TARGET, FilterParams(trim="GT4"))
        by_url = {l.url: l for l in listings}

        assert set(by_url) == {GT4_URL, RENDERED_ONLY_URL}

        gt4 = by_url[GT4_URL]
        assert gt4.price == 145000
        assert gt4.year == 2022
        assert gt4.status is ListingStatus.SOLD
        assert gt4.sold_date == datetime(2024, 3, 14)
        assert gt4.buyer_fee.amount == 7250
        assert gt4.final_price == 152250
        assert gt4.model == "718 Cayman"

        assert by_url[RENDERED_ONLY_URL].price == 98500

    def test_no_trim_filter(self):
        """Test that without a trim filter the GT4 RS is kept."""
        extractor = ListingExtractor(BAT)

        listings = extractor.extract(gt4_search_page(), GT4_TARGET, FilterParams())
        assert GT4_RS_URL in {l.url for l in listings}

    def test_include_unsold(self):
        """Test that only_sold=False keeps unsold auctions."""
        extractor = ListingExtractor(BAT)

        listings = extractor.extract(gt4_search_page(), GT4_TARGET, FilterParams(only_sold=False))
        statuses = {l.url: l.status for l in listings}
        assert statuses["https://bringatrailer.com/listing/2017-porsche-cayman-gt4-9/"] is ListingStatus.UNSOLD

    def test_invalid_embedded_json_falls_back_to_cards(self):
        """Test that a broken data block leaves the rendered cards usable."""
        html = bat_page(
            [bat_card(RENDERED_ONLY_URL, "2020 Porsche 718 Cayman GT4", "Sold for USD $98,500")],
            "var auctionsCompletedInitialData = {broken",
        )
        listings = ListingExtractor(BAT).extract(html, GT4_TARGET, FilterParams(trim="GT4"))
        assert [l.url for l in listings] == [RENDERED_ONLY_URL]

    def test_bare_list_payload(self):
        """Test the `marker: [...]` form of the data block."""
        items = [{"url": GT4_URL, "title": "2022 Porsche 718 Cayman GT4", "current_bid": "$120,000"}]
        html = bat_page([], f"window.data = {{auctionsCompletedInitialData: {json.dumps(items)}}};")

        listings = ListingExtractor(BAT).extract(html, GT4_TARGET, FilterParams())
        assert len(listings) == 1
        assert listings[0].price == 120000
        assert listings[0].status is ListingStatus.SOLD

    def test_cars_and_bids_cards(self):
        """Test card text parsing and SUV exclusion for a source without fees."""
        target = ScrapeTarget(
            model="911",
            slug="911",
            trim="GT3 RS",
            search_url="https://carsandbids.com/past-auctions?q=porsche%20911%20gt3%20rs",
        )
        html = (
            '<ul class="auctions-list">'
            '<li class="auction-item"><div class="auction-title">'
            '<a href="/auctions/abc/2016-porsche-911-gt3-rs">2016 Porsche 911 GT3 RS</a></div>'
            '<span class="bid-value">Sold for $210,000</span></li>'
            '<li class="auction-item"><div class="auction-title">'
            '<a href="/auctions/def/2019-porsche-cayenne-turbo">2019 Porsche Cayenne Turbo</a></div>'
            '<span class="bid-value">Sold for $95,000</span></li>'
            "</ul>"
        )
        listings = ListingExtractor(CARS_AND_BIDS).extract(html, target, FilterParams())

        assert len(listings) == 1
        assert listings[0].url == "https://carsandbids.com/auctions/abc/2016-porsche-911-gt3-rs"
        assert listings[0].price == 210000
        assert listings[0].buyer_fee is None
        assert listings[0].final_price == 210000


DETAIL_HTML = """
<html><body>
<h1 class="listing-title">2019 Porsche 911 GT3 Touring 6-Speed</h1>
<div class="listing-available-info">Sold for USD $172,500 on 3/14/24</div>
<div class="essentials">
  <ul>
    <li>Chassis: WP0AC2A98KS149123</li>
    <li>12k Miles</li>
    <li>Guards Red Paint</li>
    <li>Location: Austin, Texas 78701</li>
  </ul>
  <div class="essentials-item">Transmission: Six-Speed Manual Transaxle</div>
</div>
<script>var noise = "Sold for USD $1";</script>
</body></html>
"""


class TestDetailExtraction:
    """Tests for detail page extraction and merging."""

    def test_detail_fields(self):
        """Test every detail field on a representative page."""
        detail = ListingExtractor(BAT).extract_detail(DETAIL_HTML, "https://bringatrailer.com/listing/x/")

        assert detail.title == "2019 Porsche 911 GT3 Touring 6-Speed"
        assert detail.price == 172500
        assert detail.status is ListingStatus.SOLD
        assert detail.year == 2019
        assert detail.mileage == 12000
        assert detail.vin == "WP0AC2A98KS149123"
        assert detail.location == "Austin, Texas"
        assert detail.sold_date == datetime(2024, 3, 14)
        assert detail.exterior_color == "Guards Red"
        assert detail.transmission == "Six-Speed Manual Transaxle"

    def test_transmission_from_title(self):
        """Test transmission inference when no fact is listed."""
        html = "<html><body><h1>2018 Porsche 911 GT3 PDK</h1></body></html>"
        detail = ListingExtractor(BAT).extract_detail(html, "u")

        assert detail.transmission == "PDK"
        assert detail.price is None

    def test_missing_title(self):
        """Test that a page without a listing title is rejected."""
        with pytest.raises(ExtractionError):
            ListingExtractor(BAT).extract_detail("<html><body><p>Access denied</p></body></html>", "u")

    def test_merge_keeps_known_price(self):
        """Test that a detail page without a price keeps the search price and fee."""
        extractor = ListingExtractor(BAT)
        candidate = extractor.annotate_fee(
            CandidateListing(url="u", title="2019 Porsche 911 GT3", price=150000)
        )
        detail = extractor.extract_detail(
            "<html><body><h1>2019 Porsche 911 GT3 Touring</h1><ul><li>8,400 Miles</li></ul></body></html>",
            "u",
        )

        merged = extractor.merge_detail(candidate, detail)

        assert merged.price == 150000
        assert merged.status is ListingStatus.SOLD
        assert merged.buyer_fee.amount == 7500
        assert merged.mileage == 8400
        assert merged.title == "2019 Porsche 911 GT3 Touring"

    def test_merge_recomputes_fee(self):
        """Test that a detail price replaces the search price and its fee."""
        extractor = ListingExtractor(BAT)
        candidate = extractor.annotate_fee(CandidateListing(url="u", title="t", price=100000))
        detail = extractor.extract_detail(DETAIL_HTML, "u")

        merged = extractor.merge_detail(candidate, detail)

        assert merged.price == 172500
        assert merged.final_price == 180000
