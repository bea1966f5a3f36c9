"""
Listing Extractor Module

Turns fetched search and detail pages into CandidateListings.

Search pages are read by two independent strategies: the embedded data
block a site ships for its own front end (trusted most) and the rendered
result cards. Their outputs are reconciled by URL, filtered and annotated
with the source's buyer fee.
"""

import json
import logging
import re
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Optional

from bs4 import BeautifulSoup, Tag
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from auction_scraper.errors import ExtractionError
from auction_scraper.models import BuyerFee, CandidateListing, FetchResult, FilterParams, ListingStatus, ScrapeTarget
from auction_scraper.pipeline.cleaner import ListingTextCleaner
from auction_scraper.sources import BuyerFeePolicy, SourceConfig


logger = logging.getLogger(__name__)

# Sale dates outside this window are parsing accidents
MIN_SOLD_DATE = datetime(2010, 1, 1)
MAX_SOLD_DATE = datetime(2030, 1, 1)

MAX_PLAUSIBLE_MILEAGE = 500_000

PORSCHE_VIN_PATTERN = re.compile(r'\bWP[01][A-HJ-NPR-Z0-9]{14}\b')


def calculate_buyer_fee(price: float, rate: float = 0.05, cap: float = 7500.0) -> float:
    """Buyer fee for a hammer price: min(price * rate, cap)."""
    if price <= 0:
        return 0.0
    return round(min(price * rate, cap), 2)


def apply_buyer_fee(price: float, policy: BuyerFeePolicy) -> BuyerFee:
    """Annotate a hammer price with its buyer fee and fee-inclusive total."""
    fee = calculate_buyer_fee(price, policy.rate, policy.cap)
    return BuyerFee(amount=fee, price_with_fee=price + fee, price_before_fee=price)


def status_from_text(text: str | None) -> ListingStatus:
    """Auction outcome from result text ("Sold for ...", "Bid to ...")."""
    lowered = (text or "").lower()
    if "sold for" in lowered or "sold after for" in lowered:
        return ListingStatus.SOLD
    if "bid to" in lowered:
        return ListingStatus.UNSOLD
    return ListingStatus.ACTIVE


def _trim_pattern(trim: str) -> re.Pattern:
    # "GT4 RS" also matches "GT4RS"
    tokens = [re.escape(token) for token in trim.lower().split()]
    return re.compile(r'(?<![a-z0-9])' + r'\s*'.join(tokens) + r'(?![a-z0-9])')


def matches_trim(
    title: str,
    trim: str,
    known_trims: list[str],
    generic_trims: tuple[str, ...] = (),
) -> bool:
    """
    True if a title belongs to the requested trim.

    The requested trim must appear in the title (unless it is a generic trim
    such as "Base" that titles never spell out), and no more specific
    variant of it ("GT4 RS" when "GT4" was requested) may appear.
    """
    lowered = title.lower()
    requested = trim.lower()

    if trim not in generic_trims and not _trim_pattern(trim).search(lowered):
        return False

    for variant in known_trims:
        variant_lower = variant.lower()
        if variant_lower.startswith(requested + " ") and _trim_pattern(variant).search(lowered):
            return False
    return True


def is_vehicle(
    title: str,
    blocklist: tuple[str, ...],
    allowlist: tuple[str, ...],
    excluded: tuple[str, ...] = (),
) -> bool:
    """Reject parts and accessories unless the title names a vehicle."""
    lowered = title.lower()
    if any(word in lowered for word in excluded):
        return False
    if any(word in lowered for word in blocklist):
        return any(word in lowered for word in allowlist)
    return True


def reconcile(structured: list[CandidateListing], rendered: list[CandidateListing]) -> list[CandidateListing]:
    """
    Merge both strategies' output by URL.

    The structured version wins when both saw the same URL; within one
    strategy the first occurrence wins. Applying it again to its own
    output changes nothing.
    """
    merged: dict[str, CandidateListing] = {}
    for listing in structured:
        merged.setdefault(listing.url, listing)
    for listing in rendered:
        merged.setdefault(listing.url, listing)
    return list(merged.values())


class StructuredItem(BaseModel):
    """One item of an embedded results data block."""

    model_config = ConfigDict(extra="ignore")

    url: str
    title: str
    current_bid: Optional[float] = None
    sold_text: Optional[str] = None
    year: Optional[int] = None

    @field_validator("current_bid", mode="before")
    @classmethod
    def parse_bid(cls, value: Any) -> Any:
        if isinstance(value, str):
            digits = re.sub(r'[^0-9.]', '', value)
            return float(digits) if digits else None
        return value

    @field_validator("year", mode="before")
    @classmethod
    def parse_year(cls, value: Any) -> Any:
        if isinstance(value, str):
            return int(value) if value.isdigit() else None
        return value


class StructuredDataStrategy:
    """
    Reads the data block a results page embeds for its own front end.

    The block is located by a marker (a JavaScript variable or object key)
    inside a <script> and decoded as JSON starting right after it. Both
    `{"items": [...]}` and bare list payloads are accepted.
    """

    def __init__(self, source: SourceConfig, cleaner: ListingTextCleaner | None = None):
        self._source = source
        self._cleaner = cleaner or ListingTextCleaner()
        self._decoder = json.JSONDecoder()

    def _payload(self, soup: BeautifulSoup) -> Any:
        marker = self._source.structured_marker
        for script in soup.find_all("script"):
            text = script.string or script.get_text()
            if not text or marker not in text:
                continue

            start = text.index(marker) + len(marker)
            match = re.compile(r'\s*[=:]\s*').match(text, start)
            if not match:
                continue
            try:
                payload, _ = self._decoder.raw_decode(text, match.end())
            except json.JSONDecodeError as e:
                logger.warning(f"{self._source.name}: embedded data block is not valid JSON ({e})")
                continue
            return payload
        return None

    def parse(self, soup: BeautifulSoup, target: ScrapeTarget) -> list[CandidateListing]:
        if not self._source.structured_marker:
            return []

        payload = self._payload(soup)
        if isinstance(payload, dict):
            payload = payload.get("items")
        if not isinstance(payload, list):
            return []

        listings = []
        for raw in payload:
            try:
                item = StructuredItem.model_validate(raw)
            except ValidationError:
                logger.debug(f"{self._source.name}: skipping malformed data item")
                continue

            price = self._cleaner.parse_price(item.sold_text) if item.sold_text else None
            if price is None:
                price = item.current_bid
            # Items without a result line come from the completed-sales block
            status = status_from_text(item.sold_text) if item.sold_text else ListingStatus.SOLD

            listings.append(CandidateListing(
                url=self._source.absolute_url(item.url),
                title=self._cleaner.clean_text(item.title),
                price=price or 0.0,
                status=status,
                model=target.model,
                trim=target.trim,
                generation=target.generation,
                year=item.year or self._cleaner.parse_year(item.title),
                sold_date=self._cleaner.parse_date(item.sold_text) if item.sold_text else None,
            ))
        return listings


class RenderedCardStrategy:
    """Walks the rendered result cards of a search page."""

    def __init__(self, source: SourceConfig, cleaner: ListingTextCleaner | None = None):
        self._source = source
        self._cleaner = cleaner or ListingTextCleaner()

    def _card_url(self, card: Tag) -> Optional[str]:
        if card.name == "a" and card.get("href"):
            return card["href"]
        link = card.select_one(self._source.selectors.card_link)
        return link.get("href") if link else None

    def parse(self, soup: BeautifulSoup, target: ScrapeTarget) -> list[CandidateListing]:
        selectors = self._source.selectors
        listings = []

        for card in soup.select(selectors.card):
            href = self._card_url(card)
            title_el = card.select_one(selectors.card_title)
            if not href or title_el is None:
                continue

            if selectors.card_result:
                result_el = card.select_one(selectors.card_result)
                if result_el is None:
                    continue
                result_text = result_el.get_text(" ", strip=True)
            else:
                result_text = card.get_text(" ", strip=True)

            title = self._cleaner.clean_text(title_el.get_text(" ", strip=True))
            listings.append(CandidateListing(
                url=self._source.absolute_url(href),
                title=title,
                price=self._cleaner.parse_price(result_text) or 0.0,
                status=status_from_text(result_text),
                model=target.model,
                trim=target.trim,
                generation=target.generation,
                year=self._cleaner.parse_year(title),
            ))
        return listings


@dataclass
class DetailFields:
    """Fields read from a listing's own page."""

    title: str
    price: Optional[float] = None
    status: ListingStatus = ListingStatus.ACTIVE
    year: Optional[int] = None
    mileage: Optional[int] = None
    vin: Optional[str] = None
    location: Optional[str] = None
    sold_date: Optional[datetime] = None
    exterior_color: Optional[str] = None
    transmission: Optional[str] = None


class ListingExtractor:
    """
    Extracts candidate listings and detail fields for one source.

    Example:
        extractor = ListingExtractor(source)
        candidates = extractor.extract(result.raw, target, FilterParams(trim="GT4"))
        detail = extractor.extract_detail(html, candidates[0].url)
        merged = extractor.merge_detail(candidates[0], detail)
    """

    PRICE_SELECTORS = (".listing-available-info", ".sold-for", ".final-price", ".winning-bid")
    DATE_SELECTORS = (".date-ended", ".sold-date")
    PRICE_PATTERNS = (
        re.compile(r'sold (?:after )?for[:\s]*(?:USD\s*)?\$[\d,]+', re.IGNORECASE),
        re.compile(r'winning bid[:\s]*\$[\d,]+', re.IGNORECASE),
        re.compile(r'final price[:\s]*\$[\d,]+', re.IGNORECASE),
        re.compile(r'bid to[:\s]*(?:USD\s*)?\$[\d,]+', re.IGNORECASE),
        re.compile(r'current bid[:\s]*(?:USD\s*)?\$[\d,]+', re.IGNORECASE),
    )
    SOLD_DATE_PATTERN = re.compile(r'\b(?:sold|ended)\b.{0,60}?\bon\s+(\d{1,2}/\d{1,2}/\d{2,4})', re.IGNORECASE)

    def __init__(self, source: SourceConfig, cleaner: ListingTextCleaner | None = None):
        """
        Initialize the extractor.

        Args:
            source: Source whose selectors and filters apply
            cleaner: Text cleaner (default instance if None)
        """
        self._source = source
        self._cleaner = cleaner or ListingTextCleaner()
        self.structured = StructuredDataStrategy(source, self._cleaner)
        self.rendered = RenderedCardStrategy(source, self._cleaner)

    def annotate_fee(self, listing: CandidateListing) -> CandidateListing:
        policy = self._source.buyer_fee
        if policy is None or not listing.price:
            return replace(listing, buyer_fee=None)
        return replace(listing, buyer_fee=apply_buyer_fee(listing.price, policy))

    def passes_filters(self, listing: CandidateListing, target: ScrapeTarget, filters: FilterParams) -> bool:
        source = self._source
        if listing.price < source.price_floor:
            return False
        if not is_vehicle(listing.title, source.blocklist, source.allowlist, source.excluded):
            return False
        if filters.only_sold and listing.status is not ListingStatus.SOLD:
            return False
        if filters.trim and target.trim:
            return matches_trim(listing.title, target.trim, source.known_trims, source.generic_trims)
        return True

    def extract(
        self,
        raw: FetchResult | str,
        target: ScrapeTarget,
        filters: FilterParams,
    ) -> list[CandidateListing]:
        """
        Candidate listings from a search page.

        Args:
            raw: Final search page content
            target: Target the page belongs to
            filters: Caller filters (only_sold, trim)

        Returns:
            Filtered, fee-annotated listings, unique by URL
        """
        html = raw.html if isinstance(raw, FetchResult) else raw
        soup = BeautifulSoup(html, "lxml")

        structured = self.structured.parse(soup, target)
        rendered = self.rendered.parse(soup, target)
        merged = reconcile(structured, rendered)

        kept = [
            self.annotate_fee(listing)
            for listing in merged
            if self.passes_filters(listing, target, filters)
        ]
        logger.info(
            f"{target.label}: {len(structured)} embedded + {len(rendered)} rendered "
            f"-> {len(merged)} unique, {len(kept)} kept"
        )
        return kept

    def _labelled_value(self, soup: BeautifulSoup, label: str) -> Optional[str]:
        """Value of a "Label: value" fact from a definition list, essentials box or list item."""
        lowered = label.lower()

        for dt in soup.find_all("dt"):
            if lowered in dt.get_text(" ", strip=True).lower():
                dd = dt.find_next_sibling("dd")
                if dd:
                    return self._cleaner.clean_text(dd.get_text(" ", strip=True))

        for item in soup.select(".essentials-item, ul li"):
            text = item.get_text(" ", strip=True)
            if text.lower().startswith(lowered) and ":" in text:
                return self._cleaner.clean_text(text.split(":", 1)[1])
        return None

    def _detail_price(self, soup: BeautifulSoup, page_text: str) -> tuple[Optional[float], str]:
        for selector in self.PRICE_SELECTORS:
            element = soup.select_one(selector)
            if element:
                text = element.get_text(" ", strip=True)
                price = self._cleaner.parse_price(text)
                if price:
                    return price, text

        for pattern in self.PRICE_PATTERNS:
            match = pattern.search(page_text)
            if match:
                return self._cleaner.parse_price(match.group(0)), match.group(0)
        return None, ""

    def _detail_sold_date(self, soup: BeautifulSoup, page_text: str) -> Optional[datetime]:
        candidates = [soup.select_one(selector) for selector in self.DATE_SELECTORS]
        texts = [el.get_text(" ", strip=True) for el in candidates if el]
        match = self.SOLD_DATE_PATTERN.search(page_text)
        if match:
            texts.append(match.group(1))

        for text in texts:
            date = self._cleaner.parse_date(text)
            if date and MIN_SOLD_DATE <= date <= MAX_SOLD_DATE:
                return date
        return None

    def _detail_mileage(self, soup: BeautifulSoup, title: str) -> Optional[int]:
        labelled = self._labelled_value(soup, "Mileage")
        # A labelled value may be a bare number ("32,000")
        if labelled and not self._cleaner.parse_mileage(labelled):
            labelled = f"{labelled} miles"

        # Essentials lists often carry an unlabelled "12k Miles" item
        short_items = [
            item.get_text(" ", strip=True)
            for item in soup.select("ul li")
            if len(item.get_text(strip=True)) < 40
        ]

        for text in (labelled, *short_items, title):
            mileage = self._cleaner.parse_mileage(text)
            if mileage and 0 < mileage < MAX_PLAUSIBLE_MILEAGE:
                return mileage
        return None

    def _detail_vin(self, soup: BeautifulSoup, page_text: str) -> Optional[str]:
        for label in ("Chassis", "VIN"):
            vin = self._cleaner.parse_vin(self._labelled_value(soup, label))
            if vin:
                return vin
        match = PORSCHE_VIN_PATTERN.search(page_text.upper())
        return match.group(0) if match else None

    def _detail_location(self, soup: BeautifulSoup) -> Optional[str]:
        location = self._labelled_value(soup, "Location")
        if not location:
            return None
        # Drop the ZIP code
        return re.sub(r'\s*\d{5}(?:-\d{4})?$', '', location).strip() or None

    def _detail_color(self, soup: BeautifulSoup) -> Optional[str]:
        color = self._labelled_value(soup, "Exterior Color") or self._labelled_value(soup, "Exterior")
        if color:
            return color

        for item in soup.select("ul li"):
            text = item.get_text(" ", strip=True)
            match = (
                re.search(r'Paint-To-Sample\s+([\w\s]+?)(?:\s+Paint)?$', text, re.IGNORECASE)
                or re.search(r'^([\w\s]+?)\s+(?:Metallic\s+)?Paint$', text, re.IGNORECASE)
            )
            if match:
                return match.group(1).strip()
        return None

    def _detail_transmission(self, soup: BeautifulSoup, title: str) -> Optional[str]:
        labelled = self._labelled_value(soup, "Transmission")
        if labelled:
            return labelled

        lowered = title.lower()
        if "6-speed" in lowered or "six-speed" in lowered:
            return "6-Speed Manual"
        if "7-speed" in lowered or "seven-speed" in lowered:
            return "7-Speed PDK" if "pdk" in lowered else "7-Speed Manual"
        if "5-speed" in lowered or "five-speed" in lowered:
            return "5-Speed Manual"
        if "pdk" in lowered:
            return "PDK"
        if "tiptronic" in lowered:
            return "Tiptronic"
        return None

    def extract_detail(self, html: str, url: str) -> DetailFields:
        """
        Fields from a listing detail page.

        Args:
            html: Detail page content
            url: Listing URL (for error messages)

        Returns:
            DetailFields

        Raises:
            ExtractionError: If the page has no listing title
        """
        soup = BeautifulSoup(html, "lxml")
        title_el = soup.select_one("h1.listing-title") or soup.select_one("h1") or soup.select_one(".auction-title")
        title = self._cleaner.clean_text(title_el.get_text(" ", strip=True)) if title_el else ""
        if not title:
            raise ExtractionError(f"No listing title on {url}")

        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()
        body = soup.body or soup
        page_text = self._cleaner.clean_text(body.get_text(" ", strip=True))

        price, price_text = self._detail_price(soup, page_text)
        status = status_from_text(price_text or page_text)

        return DetailFields(
            title=title,
            price=price,
            status=status,
            year=self._cleaner.parse_year(title),
            mileage=self._detail_mileage(soup, title),
            vin=self._detail_vin(soup, page_text),
            location=self._detail_location(soup),
            sold_date=self._detail_sold_date(soup, page_text),
            exterior_color=self._detail_color(soup),
            transmission=self._detail_transmission(soup, title),
        )

    def merge_detail(self, candidate: CandidateListing, detail: DetailFields) -> CandidateListing:
        """
        Fold detail fields into a candidate.

        Detail values win where present. A candidate's known price (and the
        status that came with it) is kept when the detail page has none, and
        the buyer fee is recomputed from the resulting price.
        """
        has_price = bool(detail.price)
        merged = replace(
            candidate,
            title=detail.title or candidate.title,
            price=detail.price if has_price else candidate.price,
            status=detail.status if has_price else candidate.status,
            year=detail.year or candidate.year,
            mileage=detail.mileage or candidate.mileage,
            vin=detail.vin or candidate.vin,
            location=detail.location or candidate.location,
            sold_date=detail.sold_date or candidate.sold_date,
            exterior_color=detail.exterior_color or candidate.exterior_color,
            transmission=detail.transmission or candidate.transmission,
        )
        return self.annotate_fee(merged)
