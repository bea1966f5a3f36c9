"""
Auction Sources Module

Static configuration for each supported auction site: the search targets
(one per model/trim/generation page), page selectors, the embedded data
marker, filter keywords and per-run limits.
"""

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote, urljoin

from auction_scraper.fetchers.base import ResultsSelectors
from auction_scraper.models import ScrapeTarget


logger = logging.getLogger(__name__)

GENERATIONS_911 = ("964", "993", "996", "997", "991", "992")


@dataclass(frozen=True)
class BuyerFeePolicy:
    """Percentage buyer fee with a fixed ceiling."""

    rate: float = 0.05
    cap: float = 7500.0


@dataclass
class SourceSelectors:
    """CSS selectors for a source's search and detail pages."""

    results_anchor: str
    card: str
    card_link: str
    card_title: str
    card_result: Optional[str]
    load_more: str
    loading_indicator: Optional[str] = None
    detail_wait: str = "h1"

    def results_selectors(self) -> ResultsSelectors:
        return ResultsSelectors(
            results_anchor=self.results_anchor,
            card=self.card,
            card_link=self.card_link,
            load_more=self.load_more,
            loading_indicator=self.loading_indicator,
        )


@dataclass
class SourceConfig:
    """
    Everything the engine needs to know about one auction site.

    Example:
        source = get_source("bring-a-trailer")
        targets = source.filter_targets(model="911-gt")
    """

    name: str
    base_url: str
    targets: list[ScrapeTarget]
    selectors: SourceSelectors
    structured_marker: Optional[str] = None
    price_floor: float = 15000.0
    buyer_fee: Optional[BuyerFeePolicy] = None
    circuit_threshold: int = 10
    detail_batch_size: int = 50
    blocklist: tuple[str, ...] = ()
    allowlist: tuple[str, ...] = ()
    # Never collected, even when an allowlist keyword matches
    excluded: tuple[str, ...] = ()
    generic_trims: tuple[str, ...] = ("Base",)
    extra_trims: tuple[str, ...] = ()

    @property
    def known_trims(self) -> list[str]:
        """Every trim name this source distinguishes, from targets and extras."""
        trims = {t.trim for t in self.targets if t.trim}
        trims.update(self.extra_trims)
        return sorted(trims)

    def absolute_url(self, href: str) -> str:
        return href if href.startswith("http") else urljoin(self.base_url, href)

    def filter_targets(self, model: str | None = None, trim: str | None = None) -> list[ScrapeTarget]:
        """
        Select targets by model and trim.

        Args:
            model: Model slug ("911", "718-cayman"), "911-gt" for GT cars, or
                "911-<generation>" such as "911-997"
            trim: Trim name, matched case-insensitively with spaces as dashes

        Returns:
            Matching targets in configuration order
        """
        selected = []
        for target in self.targets:
            if model and not _model_matches(target, _name_key(model)):
                continue
            if trim and not (target.trim and _name_key(target.trim) == _name_key(trim)):
                continue
            selected.append(target)

        logger.debug(f"{self.name}: {len(selected)}/{len(self.targets)} targets for model={model} trim={trim}")
        return selected


def _name_key(name: str) -> str:
    return name.lower().replace(" ", "-")


def _model_matches(target: ScrapeTarget, model: str) -> bool:
    if model.startswith("911-"):
        suffix = model.split("-", 1)[1]
        if suffix == "gt":
            return target.model == "911" and bool(target.trim) and any(
                gt in target.trim for gt in ("GT2", "GT3", "GT4")
            )
        if suffix in GENERATIONS_911:
            return target.model == "911" and target.generation == suffix
        return False
    return target.slug.lower() == model or _name_key(target.model) == model


def _bat(model: str, slug: str, trim: str, path: str, generation: str | None = None) -> ScrapeTarget:
    return ScrapeTarget(
        model=model,
        slug=slug,
        trim=trim,
        generation=generation,
        search_url=f"https://bringatrailer.com/porsche/{path}/",
    )


BAT_TARGETS = [
    # 911 GT (GT3 RS shares the GT3 pages)
    _bat("911", "911", "GT3", "996-gt3", "996"),
    _bat("911", "911", "GT3", "997-gt3", "997"),
    _bat("911", "911", "GT3", "991-gt3", "991"),
    _bat("911", "911", "GT3", "992-gt3", "992"),
    _bat("911", "911", "GT3 RS", "996-gt3", "996"),
    _bat("911", "911", "GT3 RS", "997-gt3", "997"),
    _bat("911", "911", "GT3 RS", "991-gt3", "991"),
    _bat("911", "911", "GT3 RS", "992-gt3", "992"),
    _bat("911", "911", "GT2 RS", "991-gt2-rs", "991"),
    # 911 Carrera by generation
    _bat("911", "911", "Carrera", "964", "964"),
    _bat("911", "911", "Carrera", "993", "993"),
    _bat("911", "911", "Carrera", "996-911", "996"),
    _bat("911", "911", "Carrera", "997-911", "997"),
    _bat("911", "911", "Carrera", "991-911", "991"),
    _bat("911", "911", "Carrera", "992-911", "992"),
    _bat("911", "911", "Carrera S", "991-carrera-s", "991"),
    _bat("911", "911", "Carrera GTS", "991-carrera-gts", "991"),
    # 911 Turbo
    _bat("911", "911", "Turbo", "991-turbo", "991"),
    _bat("911", "911", "Turbo", "992-turbo", "992"),
    _bat("911", "911", "Turbo S", "991-turbo-s", "991"),
    _bat("911", "911", "Turbo S", "992-turbo-s", "992"),
    # 718 / 981 Cayman and Boxster (GT4 RS shares the GT4 page)
    _bat("718 Cayman", "718-cayman", "GT4", "cayman-gt4"),
    _bat("718 Cayman", "718-cayman", "GT4 RS", "cayman-gt4"),
    _bat("718 Cayman", "718-cayman", "GTS 4.0", "718-cayman-gts-4-0"),
    _bat("718 Cayman", "718-cayman", "Base", "718-cayman"),
    _bat("Cayman", "cayman", "S", "981-cayman-s"),
    _bat("718 Boxster", "718-boxster", "Spyder", "718-spyder"),
    _bat("718 Boxster", "718-boxster", "GTS", "718-boxster-gts"),
    _bat("Boxster", "boxster", "Spyder", "981-spyder"),
]


def _cab(model: str, slug: str, query: str, trim: str | None = None, generation: str | None = None) -> ScrapeTarget:
    return ScrapeTarget(
        model=model,
        slug=slug,
        trim=trim,
        generation=generation,
        search_url=f"https://carsandbids.com/past-auctions?q={quote(query)}",
    )


CARS_AND_BIDS_TARGETS = [
    _cab("911", "911", "porsche 911 gt3", trim="GT3"),
    _cab("911", "911", "porsche 911 gt3 rs", trim="GT3 RS"),
    _cab("911", "911", "porsche 911 turbo", trim="Turbo"),
    *[_cab("911", "911", f"porsche 911 {gen}", generation=gen) for gen in GENERATIONS_911],
    _cab("718 Cayman", "718-cayman", "porsche 718 cayman"),
    _cab("718 Cayman", "718-cayman", "porsche cayman gt4", trim="GT4"),
    _cab("718 Boxster", "718-boxster", "porsche 718 boxster"),
]

NON_VEHICLE_KEYWORDS = ("wheel", "seat", "tool", "kit", "emblem", "manual", "part")
VEHICLE_KEYWORDS = ("911", "718", "boxster", "cayman", "gt3", "gt2", "gt4", "turbo")


SOURCES: dict[str, SourceConfig] = {
    "bring-a-trailer": SourceConfig(
        name="bring-a-trailer",
        base_url="https://bringatrailer.com",
        targets=BAT_TARGETS,
        selectors=SourceSelectors(
            results_anchor="#results-anchor, .auctions-completed",
            card="a.listing-card",
            card_link="h3 a",
            card_title="h3",
            card_result=".item-results",
            load_more='button.button.button-show-more[data-bind="click: loadNextPage"]',
            loading_indicator='button.button-show-more span[data-bind="visible: itemsLoading"]',
            detail_wait="h1.listing-title, h1",
        ),
        structured_marker="auctionsCompletedInitialData",
        price_floor=15000.0,
        buyer_fee=BuyerFeePolicy(rate=0.05, cap=7500.0),
        circuit_threshold=10,
        detail_batch_size=50,
        blocklist=NON_VEHICLE_KEYWORDS,
        allowlist=VEHICLE_KEYWORDS,
        extra_trims=("GT4 RS", "GT3 RS", "Turbo S", "Carrera 4", "Carrera 4S", "Carrera T"),
    ),
    "cars-and-bids": SourceConfig(
        name="cars-and-bids",
        base_url="https://carsandbids.com",
        targets=CARS_AND_BIDS_TARGETS,
        selectors=SourceSelectors(
            results_anchor="ul.auctions-list, .past-auctions",
            card="li.auction-item",
            card_link=".auction-title a",
            card_title=".auction-title a",
            card_result=None,
            load_more="ul.paginator li.arrow.next button",
            detail_wait="h1",
        ),
        price_floor=15000.0,
        buyer_fee=None,
        circuit_threshold=5,
        detail_batch_size=25,
        blocklist=NON_VEHICLE_KEYWORDS,
        excluded=("cayenne", "macan", "panamera", "taycan"),
        allowlist=VEHICLE_KEYWORDS,
        extra_trims=("GT4 RS", "Turbo S"),
    ),
}


def get_source(name: str) -> SourceConfig:
    """Look up a built-in source by name."""
    try:
        return SOURCES[name]
    except KeyError:
        raise ValueError(f"Unknown source: {name}. Use: {list(SOURCES.keys())}") from None
