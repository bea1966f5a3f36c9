"""
Shared fixtures and in-memory fakes for the scraper tests.
"""

import random
from contextlib import asynccontextmanager
from typing import Any

import pytest

from auction_scraper.errors import ConnectivityError, NavigationError
from auction_scraper.fetchers.base import LoadMoreState
from auction_scraper.models import FetchResult
from auction_scraper.safety.retry import RetryExecutor
from auction_scraper.stealth import ExecutionSessionManager, StaticFingerprint


ZONES = ["zone_a", "zone_b", "zone_c"]


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep that records delays and advances a fake clock instead of blocking."""

    def __init__(self, clock: FakeClock | None = None):
        self.delays: list[float] = []
        self._clock = clock

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self._clock is not None:
            self._clock.advance(seconds)


def listing_url(n: int) -> str:
    return f"https://bringatrailer.com/listing/car-{n}/"


def bat_card(url: str, title: str, result: str) -> str:
    return (
        f'<a class="listing-card" href="{url}">'
        f'<h3>{title}</h3>'
        f'<div class="item-results">{result}</div>'
        "</a>"
    )


def bat_page(cards: list[str], embedded: str = "") -> str:
    script = f"<script>{embedded}</script>" if embedded else ""
    return (
        "<html><head></head><body>"
        '<div id="results-anchor"></div>'
        f'<div class="auctions-completed">{"".join(cards)}</div>'
        f"{script}"
        "</body></html>"
    )


class FakeResultsPage:
    """
    Live results view with a scripted "load more" behaviour.

    Each click appends the next batch of URLs. Before every READY the page
    reports `loading_polls` LOADING states; once batches run out the control
    disappears, unless `stuck_loading` keeps it loading forever.
    """

    def __init__(
        self,
        initial: list[str],
        loads: list[list[str]] | None = None,
        loading_polls: int = 0,
        stuck_loading: bool = False,
        fail_click: bool = False,
    ):
        self.urls = list(initial)
        self.loads = [list(batch) for batch in (loads or [])]
        self.loading_polls = loading_polls
        self.stuck_loading = stuck_loading
        self.fail_click = fail_click
        self.clicks = 0
        self.scrolled = False
        self.state_checks = 0
        self._pending_loading = loading_polls

    async def scroll_to_results(self) -> None:
        self.scrolled = True

    async def listing_urls(self) -> list[str]:
        return list(self.urls)

    async def load_more_state(self) -> LoadMoreState:
        self.state_checks += 1
        if self.stuck_loading:
            return LoadMoreState.LOADING
        if not self.loads:
            return LoadMoreState.ABSENT
        if self._pending_loading > 0:
            self._pending_loading -= 1
            return LoadMoreState.LOADING
        return LoadMoreState.READY

    async def click_load_more(self) -> None:
        if self.fail_click:
            raise NavigationError("Load-more click failed: element detached")
        self.urls.extend(self.loads.pop(0))
        self.clicks += 1
        self._pending_loading = self.loading_polls

    async def content(self) -> str:
        return bat_page([bat_card(url, "2019 Porsche 911 GT3", "Sold for USD $150,000") for url in self.urls])


class FakeConnection:
    """
    Connection returning canned pages.

    `pages` maps URL to HTML, a FetchResult, or an exception to raise.
    `results_pages` maps search URL to a FakeResultsPage (or an exception);
    leave it None to behave like a scripted-only backend.
    """

    def __init__(
        self,
        pages: dict[str, Any] | None = None,
        results_pages: dict[str, Any] | None = None,
    ):
        self.pages = pages or {}
        self.results_pages = results_pages
        self.fetched: list[str] = []
        self.fetch_calls: list[dict] = []

    async def fetch(self, url, actions=None, wait_for=None, timeout=None) -> FetchResult:
        self.fetched.append(url)
        self.fetch_calls.append({"url": url, "actions": actions, "wait_for": wait_for, "timeout": timeout})
        response = self.pages.get(url)
        if callable(response):
            response = response()
        if isinstance(response, Exception):
            raise response
        if response is None:
            raise NavigationError(f"No page for {url}")
        if isinstance(response, FetchResult):
            return response
        return FetchResult(url=url, html=response)

    async def open_results_page(self, url, selectors, timeout=None):
        if self.results_pages is None:
            return None
        page = self.results_pages.get(url)
        if isinstance(page, Exception):
            raise page
        if page is None:
            raise NavigationError(f"No results page for {url}")
        return page


class FakeGateway:
    """Gateway whose connections are FakeConnections; tracks open/close balance."""

    name = "fake"

    def __init__(self, connection: FakeConnection | None = None, has_credentials: bool = True):
        self.connection = connection or FakeConnection()
        self.has_credentials = has_credentials
        self.sessions = []
        self.open_connections = 0

    def ensure_credentials(self) -> None:
        if not self.has_credentials:
            raise ConnectivityError("Missing fake gateway credentials")

    @asynccontextmanager
    async def connect(self, session):
        self.sessions.append(session)
        self.open_connections += 1
        try:
            yield self.connection
        finally:
            self.open_connections -= 1


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep(clock):
    return RecordingSleep(clock)


@pytest.fixture
def sessions(clock):
    return ExecutionSessionManager(
        egress_zones=ZONES,
        max_requests=30,
        max_lifetime=600.0,
        fingerprint=StaticFingerprint(),
        clock=clock,
        rng=random.Random(7),
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def executor(gateway, sessions, sleep):
    return RetryExecutor(gateway, sessions, sleep=sleep, rng=random.Random(1))
