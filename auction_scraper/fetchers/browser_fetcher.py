"""
Browser Gateway Module

Remote browser gateway driven over the Chrome DevTools Protocol with
Playwright. Each connection attaches to a proxy-hosted browser whose egress
zone and sticky session come from the current ExecutionSession.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from playwright.async_api import Browser, Error as PlaywrightError, Page, TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright
from playwright_stealth import Stealth

from auction_scraper.config import GatewayConfig, config
from auction_scraper.errors import ConnectivityError, GatewayError, GatewayTimeoutError, NavigationError
from auction_scraper.fetchers.base import ActionKind, LoadMoreState, PageAction, ResultsSelectors
from auction_scraper.models import ExecutionSession, FetchResult


logger = logging.getLogger(__name__)


def cdp_endpoint(settings: GatewayConfig, session: ExecutionSession) -> str:
    """Build the authenticated CDP websocket URL for a session."""
    return (
        f"wss://brd-customer-{settings.customer_id}-zone-{session.egress_zone}"
        f"-session-{session.token}:{settings.password}@{settings.browser_host}"
    )


def _map_navigation_error(url: str, error: Exception) -> Exception:
    if isinstance(error, PlaywrightTimeoutError):
        return GatewayTimeoutError(f"Timed out loading {url}")
    message = str(error)
    if "ERR_TUNNEL_CONNECTION_FAILED" in message or "ERR_PROXY_CONNECTION_FAILED" in message:
        return GatewayError(502, message[:200])
    return NavigationError(f"Navigation failed for {url}: {message[:200]}")


class PlaywrightResultsPage:
    """
    A live search results page.

    Wraps a Playwright Page with the operations the pagination loop needs.
    """

    def __init__(self, page: Page, selectors: ResultsSelectors):
        self._page = page
        self._selectors = selectors

    async def scroll_to_results(self) -> None:
        try:
            anchor = await self._page.query_selector(self._selectors.results_anchor)
            if anchor:
                await anchor.scroll_into_view_if_needed()
            else:
                await self._page.evaluate("window.scrollTo(0, document.body.scrollHeight)")
        except PlaywrightError as e:
            raise _map_navigation_error(self._page.url, e) from e

    async def listing_urls(self) -> list[str]:
        try:
            # A card may itself be the link, or hold one
            return await self._page.eval_on_selector_all(
                self._selectors.card,
                "(els, link) => els.map(el => el.matches('a[href]') ? el.href"
                " : (el.querySelector(link) || {}).href).filter(Boolean)",
                self._selectors.card_link,
            )
        except PlaywrightError as e:
            raise _map_navigation_error(self._page.url, e) from e

    async def load_more_state(self) -> LoadMoreState:
        try:
            if self._selectors.loading_indicator:
                loading = await self._page.query_selector(self._selectors.loading_indicator)
                if loading and await loading.is_visible():
                    return LoadMoreState.LOADING

            button = await self._page.query_selector(self._selectors.load_more)
            if not button or not await button.is_visible():
                return LoadMoreState.ABSENT
            if await button.is_disabled():
                return LoadMoreState.LOADING
            return LoadMoreState.READY
        except PlaywrightError as e:
            raise _map_navigation_error(self._page.url, e) from e

    async def click_load_more(self) -> None:
        try:
            button = await self._page.query_selector(self._selectors.load_more)
        except PlaywrightError as e:
            raise _map_navigation_error(self._page.url, e) from e
        if button is None:
            raise NavigationError("Load-more control disappeared before click")
        try:
            await button.scroll_into_view_if_needed()
            await button.click()
        except PlaywrightError as e:
            raise NavigationError(f"Load-more click failed: {str(e)[:200]}") from e

    async def content(self) -> str:
        try:
            return await self._page.content()
        except PlaywrightError as e:
            raise _map_navigation_error(self._page.url, e) from e


class BrowserConnection:
    """One CDP-attached browser bound to an execution session."""

    def __init__(self, browser: Browser, session: ExecutionSession, stealth: Stealth):
        self._browser = browser
        self._session = session
        self._stealth = stealth
        self._pages: list[Page] = []

    async def _new_page(self, url: str) -> Page:
        profile = self._session.fingerprint
        try:
            if profile is not None:
                context = await self._browser.new_context(
                    user_agent=profile.user_agent,
                    viewport=profile.viewport,
                    locale=profile.accept_language.split(",")[0],
                )
            else:
                context = await self._browser.new_context()
            page = await context.new_page()
            await self._stealth.apply_stealth_async(page)
        except PlaywrightError as e:
            raise _map_navigation_error(url, e) from e
        self._pages.append(page)
        return page

    async def _goto(self, page: Page, url: str, timeout: float | None) -> int:
        try:
            response = await page.goto(
                url,
                timeout=(timeout or config.retry.search_timeout) * 1000,
                wait_until="domcontentloaded",
            )
        except PlaywrightError as e:
            raise _map_navigation_error(url, e) from e

        status_code = response.status if response else 200
        if status_code == 403 or status_code >= 500:
            raise GatewayError(status_code, f"target answered {status_code} for {url}")
        return status_code

    async def fetch(
        self,
        url: str,
        actions: list[PageAction] | None = None,
        wait_for: str | None = None,
        timeout: float | None = None,
    ) -> FetchResult:
        """
        Navigate to a URL, run optional actions and return the rendered HTML.

        Args:
            url: Target page
            actions: In-page actions to run after navigation
            wait_for: Selector that must appear before content is read
            timeout: Navigation timeout in seconds

        Returns:
            FetchResult with rendered HTML and evaluate results
        """
        start_time = time.time()
        page = await self._new_page(url)
        status_code = await self._goto(page, url, timeout)

        action_results = []
        try:
            if wait_for:
                await page.wait_for_selector(wait_for, timeout=(timeout or 30) * 1000)

            for action in actions or []:
                if action.kind is ActionKind.CLICK:
                    await page.click(action.selector)
                elif action.kind is ActionKind.WAIT:
                    await page.wait_for_timeout(action.ms)
                elif action.kind is ActionKind.EVALUATE:
                    action_results.append(await page.evaluate(action.script))
                elif action.kind is ActionKind.SCROLL:
                    if action.selector:
                        await page.locator(action.selector).first.scroll_into_view_if_needed()
                    else:
                        await page.evaluate("window.scrollTo(0, document.body.scrollHeight)")

            html = await page.content()
        except PlaywrightError as e:
            raise _map_navigation_error(url, e) from e

        return FetchResult(
            url=url,
            html=html,
            status_code=status_code,
            action_results=action_results,
            response_time=time.time() - start_time,
        )

    async def open_results_page(
        self,
        url: str,
        selectors: ResultsSelectors,
        timeout: float | None = None,
    ) -> Optional[PlaywrightResultsPage]:
        page = await self._new_page(url)
        await self._goto(page, url, timeout)
        try:
            await page.wait_for_selector(selectors.results_anchor, timeout=(timeout or 30) * 1000)
        except PlaywrightError as e:
            raise _map_navigation_error(url, e) from e
        return PlaywrightResultsPage(page, selectors)

    async def close(self) -> None:
        for page in self._pages:
            try:
                await page.context.close()
            except PlaywrightError as e:
                logger.debug(f"Page context already closed: {e}")
        self._pages.clear()


class BrowserGateway:
    """
    Gateway backed by a remote, proxy-hosted Chromium.

    Features:
    - CDP attach with per-session egress zone and sticky token
    - Stealth patches and fingerprint-matched context per page
    - Browser is closed on every exit path

    Example:
        gateway = BrowserGateway()
        async with gateway.connect(session) as conn:
            page = await conn.open_results_page(url, selectors)
    """

    name = "browser"

    def __init__(self, settings: GatewayConfig | None = None):
        """
        Initialize the gateway.

        Args:
            settings: Gateway settings (default from config)
        """
        self._settings = settings or config.gateway
        self._stealth = Stealth()

    def ensure_credentials(self) -> None:
        missing = [
            name for name, value in (
                ("SCRAPER_GATEWAY_CUSTOMER_ID", self._settings.customer_id),
                ("SCRAPER_GATEWAY_PASSWORD", self._settings.password),
            )
            if not value
        ]
        if missing:
            raise ConnectivityError(f"Missing browser gateway credentials: {', '.join(missing)}")

    @asynccontextmanager
    async def connect(self, session: ExecutionSession) -> AsyncIterator[BrowserConnection]:
        async with async_playwright() as playwright:
            try:
                browser = await playwright.chromium.connect_over_cdp(cdp_endpoint(self._settings, session))
            except PlaywrightError as e:
                raise ConnectivityError(f"Could not attach to remote browser: {str(e)[:200]}") from e

            connection = BrowserConnection(browser, session, self._stealth)
            try:
                yield connection
            finally:
                await connection.close()
                await browser.close()
