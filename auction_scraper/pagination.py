"""
Pagination Controller Module

Drives a "load more" results view until the catalog is exhausted, a click
budget is spent, or the most recently loaded cards are mostly listings that
are already persisted.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable

from auction_scraper.config import PaginationConfig, config
from auction_scraper.errors import NavigationError
from auction_scraper.fetchers.base import GatewayConnection, LoadMoreState, PageAction, ResultsPage, ResultsSelectors
from auction_scraper.models import ExecutionSession, FetchResult, PaginationState, ScrapeTarget
from auction_scraper.safety.retry import RetryExecutor


logger = logging.getLogger(__name__)


def max_clicks_for(requested_pages: int, cap: int | None = None) -> int:
    """Click budget for a requested page count: min(requested, cap), never negative."""
    cap = config.pagination.max_clicks_cap if cap is None else cap
    return max(0, min(requested_pages, cap))


def duplicate_ratio(urls: list[str], existing: set[str] | frozenset[str], window: int) -> float:
    """
    Share of the last `window` URLs that are already known.

    Args:
        urls: Rendered card URLs in page order
        existing: Already-persisted URLs
        window: Number of most recent URLs to sample

    Returns:
        duplicates / checked, or 0.0 when nothing was checked
    """
    recent = urls[-window:] if window > 0 else []
    if not recent:
        return 0.0
    duplicates = sum(1 for url in recent if url in existing)
    return duplicates / len(recent)


def _click_script(selectors: ResultsSelectors) -> str:
    """In-page script that clicks the load-more control if it is ready."""
    return (
        "(function() {"
        f"  const button = document.querySelector({json.dumps(selectors.load_more)});"
        "  if (!button) return false;"
        f"  const loading = {json.dumps(selectors.loading_indicator)};"
        "  const spinner = loading ? document.querySelector(loading) : null;"
        "  if (spinner && window.getComputedStyle(spinner).display !== 'none') return false;"
        "  button.click();"
        "  return true;"
        "})()"
    )


@dataclass
class PaginationResult:
    """Final snapshot of a results view after pagination."""

    raw: FetchResult
    clicks: int
    stop_reason: str
    listing_urls: list[str] = field(default_factory=list)


class PaginationController:
    """
    Loads every page of a target's results view that is worth loading.

    Features:
    - Click budget capped at 50 regardless of the requested page count
    - Duplicate-ratio early stop every few clicks against persisted URLs
    - Loading states are waited out without spending a click
    - Scripted single-request fallback for backends without live pages

    Example:
        controller = PaginationController(executor, source.selectors.results_selectors())
        result = await controller.load_all(target, existing_urls, max_pages=3)
        html = result.raw.html
    """

    def __init__(
        self,
        executor: RetryExecutor,
        selectors: ResultsSelectors,
        settings: PaginationConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_attempts: int | None = None,
        navigation_timeout: float | None = None,
    ):
        """
        Initialize the controller.

        Args:
            executor: Retry executor used for the navigation
            selectors: Results page selectors of the source
            settings: Pagination settings (default from config)
            sleep: Async sleep function
            max_attempts: Navigation attempts (default from config)
            navigation_timeout: Search page load timeout in seconds (default from config)
        """
        self._executor = executor
        self._selectors = selectors
        self._settings = settings or config.pagination
        self._sleep = sleep
        self._max_attempts = max_attempts or config.retry.search_max_attempts
        self._navigation_timeout = navigation_timeout or config.retry.search_timeout

    async def load_all(
        self,
        target: ScrapeTarget,
        existing_urls: Iterable[str],
        max_pages: int,
    ) -> PaginationResult:
        """
        Navigate to a target's search page and load more results.

        Args:
            target: Search target
            existing_urls: Already-persisted listing URLs (read only)
            max_pages: Requested number of load-more clicks

        Returns:
            PaginationResult with the final content snapshot
        """
        existing = frozenset(existing_urls)
        max_clicks = max_clicks_for(max_pages, self._settings.max_clicks_cap)

        async def operation(connection: GatewayConnection, session: ExecutionSession) -> PaginationResult:
            page = await connection.open_results_page(
                target.search_url, self._selectors, timeout=self._navigation_timeout
            )
            if page is None:
                return await self._load_scripted(connection, target, max_clicks)
            return await self._load_interactive(page, target, existing, max_clicks)

        result = await self._executor.execute(
            operation,
            max_attempts=self._max_attempts,
            operation_id=f"search:{target.label}",
        )
        logger.info(f"{target.label}: {result.clicks}/{max_clicks} clicks, stopped ({result.stop_reason})")
        return result

    async def _load_interactive(
        self,
        page: ResultsPage,
        target: ScrapeTarget,
        existing: frozenset[str],
        max_clicks: int,
    ) -> PaginationResult:
        start_time = time.time()
        settings = self._settings

        await page.scroll_to_results()
        await self._sleep(settings.settle_delay)

        state = PaginationState(
            max_clicks=max_clicks,
            check_interval=settings.check_interval,
            items_per_load=settings.items_per_load,
            duplicate_threshold=settings.duplicate_threshold,
        )
        stop_reason = "max_clicks"
        loading_polls = 0
        checked_at = -1

        while not state.exhausted:
            if state.should_check_duplicates(bool(existing)) and checked_at != state.click_count:
                checked_at = state.click_count
                urls = await page.listing_urls()
                ratio = duplicate_ratio(urls, existing, state.window_size)
                if ratio >= state.duplicate_threshold:
                    logger.info(
                        f"{target.label}: {ratio:.0%} of the last {min(len(urls), state.window_size)} "
                        "cards are already known, stopping pagination"
                    )
                    stop_reason = "duplicates"
                    break

            load_more = await page.load_more_state()
            if load_more is LoadMoreState.ABSENT:
                stop_reason = "exhausted"
                break

            if load_more is LoadMoreState.LOADING:
                loading_polls += 1
                if loading_polls > settings.max_loading_polls:
                    logger.warning(f"{target.label}: results still loading after {loading_polls - 1} checks")
                    stop_reason = "loading_timeout"
                    break
                await self._sleep(settings.loading_poll_delay)
                continue

            loading_polls = 0
            try:
                await page.click_load_more()
            except NavigationError as e:
                logger.info(f"{target.label}: load-more click failed, treating catalog as loaded ({e})")
                stop_reason = "click_failed"
                break

            state.click_count += 1
            logger.debug(f"{target.label}: loading more ({state.click_count}/{state.max_clicks})")
            await self._sleep(settings.click_settle_delay)

        urls = await page.listing_urls()
        raw = FetchResult(
            url=target.search_url,
            html=await page.content(),
            response_time=time.time() - start_time,
        )
        return PaginationResult(raw=raw, clicks=state.click_count, stop_reason=stop_reason, listing_urls=urls)

    async def _load_scripted(
        self,
        connection: GatewayConnection,
        target: ScrapeTarget,
        max_clicks: int,
    ) -> PaginationResult:
        # The whole click sequence runs remotely, so the duplicate check
        # cannot interleave with it
        settings = self._settings
        actions = [
            PageAction.scroll(self._selectors.results_anchor),
            PageAction.wait(int(settings.settle_delay * 1000)),
        ]
        click_script = _click_script(self._selectors)
        for _ in range(max_clicks):
            actions.append(PageAction.evaluate(click_script))
            actions.append(PageAction.wait(int(settings.click_settle_delay * 1000)))

        raw = await connection.fetch(
            target.search_url,
            actions=actions,
            wait_for=self._selectors.card,
            timeout=self._navigation_timeout + max_clicks * settings.click_settle_delay,
        )
        clicks = sum(1 for value in raw.action_results if value is True)
        return PaginationResult(raw=raw, clicks=clicks, stop_reason="scripted")
