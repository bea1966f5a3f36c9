"""
Main Orchestrator Module

The central coordinator that connects all scraping components.
Runs one scrape of one source: search phase per target, deduplication,
then a batched detail phase behind a circuit breaker.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Iterable, List, Optional

from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn

from auction_scraper.config import ScraperConfig, config as global_config
from auction_scraper.errors import ConnectivityError, PersistenceError, ScraperError
from auction_scraper.fetchers import Gateway, create_gateway
from auction_scraper.models import CandidateListing, FetchResult, FilterParams, ScrapeTarget
from auction_scraper.pagination import PaginationController
from auction_scraper.pipeline.archive import ContentArchive
from auction_scraper.pipeline.extractor import ListingExtractor
from auction_scraper.pipeline.listing_store import ListingStore
from auction_scraper.safety.rate_limiter import FixedDelayRateLimiter
from auction_scraper.safety.retry import BatchCircuitBreaker, RetryExecutor
from auction_scraper.sources import SourceConfig, get_source
from auction_scraper.stealth.session_manager import ExecutionSessionManager


console = Console()
logger = logging.getLogger(__name__)


class ScraperStatus(Enum):
    """Status of the scraper."""
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class ScraperStats:
    """Statistics for a scraping run."""

    started_at: float = 0.0
    finished_at: float = 0.0
    targets_processed: int = 0
    targets_failed: int = 0
    candidates_found: int = 0
    details_skipped: int = 0
    details_fetched: int = 0
    details_failed: int = 0
    listings_persisted: int = 0
    archive_failures: int = 0
    circuit_tripped: bool = False

    @property
    def duration(self) -> float:
        """Duration in seconds."""
        if self.finished_at:
            return self.finished_at - self.started_at
        return time.time() - self.started_at

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "duration_seconds": round(self.duration, 2),
            "targets_processed": self.targets_processed,
            "targets_failed": self.targets_failed,
            "candidates_found": self.candidates_found,
            "details_skipped": self.details_skipped,
            "details_fetched": self.details_fetched,
            "details_failed": self.details_failed,
            "listings_persisted": self.listings_persisted,
            "archive_failures": self.archive_failures,
            "circuit_tripped": self.circuit_tripped,
        }


def dedupe_by_url(listings: Iterable[CandidateListing]) -> list[CandidateListing]:
    """Keep the first listing seen for each URL, in order."""
    seen: dict[str, CandidateListing] = {}
    for listing in listings:
        seen.setdefault(listing.url, listing)
    return list(seen.values())


class ScrapeOrchestrator:
    """
    Main scraper orchestrator connecting all components.

    Implements the complete workflow:
    1. Preflight: gateway credentials and the persisted-URL snapshot
    2. Per target: paginate, archive the search page, extract candidates
    3. Deduplicate candidates by URL
    4. Per new candidate: fetch detail, archive, extract, merge, persist
    5. Stop early on a tripped circuit breaker or stop() and keep what
       was collected so far

    Example:
        orchestrator = ScrapeOrchestrator()
        listings = await orchestrator.run(
            "bring-a-trailer",
            FilterParams(model="911", trim="GT3", max_pages=3),
        )
    """

    def __init__(
        self,
        gateway: Gateway | None = None,
        sessions: ExecutionSessionManager | None = None,
        archive: ContentArchive | None = None,
        store: ListingStore | None = None,
        limiter: FixedDelayRateLimiter | None = None,
        executor: RetryExecutor | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        config: ScraperConfig | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            gateway: Remote gateway (backend from config if None)
            sessions: Execution session manager
            archive: Raw content archive
            store: Listing persistence (runs without persistence if None)
            limiter: Inter-target / inter-item pacing
            executor: Retry executor (built from gateway and sessions if None)
            sleep: Async sleep function used by retries and pagination
            config: Custom configuration (uses global if None)
        """
        self._config = config or global_config
        self._gateway = gateway or create_gateway()
        self._sessions = sessions or ExecutionSessionManager()
        self._archive = archive or ContentArchive()
        self._store = store
        self._limiter = limiter or FixedDelayRateLimiter(sleep=sleep)
        self._sleep = sleep
        self._executor = executor or RetryExecutor(self._gateway, self._sessions, sleep=sleep)

        # State
        self._status = ScraperStatus.IDLE
        self._stats = ScraperStats()
        self._stop_event = asyncio.Event()

    @property
    def stats(self) -> ScraperStats:
        return self._stats

    async def _preflight(self, source: SourceConfig) -> frozenset[str]:
        """Fail fast on missing credentials and take the persisted-URL snapshot."""
        self._gateway.ensure_credentials()

        if self._store is None:
            return frozenset()
        try:
            existing = await self._store.query_existing_urls(source.name)
        except PersistenceError as e:
            raise ConnectivityError(f"Listing store unavailable: {e}") from e

        logger.info(f"{source.name}: {len(existing)} listings already persisted")
        return frozenset(existing)

    async def _archive_page(
        self,
        source: SourceConfig,
        raw: FetchResult,
        artifact_type: str,
        target: ScrapeTarget | None = None,
        listing: CandidateListing | None = None,
    ) -> bool:
        context = listing or target
        try:
            await self._archive.store(
                source=source.name,
                url=raw.url,
                content=raw.html,
                artifact_type=artifact_type,
                model=context.model if context else None,
                trim=context.trim if context else None,
                generation=context.generation if context else None,
                metadata={"status_code": raw.status_code, "response_time": round(raw.response_time, 3)},
            )
        except PersistenceError as e:
            self._stats.archive_failures += 1
            logger.error(f"Archive write failed for {raw.url}: {e}")
            return False
        return True

    async def _search_target(
        self,
        source: SourceConfig,
        target: ScrapeTarget,
        controller: PaginationController,
        extractor: ListingExtractor,
        existing: frozenset[str],
        params: FilterParams,
    ) -> list[CandidateListing]:
        result = await controller.load_all(target, existing, params.max_pages)

        # A lost search snapshot is logged; the extracted candidates are still usable
        await self._archive_page(source, result.raw, "search", target=target)

        return extractor.extract(result.raw, target, params)

    async def _persist(self, source: SourceConfig, listing: CandidateListing) -> bool:
        if self._store is None:
            return True
        try:
            await self._store.upsert(source.name, listing)
        except PersistenceError as e:
            logger.error(f"Could not persist {listing.url}: {e}")
            return False
        self._stats.listings_persisted += 1
        return True

    async def _fetch_detail(
        self,
        source: SourceConfig,
        candidate: CandidateListing,
        extractor: ListingExtractor,
        breaker: BatchCircuitBreaker,
        params: FilterParams,
    ) -> Optional[CandidateListing]:
        """Process one candidate. Returns the merged listing, or None if the item failed."""
        timeout = self._config.retry.detail_timeout
        wait_for = source.selectors.detail_wait

        async def operation(connection, session) -> FetchResult:
            return await connection.fetch(candidate.url, wait_for=wait_for, timeout=timeout)

        try:
            raw = await self._executor.execute(
                operation,
                max_attempts=self._config.retry.detail_max_attempts,
                operation_id=f"detail:{candidate.url}",
                timeout=timeout,
            )
        except ConnectivityError:
            raise
        except Exception as e:
            self._stats.details_failed += 1
            logger.warning(f"Detail fetch failed for {candidate.url}: {e}")
            if breaker.record_failure():
                self._stats.circuit_tripped = True
            return None

        # Unarchived items are not persisted, so the next run fetches them again
        if not await self._archive_page(source, raw, "detail", listing=candidate):
            self._stats.details_failed += 1
            return None

        try:
            detail = extractor.extract_detail(raw.html, candidate.url)
        except ScraperError as e:
            self._stats.details_failed += 1
            logger.warning(f"Skipping {candidate.url}: {e}")
            return None

        merged = extractor.merge_detail(candidate, detail)
        if params.persist and not await self._persist(source, merged):
            self._stats.details_failed += 1
            return None

        # Only a fully processed item closes the failure streak
        breaker.record_success()
        self._stats.details_fetched += 1
        return merged

    async def fetch_details(
        self,
        source: SourceConfig,
        candidates: List[CandidateListing],
        existing: Iterable[str],
        params: FilterParams,
    ) -> List[CandidateListing]:
        """
        Batched detail phase.

        Candidates whose URL is already persisted are skipped. Stops early
        (keeping accumulated results) when the circuit breaker trips, stop()
        is called or the gateway becomes unreachable.

        Args:
            source: Source being scraped
            candidates: Deduplicated search candidates
            existing: Persisted-URL snapshot taken at run start
            params: Caller filters

        Returns:
            Listings whose detail fetch succeeded
        """
        known = set(existing)
        pending = [c for c in candidates if c.url not in known]
        self._stats.details_skipped += len(candidates) - len(pending)
        if not pending:
            return []

        extractor = ListingExtractor(source)
        breaker = BatchCircuitBreaker(source.circuit_threshold)
        batch_size = source.detail_batch_size or self._config.run.detail_batch_size
        results: List[CandidateListing] = []

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            console=console,
            transient=True,
        ) as progress:
            task = progress.add_task(f"{source.name} details", total=len(pending))

            for start in range(0, len(pending), batch_size):
                batch = pending[start:start + batch_size]
                logger.info(
                    f"{source.name}: detail batch {start // batch_size + 1} "
                    f"({len(batch)} items, {len(results)} done so far)"
                )

                for candidate in batch:
                    if breaker.tripped or self._stop_event.is_set():
                        break

                    await self._limiter.wait("item")
                    try:
                        listing = await self._fetch_detail(source, candidate, extractor, breaker, params)
                    except ConnectivityError as e:
                        logger.error(f"Gateway unreachable, ending detail phase early: {e}")
                        return results
                    finally:
                        self._limiter.mark("item")
                        progress.advance(task)

                    if listing is not None:
                        results.append(listing)

                if breaker.tripped or self._stop_event.is_set():
                    break

        return results

    async def run(
        self,
        source: SourceConfig | str,
        params: FilterParams | None = None,
    ) -> List[CandidateListing]:
        """
        Run a scrape of one source.

        Args:
            source: Source config or built-in source name
            params: Target selection and run options

        Returns:
            Collected listings (possibly partial, possibly empty)

        Raises:
            ConnectivityError: If credentials are missing or the listing
                store is unreachable at run start
        """
        if isinstance(source, str):
            source = get_source(source)
        params = params or FilterParams()

        self._status = ScraperStatus.RUNNING
        self._stats = ScraperStats(started_at=time.time())
        self._stop_event.clear()
        self._executor.clear_history()

        try:
            existing = await self._preflight(source)
            candidates = await self._search_phase(source, existing, params)

            if params.fetch_details and candidates and not self._stop_event.is_set():
                listings = await self.fetch_details(source, candidates, existing, params)
            else:
                listings = candidates
                if params.persist:
                    for listing in candidates:
                        await self._persist(source, listing)
        finally:
            self._stats.finished_at = time.time()
            self._status = ScraperStatus.STOPPED if self._stop_event.is_set() else ScraperStatus.IDLE

        self._print_summary(source, listings)
        return listings

    async def _search_phase(
        self,
        source: SourceConfig,
        existing: frozenset[str],
        params: FilterParams,
    ) -> List[CandidateListing]:
        targets = source.filter_targets(model=params.model, trim=params.trim)
        if not targets:
            console.print(f"[yellow]No {source.name} targets match model={params.model} trim={params.trim}[/yellow]")
            return []

        console.print(f"[blue]Searching {len(targets)} {source.name} targets...[/blue]")
        controller = PaginationController(
            self._executor,
            source.selectors.results_selectors(),
            settings=self._config.pagination,
            sleep=self._sleep,
            max_attempts=self._config.retry.search_max_attempts,
            navigation_timeout=self._config.retry.search_timeout,
        )
        extractor = ListingExtractor(source)
        collected: List[CandidateListing] = []

        for target in targets:
            if self._stop_event.is_set():
                logger.info("Stop requested, skipping remaining targets")
                break

            await self._limiter.wait("target")
            try:
                found = await self._search_target(source, target, controller, extractor, existing, params)
            except ConnectivityError as e:
                logger.error(f"Gateway unreachable, ending search phase early: {e}")
                self._stats.targets_failed += 1
                break
            except Exception as e:
                logger.error(f"Target {target.label} failed, moving on: {e}")
                self._stats.targets_failed += 1
                continue
            finally:
                self._limiter.mark("target")

            self._stats.targets_processed += 1
            collected.extend(found)

        unique = dedupe_by_url(collected)
        self._stats.candidates_found = len(unique)
        logger.info(f"{source.name}: {len(collected)} candidates, {len(unique)} unique")
        return unique

    def _print_summary(self, source: SourceConfig, listings: List[CandidateListing]) -> None:
        stats = self._stats
        console.print(f"\n[bold]{source.name} scrape complete![/bold]")
        console.print(f"  Targets: {stats.targets_processed} ok, {stats.targets_failed} failed")
        console.print(f"  Candidates: {stats.candidates_found}")
        console.print(
            f"  Details: {stats.details_fetched} ok, {stats.details_failed} failed, "
            f"{stats.details_skipped} already persisted"
        )
        if stats.circuit_tripped:
            console.print("  [red]Circuit breaker tripped, results are partial[/red]")
        console.print(f"  Listings returned: {len(listings)}")
        console.print(f"  Duration: {stats.duration:.2f}s")

    def stop(self) -> None:
        """Stop the scraper gracefully after the current target or item."""
        self._stop_event.set()
        self._status = ScraperStatus.STOPPED

    def get_stats(self) -> dict:
        """Get current statistics."""
        return {
            "status": self._status.value,
            "scraper": self._stats.to_dict(),
            "sessions": self._sessions.get_stats(),
            "pacing": self._limiter.get_stats(),
        }
