"""
Gateway Contracts Module

The remote browser endpoint and the scraping-proxy API are interchangeable
behind these protocols. Orchestration code only sees `Gateway.connect()` and
the connection it yields.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncContextManager, Optional, Protocol

from auction_scraper.models import ExecutionSession, FetchResult


class ActionKind(Enum):
    """In-page action types understood by both backends."""
    CLICK = "click"
    WAIT = "wait"
    EVALUATE = "evaluate"
    SCROLL = "scroll"


@dataclass
class PageAction:
    """A single in-page action of a scripted scenario."""

    kind: ActionKind
    selector: str | None = None
    script: str | None = None
    ms: int = 0

    @classmethod
    def click(cls, selector: str) -> "PageAction":
        return cls(ActionKind.CLICK, selector=selector)

    @classmethod
    def wait(cls, ms: int) -> "PageAction":
        return cls(ActionKind.WAIT, ms=ms)

    @classmethod
    def evaluate(cls, script: str) -> "PageAction":
        return cls(ActionKind.EVALUATE, script=script)

    @classmethod
    def scroll(cls, selector: str | None = None) -> "PageAction":
        return cls(ActionKind.SCROLL, selector=selector)


class LoadMoreState(Enum):
    """State of a results view's "load more" affordance."""
    ABSENT = "absent"
    LOADING = "loading"
    READY = "ready"


@dataclass
class ResultsSelectors:
    """Selectors an interactive page needs to drive pagination."""

    results_anchor: str
    card: str
    card_link: str
    load_more: str
    loading_indicator: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class ResultsPage(Protocol):
    """A live, interactive search results view."""

    async def scroll_to_results(self) -> None:
        ...

    async def listing_urls(self) -> list[str]:
        """URLs of all currently rendered result cards, in page order."""
        ...

    async def load_more_state(self) -> LoadMoreState:
        ...

    async def click_load_more(self) -> None:
        ...

    async def content(self) -> str:
        ...


class GatewayConnection(Protocol):
    """One open remote connection, bound to one execution session."""

    async def fetch(
        self,
        url: str,
        actions: list[PageAction] | None = None,
        wait_for: str | None = None,
        timeout: float | None = None,
    ) -> FetchResult:
        ...

    async def open_results_page(
        self,
        url: str,
        selectors: ResultsSelectors,
        timeout: float | None = None,
    ) -> Optional[ResultsPage]:
        """Navigate to a results view, or return None if the backend is scripted-only."""
        ...


class Gateway(Protocol):
    """Factory for remote connections."""

    name: str

    def ensure_credentials(self) -> None:
        """Raise ConnectivityError when the backend cannot authenticate."""
        ...

    def connect(self, session: ExecutionSession) -> AsyncContextManager[GatewayConnection]:
        ...
