"""Fetchers module - remote browser and scraping-API gateways."""

from .api_fetcher import ScrapingApiGateway
from .base import Gateway, GatewayConnection, LoadMoreState, PageAction, ResultsPage, ResultsSelectors
from .browser_fetcher import BrowserGateway

__all__ = [
    "BrowserGateway",
    "Gateway",
    "GatewayConnection",
    "LoadMoreState",
    "PageAction",
    "ResultsPage",
    "ResultsSelectors",
    "ScrapingApiGateway",
    "create_gateway",
]


def create_gateway(backend: str | None = None) -> Gateway:
    """Build the gateway for a backend name ("browser" or "api")."""
    from auction_scraper.config import config

    backend = backend or config.gateway.backend
    if backend == "browser":
        return BrowserGateway()
    if backend == "api":
        return ScrapingApiGateway()
    raise ValueError(f"Unknown gateway backend: {backend}")
