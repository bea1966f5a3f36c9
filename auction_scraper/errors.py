"""
Error taxonomy for the scrape engine.

Connectivity errors abort a run; gateway, navigation and timeout errors are
candidates for retry; extraction and persistence errors are item-level.
"""


class ScraperError(Exception):
    """Base class for all scraper errors."""


class ConnectivityError(ScraperError):
    """Gateway unreachable or credentials missing/rejected."""


class GatewayError(ScraperError):
    """Remote gateway answered with a non-success status."""

    def __init__(self, status_code: int, message: str = ""):
        self.status_code = status_code
        super().__init__(f"Gateway error ({status_code}): {message}" if message else f"Gateway error ({status_code})")


class NavigationError(ScraperError):
    """The remote page failed to navigate."""


class GatewayTimeoutError(ScraperError, TimeoutError):
    """A remote operation exceeded its timeout."""


class ExtractionError(ScraperError):
    """Expected content was absent from a fetched page."""


class PersistenceError(ScraperError):
    """Archive write or listing upsert failed."""
