"""
Configuration module for the auction scraper.

Uses Pydantic Settings for type-safe configuration with environment variable support.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SessionConfig(BaseSettings):
    """Execution session (egress identity) configuration."""

    model_config = SettingsConfigDict(env_prefix="SCRAPER_SESSION_")

    egress_zones: list[str] = Field(
        default=["residential_us_1", "residential_us_2", "residential_us_3"],
        description="Pool of egress zones a session may exit through",
    )
    max_requests: int = Field(default=30, description="Requests before a session is rotated")
    max_lifetime: float = Field(default=600.0, description="Session lifetime in seconds")
    fingerprint_rotation: bool = Field(default=True, description="Rotate browser fingerprints")

    @field_validator("egress_zones")
    @classmethod
    def _at_least_three_zones(cls, zones: list[str]) -> list[str]:
        if len(set(zones)) < 3:
            raise ValueError("egress_zones needs at least 3 distinct zones")
        return zones


class RetryConfig(BaseSettings):
    """Per-operation retry configuration."""

    model_config = SettingsConfigDict(env_prefix="SCRAPER_RETRY_")

    search_max_attempts: int = Field(default=3, description="Attempts for search/listing operations")
    detail_max_attempts: int = Field(default=2, description="Attempts for single-detail operations")
    base_delay_ms: int = Field(default=1000, description="Backoff base delay in milliseconds")
    jitter_ms: int = Field(default=1000, description="Maximum random jitter in milliseconds")

    # Timeouts (seconds)
    search_timeout: float = Field(default=60.0, description="Search page load timeout")
    detail_timeout: float = Field(default=45.0, description="Detail page fetch timeout")


class PaginationConfig(BaseSettings):
    """Load-more pagination configuration."""

    model_config = SettingsConfigDict(env_prefix="SCRAPER_PAGINATION_")

    max_clicks_cap: int = Field(default=50, description="Hard cap on load-more clicks")
    check_interval: int = Field(default=3, description="Run the duplicate check every N clicks")
    items_per_load: int = Field(default=20, description="Approximate items surfaced per click")
    duplicate_threshold: float = Field(default=0.8, description="Stop when this share is already known")

    # Waits (seconds)
    settle_delay: float = Field(default=3.0, description="Wait after scrolling to results")
    click_settle_delay: float = Field(default=3.0, description="Wait after each click")
    loading_poll_delay: float = Field(default=2.0, description="Wait while a load is in flight")
    max_loading_polls: int = Field(default=10, description="Loading polls before giving up")


class GatewayConfig(BaseSettings):
    """Remote browser / scraping API configuration."""

    model_config = SettingsConfigDict(env_prefix="SCRAPER_GATEWAY_")

    backend: Literal["browser", "api"] = Field(default="api", description="Gateway backend")

    # Remote browser (CDP over WebSocket)
    browser_host: str = Field(default="brd.superproxy.io:9222", description="Browser endpoint host")
    customer_id: str = Field(default="", description="Browser gateway customer id")
    password: str = Field(default="", description="Browser gateway password")

    # Scraping proxy API
    api_url: str = Field(default="https://app.scrapingbee.com/api/v1", description="Scraping API URL")
    api_key: str = Field(default="", description="Scraping API key")
    premium_proxy: bool = Field(default=True, description="Use the premium proxy tier")
    country_code: str = Field(default="us", description="Proxy country")
    block_ads: bool = Field(default=True, description="Block ads in the rendered page")
    api_max_timeout_ms: int = Field(default=140000, description="Largest timeout the scraping API accepts")


class ArchiveConfig(BaseSettings):
    """Raw content archive configuration."""

    model_config = SettingsConfigDict(env_prefix="SCRAPER_ARCHIVE_")

    base_path: Path = Field(default=Path("storage"), description="Archive root directory")
    bucket: str = Field(default="raw-html", description="Blob bucket name")
    max_file_bytes: int = Field(default=10 * 1024 * 1024, description="Max bytes per blob")
    allowed_content_types: list[str] = Field(
        default=["text/html", "text/plain", "application/octet-stream", "application/json"],
        description="Content types accepted by the bucket",
    )
    retention_days: int = Field(default=90, description="Days before an entry expires")
    ledger_db: str = Field(default="archive_ledger.db", description="Ledger SQLite filename")

    @property
    def bucket_path(self) -> Path:
        """Full path to the blob bucket."""
        return self.base_path / self.bucket

    @property
    def ledger_path(self) -> Path:
        """Full path to the ledger database."""
        return self.base_path / self.ledger_db


class OrchestratorConfig(BaseSettings):
    """Scrape run pacing configuration."""

    model_config = SettingsConfigDict(env_prefix="SCRAPER_RUN_")

    inter_target_delay: float = Field(default=3.0, description="Seconds between search targets")
    inter_item_delay: float = Field(default=2.0, description="Seconds between detail fetches")
    detail_batch_size: int = Field(default=50, description="Detail fetches per batch")


class ScraperConfig(BaseSettings):
    """Main scraper configuration aggregating all sub-configs."""

    model_config = SettingsConfigDict(
        env_prefix="SCRAPER_",
        env_nested_delimiter="__",
    )

    # Sub-configurations
    session: SessionConfig = Field(default_factory=SessionConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    pagination: PaginationConfig = Field(default_factory=PaginationConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    run: OrchestratorConfig = Field(default_factory=OrchestratorConfig)

    # Listing database
    listings_db: Path = Field(default=Path("storage/listings.db"), description="Listings SQLite path")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level"
    )

    def ensure_directories(self) -> None:
        """Create necessary storage directories if they don't exist."""
        self.archive.base_path.mkdir(parents=True, exist_ok=True)
        self.listings_db.parent.mkdir(parents=True, exist_ok=True)


# Global config instance (can be overridden)
config = ScraperConfig()
