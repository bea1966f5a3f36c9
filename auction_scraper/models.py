"""
Core data model shared by the session, retry, pagination, extraction,
archive and orchestration layers.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


@dataclass(frozen=True)
class ExecutionSession:
    """
    An immutable remote execution identity.

    The session manager swaps whole values instead of mutating fields, so an
    operation that captured a session keeps a consistent snapshot even if a
    rotation happens while it is in flight.
    """

    egress_zone: str
    token: str
    created_at: float
    request_count: int = 0
    max_requests: int = 30
    max_lifetime: float = 600.0
    fingerprint: Optional[Any] = None

    def age(self, now: float) -> float:
        """Seconds since the session was issued."""
        return now - self.created_at

    def should_rotate(self, now: float) -> bool:
        """True once either the request or the lifetime threshold is reached."""
        return self.request_count >= self.max_requests or self.age(now) >= self.max_lifetime


class ErrorClass(Enum):
    """Classification of a failed remote operation."""
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass
class RetryAttempt:
    """One failed attempt of a retried operation."""

    operation_id: str
    attempt: int  # 0-based
    classification: ErrorClass
    delay: float = 0.0  # seconds slept before the next attempt
    error: str = ""


@dataclass
class PaginationState:
    """Progress of a load-more loop."""

    max_clicks: int
    check_interval: int = 3
    items_per_load: int = 20
    duplicate_threshold: float = 0.8
    click_count: int = 0

    @property
    def window_size(self) -> int:
        """Number of most recently loaded items sampled by the duplicate check."""
        return self.check_interval * self.items_per_load

    @property
    def exhausted(self) -> bool:
        return self.click_count >= self.max_clicks

    def should_check_duplicates(self, has_existing: bool) -> bool:
        return (
            has_existing
            and self.click_count > 0
            and self.click_count % self.check_interval == 0
        )


class ListingStatus(Enum):
    """Auction outcome derived from listing text."""
    SOLD = "sold"
    ACTIVE = "active"
    UNSOLD = "unsold"


@dataclass(frozen=True)
class BuyerFee:
    """Buyer-fee annotation for a hammer price."""

    amount: float
    price_with_fee: float
    price_before_fee: float


@dataclass
class CandidateListing:
    """A listing discovered by a scrape, keyed by its source URL."""

    url: str
    title: str
    price: float
    status: ListingStatus = ListingStatus.SOLD
    buyer_fee: Optional[BuyerFee] = None

    # Target context
    model: Optional[str] = None
    trim: Optional[str] = None
    generation: Optional[str] = None

    # Detail fields
    year: Optional[int] = None
    mileage: Optional[int] = None
    vin: Optional[str] = None
    location: Optional[str] = None
    sold_date: Optional[datetime] = None
    exterior_color: Optional[str] = None
    transmission: Optional[str] = None

    @property
    def final_price(self) -> float:
        """Price the buyer actually pays (fee-inclusive when a fee applies)."""
        return self.buyer_fee.price_with_fee if self.buyer_fee else self.price

    def to_dict(self) -> dict:
        """Convert to a flat, JSON-friendly dictionary."""
        data = asdict(self)
        data["status"] = self.status.value
        data["final_price"] = self.final_price
        fee = data.pop("buyer_fee")
        data["buyer_fee_amount"] = fee["amount"] if fee else None
        data["price_before_fee"] = fee["price_before_fee"] if fee else None
        data["sold_date"] = self.sold_date.isoformat() if self.sold_date else None
        return data


@dataclass
class ArchiveEntry:
    """Ledger row describing one archived artifact."""

    path: str
    content_hash: str
    size_bytes: int
    created_at: datetime
    expires_at: datetime
    source: str
    url: str
    artifact_type: str
    listing_key: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    id: Optional[int] = None


@dataclass(frozen=True)
class ScrapeTarget:
    """One model/trim/generation search page of a source."""

    model: str
    slug: str
    search_url: str
    trim: Optional[str] = None
    generation: Optional[str] = None

    @property
    def label(self) -> str:
        parts = [self.model, self.trim or "", f"({self.generation or 'all'})"]
        return " ".join(p for p in parts if p)


@dataclass
class FilterParams:
    """Caller-supplied selection for a scrape run."""

    model: Optional[str] = None
    trim: Optional[str] = None
    max_pages: int = 1
    only_sold: bool = True
    fetch_details: bool = True
    persist: bool = True


@dataclass
class FetchResult:
    """Rendered content returned by a gateway."""

    url: str
    html: str = ""
    status_code: int = 200
    action_results: list[Any] = field(default_factory=list)
    response_time: float = 0.0
