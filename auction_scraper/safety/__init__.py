"""Safety module - retries, circuit breaking and pacing."""

from .rate_limiter import FixedDelayRateLimiter
from .retry import BatchCircuitBreaker, RetryExecutor, classify_error, compute_backoff

__all__ = ["BatchCircuitBreaker", "FixedDelayRateLimiter", "RetryExecutor", "classify_error", "compute_backoff"]
