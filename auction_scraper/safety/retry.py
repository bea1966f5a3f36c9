"""
Retry Executor Module

Single place for error classification, exponential backoff with jitter and
session rotation between attempts. Also provides the batch-level circuit
breaker used by loops over many independent items.
"""

import asyncio
import logging
import random
from collections import deque
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from auction_scraper.config import config
from auction_scraper.errors import GatewayError, GatewayTimeoutError, NavigationError
from auction_scraper.fetchers.base import Gateway, GatewayConnection
from auction_scraper.models import ErrorClass, ExecutionSession, RetryAttempt
from auction_scraper.stealth.session_manager import ExecutionSessionManager


logger = logging.getLogger(__name__)

T = TypeVar("T")

HISTORY_LIMIT = 500

Operation = Callable[[GatewayConnection, ExecutionSession], Awaitable[T]]


def classify_error(error: BaseException) -> ErrorClass:
    """
    Classify a failure as retryable or fatal.

    Retryable: HTTP 403, HTTP 5xx, timeouts and navigation failures.
    Everything else (including connectivity and credential errors) is fatal.
    """
    if isinstance(error, GatewayError):
        if error.status_code == 403 or 500 <= error.status_code < 600:
            return ErrorClass.RETRYABLE
        return ErrorClass.FATAL
    if isinstance(error, (GatewayTimeoutError, asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return ErrorClass.RETRYABLE
    if isinstance(error, NavigationError):
        return ErrorClass.RETRYABLE
    return ErrorClass.FATAL


def compute_backoff(
    failure_number: int,
    base_ms: int | None = None,
    jitter_ms: int | None = None,
    rng: random.Random | None = None,
) -> float:
    """
    Backoff delay in seconds for the n-th failure (1-based).

    delay = 2^n * base + uniform(0, jitter), i.e. 2s, 4s, 8s (+ up to 1s)
    with the default base of 1000ms.
    """
    base_ms = config.retry.base_delay_ms if base_ms is None else base_ms
    jitter_ms = config.retry.jitter_ms if jitter_ms is None else jitter_ms
    jitter = (rng or random).uniform(0, jitter_ms)
    return ((2 ** failure_number) * base_ms + jitter) / 1000


class RetryExecutor:
    """
    Runs remote operations with classification-driven retries.

    Each attempt acquires the current session, opens a gateway connection as
    an async context manager (released on success, retry and final failure)
    and applies an optional timeout. Retryable failures rotate the session
    and back off before the next attempt; fatal failures propagate at once.

    Example:
        executor = RetryExecutor(gateway, sessions)
        result = await executor.execute(
            lambda conn, session: conn.fetch(url),
            max_attempts=3,
            operation_id=url,
            timeout=60,
        )
    """

    def __init__(
        self,
        gateway: Gateway,
        sessions: ExecutionSessionManager,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
        base_delay_ms: int | None = None,
        jitter_ms: int | None = None,
    ):
        """
        Initialize the executor.

        Args:
            gateway: Remote gateway to open connections on
            sessions: Session manager (rotated before each retry)
            sleep: Async sleep function
            rng: Random source for jitter
            base_delay_ms: Backoff base (default from config)
            jitter_ms: Backoff jitter ceiling (default from config)
        """
        self._gateway = gateway
        self._sessions = sessions
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._base_delay_ms = config.retry.base_delay_ms if base_delay_ms is None else base_delay_ms
        self._jitter_ms = config.retry.jitter_ms if jitter_ms is None else jitter_ms
        self._history: deque[RetryAttempt] = deque(maxlen=HISTORY_LIMIT)

    @property
    def history(self) -> list[RetryAttempt]:
        """Failed attempts recorded so far, oldest first."""
        return list(self._history)

    def clear_history(self) -> None:
        self._history.clear()

    async def _attempt(
        self,
        operation: Operation,
        timeout: Optional[float],
    ):
        session = self._sessions.acquire()
        async with self._gateway.connect(session) as connection:
            if timeout:
                try:
                    return await asyncio.wait_for(operation(connection, session), timeout)
                except asyncio.TimeoutError as e:
                    raise GatewayTimeoutError(f"Operation exceeded {timeout}s") from e
            return await operation(connection, session)

    async def execute(
        self,
        operation: Operation,
        max_attempts: int | None = None,
        operation_id: str = "operation",
        timeout: float | None = None,
    ):
        """
        Run an operation, retrying retryable failures.

        Args:
            operation: Coroutine function taking (connection, session)
            max_attempts: Total attempts including the first
            operation_id: Label used in logs and attempt history
            timeout: Per-attempt timeout in seconds

        Returns:
            The operation's result

        Raises:
            The last error once attempts are exhausted, or the first fatal error
        """
        max_attempts = max_attempts or config.retry.search_max_attempts
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        for attempt in range(max_attempts):
            try:
                return await self._attempt(operation, timeout)
            except Exception as e:
                classification = classify_error(e)
                is_last = attempt == max_attempts - 1

                if classification is ErrorClass.FATAL or is_last:
                    self._history.append(RetryAttempt(
                        operation_id=operation_id,
                        attempt=attempt,
                        classification=classification,
                        error=str(e),
                    ))
                    if classification is ErrorClass.RETRYABLE:
                        logger.warning(f"{operation_id}: giving up after {max_attempts} attempts ({e})")
                    raise

                delay = compute_backoff(attempt + 1, self._base_delay_ms, self._jitter_ms, self._rng)
                self._history.append(RetryAttempt(
                    operation_id=operation_id,
                    attempt=attempt,
                    classification=classification,
                    delay=delay,
                    error=str(e),
                ))
                logger.info(
                    f"{operation_id}: attempt {attempt + 1}/{max_attempts} failed ({e}), "
                    f"rotating session and retrying in {delay:.1f}s"
                )
                self._sessions.rotate()
                await self._sleep(delay)


class BatchCircuitBreaker:
    """
    Trips after N consecutive item failures.

    Example:
        breaker = BatchCircuitBreaker(threshold=10)
        for item in items:
            if breaker.tripped:
                break
            ...
            breaker.record_success()  # or record_failure()
    """

    def __init__(self, threshold: int):
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.threshold = threshold
        self.consecutive_failures = 0
        self.total_failures = 0

    def record_success(self) -> None:
        self.consecutive_failures = 0

    def record_failure(self) -> bool:
        """Count a failure and return True if the breaker is now tripped."""
        self.consecutive_failures += 1
        self.total_failures += 1
        if self.tripped:
            logger.warning(f"Circuit breaker tripped after {self.consecutive_failures} consecutive failures")
        return self.tripped

    @property
    def tripped(self) -> bool:
        return self.consecutive_failures >= self.threshold
