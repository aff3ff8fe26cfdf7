"""
Retry Logic for Cross-Seeder
Retries idempotent reads against qBittorrent and Prowlarr with exponential
backoff. Writes (adding a torrent) are never passed through here.
"""

import asyncio
import logging
import random
import re
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional, Tuple, TypeVar

import aiohttp

from .exceptions import ClientAuthenticationError, ClientConnectionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_HTTP_STATUS = re.compile(r"\bHTTP (\d{3})\b")

# Transport failures worth another attempt
TRANSIENT_ERRORS: Tuple[type, ...] = (
    aiohttp.ClientConnectionError,
    asyncio.TimeoutError,
    ConnectionError,
    TimeoutError,
    ClientConnectionError,
)


@dataclass
class RetryConfig:
    """Backoff settings shared by the client and indexer facades."""
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True
    jitter_factor: float = 0.5
    retryable_statuses: Tuple[int, ...] = (429, 500, 502, 503, 504)


@dataclass
class RetryStats:
    attempts: int = 0
    failures: int = 0
    retries: int = 0
    last_error: Optional[str] = None
    last_error_time: Optional[float] = None
    failures_by_operation: Dict[str, int] = field(default_factory=dict)


def http_status_of(error: Exception) -> Optional[int]:
    """Status code embedded in an error message as 'HTTP nnn', if any."""
    match = _HTTP_STATUS.search(str(error))
    return int(match.group(1)) if match else None


class RetryHandler:
    """Runs an async operation until it succeeds or the error is permanent."""

    def __init__(self, config: Optional[RetryConfig] = None):
        self.config = config or RetryConfig()
        self.stats = RetryStats()

    def is_retryable(self, error: Exception) -> bool:
        """True for transport errors and gateway statuses. Auth failures are never retried."""
        if isinstance(error, ClientAuthenticationError):
            return False
        if isinstance(error, TRANSIENT_ERRORS):
            return True
        return http_status_of(error) in self.config.retryable_statuses

    def backoff(self, attempt: int) -> float:
        """Delay before the attempt following `attempt` (1-based)."""
        cfg = self.config
        delay = min(cfg.initial_delay * cfg.exponential_base ** (attempt - 1), cfg.max_delay)
        if cfg.jitter:
            delay *= random.uniform(1.0 - cfg.jitter_factor, 1.0 + cfg.jitter_factor)
        return max(0.0, delay)

    def failure_count(self, operation_id: str) -> int:
        return self.stats.failures_by_operation.get(operation_id, 0)

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
        should_retry: Optional[Callable[[Exception], bool]] = None,
    ) -> T:
        """
        Await operation(), retrying transient failures.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt
            operation_id: Name used in logs and failure counts
            max_attempts: Override of config.max_attempts
            should_retry: Replaces the default error classification

        Raises:
            The last error once it is permanent or attempts are exhausted
        """
        attempts = max_attempts or self.config.max_attempts
        operation_id = operation_id or getattr(operation, "__name__", "operation")
        classify = should_retry or self.is_retryable

        attempt = 0
        while True:
            attempt += 1
            self.stats.attempts += 1
            try:
                result = await operation()
            except Exception as e:
                self.stats.failures += 1
                self.stats.last_error = str(e)
                self.stats.last_error_time = time.time()
                self.stats.failures_by_operation[operation_id] = attempt

                if not classify(e):
                    logger.warning(f"{operation_id} failed permanently: {e}")
                    raise
                if attempt >= attempts:
                    logger.error(f"{operation_id} failed after {attempt} attempts: {e}")
                    raise

                delay = self.backoff(attempt)
                self.stats.retries += 1
                logger.warning(
                    f"{operation_id} failed (attempt {attempt}/{attempts}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await asyncio.sleep(delay)
                continue

            self.stats.failures_by_operation.pop(operation_id, None)
            if attempt > 1:
                logger.info(f"{operation_id} succeeded on attempt {attempt}")
            return result
