"""
Retry policy for remote reference-store calls.

The policy is an explicit object injected into the store clients:
- Maximum attempt count
- Exponential backoff schedule with jitter, capped at a maximum delay
- Retryable-error predicate (HTTP status, exception class, message markers)
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, FrozenSet, Optional, Tuple

from core.config import settings
from core.exceptions import NonRetryableError, RateLimitError, RetryableError, StoreError

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES: FrozenSet[int] = frozenset({429, 500, 502, 503, 504})
RETRYABLE_MESSAGE_MARKERS: Tuple[str, ...] = ("fetch failed", "network", "gateway", "timeout")


@dataclass
class RetryPolicy:
    """
    Exponential backoff retry policy.

    Attempt ``n`` (1-based) waits ``min(base_delay * 2**(n-1), max_delay)``
    plus up to ``jitter`` of that delay before the next attempt.
    """

    max_attempts: int = 5
    base_delay: float = 0.25
    max_delay: float = 4.0
    jitter: float = 0.2
    retryable_statuses: FrozenSet[int] = RETRYABLE_STATUSES
    retryable_markers: Tuple[str, ...] = RETRYABLE_MESSAGE_MARKERS
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, repr=False)
    random_fn: Callable[[], float] = field(default=random.random, repr=False)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.STORE_MAX_RETRIES,
            base_delay=settings.STORE_RETRY_BASE_DELAY,
            max_delay=settings.STORE_RETRY_MAX_DELAY,
        )

    def is_retryable(self, error: BaseException) -> bool:
        """Classify an error as transient (retry) or permanent (raise now)."""
        if isinstance(error, NonRetryableError):
            return False
        if isinstance(error, RetryableError):
            return True
        status = getattr(error, "status", None)
        if isinstance(status, int) and status in self.retryable_statuses:
            return True
        if isinstance(error, StoreError) and status is not None:
            return False
        message = str(error).lower()
        return any(marker in message for marker in self.retryable_markers)

    def compute_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """Delay in seconds before retrying after the given (1-based) attempt."""
        raw = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if isinstance(error, RateLimitError) and error.retry_after:
            raw = min(max(raw, float(error.retry_after)), self.max_delay)
        return raw + raw * self.jitter * self.random_fn()

    async def run(self, operation: Callable[[], Awaitable[Any]], label: str = "store call") -> Any:
        """
        Run ``operation`` until it succeeds, fails permanently, or attempts run out.

        The last error is re-raised unchanged when retries are exhausted.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as e:
                if attempt >= self.max_attempts or not self.is_retryable(e):
                    if attempt > 1:
                        logger.error(f"{label} failed after {attempt} attempts: {e}")
                    raise
                delay = self.compute_delay(attempt, e)
                logger.warning(
                    f"{label} failed (attempt {attempt}/{self.max_attempts}). "
                    f"Retrying in {delay:.2f} seconds: {e}"
                )
                await self.sleep(delay)
