# app/infra/db_resilience_async.py
"""
Async store resilience utilities.

One retry policy shared by every store-mutating dispatch operation:
bounded attempts, exponential backoff, and a retryable-error predicate.
Domain errors (not found, conflict, ...) are never retried.
"""
from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

import asyncpg
from app.config import settings
from app.core.dispatch.errors import DispatchError, TransientStoreError
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


def is_transient_error(exc: BaseException) -> bool:
    """
    Check if a store error is transient (should retry).

    Transient errors:
    - Connection errors
    - Server closed connection
    - Too many connections
    - Deadlock / serialization failures
    - Timeouts
    """
    # Domain outcomes are caller-visible, never retried
    if isinstance(exc, DispatchError):
        return isinstance(exc, TransientStoreError)

    if isinstance(exc, (asyncpg.PostgresConnectionError, asyncpg.TooManyConnectionsError)):
        return True

    if isinstance(exc, (asyncpg.DeadlockDetectedError, asyncpg.SerializationError)):
        return True

    if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True

    error_message = str(exc).lower()

    transient_patterns = [
        "connection",
        "timeout",
        "closed",
        "network",
        "deadlock",
        "too many connections",
        "server closed",
        "connection reset",
    ]

    return any(pattern in error_message for pattern in transient_patterns)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry with exponential backoff.

    ``max_attempts`` counts the first try: 3 means one call plus up to
    two retries.  Delays are ``base_delay * backoff_factor ** n`` capped
    at ``max_delay`` (100ms, 200ms with the defaults).

    Example:
        policy = RetryPolicy(max_attempts=3, base_delay=0.1)
        row = await policy.run(lambda: repo.find(job_id, pro_id), name="find_assignment")
    """

    max_attempts: int = 3
    base_delay: float = 0.1
    backoff_factor: float = 2.0
    max_delay: float = 2.0
    retryable: Callable[[BaseException], bool] = is_transient_error
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1-based)."""
        return min(self.base_delay * (self.backoff_factor ** (retry_number - 1)), self.max_delay)

    async def run(self, operation: Callable[[], Awaitable[T]], *, name: str = "operation") -> T:
        """
        Run ``operation`` under the policy.

        Non-retryable errors propagate unchanged on first occurrence.
        Retryable errors that outlast the budget surface as TransientStoreError.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except Exception as exc:
                if not self.retryable(exc):
                    raise

                if attempt >= self.max_attempts:
                    logger.error(
                        f"Max attempts ({self.max_attempts}) exceeded in {name}: {exc}",
                        exc_info=True
                    )
                    raise TransientStoreError(f"{name} failed: store unavailable") from exc

                delay = self.delay_for(attempt)
                logger.warning(
                    f"Transient error in {name} (attempt {attempt}/{self.max_attempts}): {exc}. "
                    f"Retrying in {delay:.2f}s..."
                )
                await self.sleep(delay)

        raise TransientStoreError(f"{name} failed: no attempts configured")


def default_retry_policy() -> RetryPolicy:
    """Retry policy built from settings."""
    return RetryPolicy(
        max_attempts=settings.store_retry_max_attempts,
        base_delay=settings.store_retry_base_delay,
        max_delay=settings.store_retry_max_delay,
    )
