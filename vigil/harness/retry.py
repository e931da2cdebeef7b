"""
Retry Logic — backoff for transient provider failures.

The router calls ``with_retries`` around a single (model, profile) attempt.
Only transient errors (5xx, network, timeouts) are retried here; auth and
rate-limit failures are returned to the router immediately so it can rotate
the profile instead of hammering the same credential.

Backoff is exponential with jitter:
    delay = min(max_delay, base_delay * exponential_base ** attempt) ± jitter
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Callable, Optional, TypeVar

import structlog

from vigil.errors import (
    ProviderAuthError,
    ProviderRateLimitError,
    ProviderRequestError,
    ProviderTransientError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_retries: int = 2,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        exponential_base: float = 2.0,
        jitter_range: float = 0.25,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter_range = jitter_range

    @classmethod
    def from_provider_config(cls, config: Any) -> "RetryConfig":
        return cls(
            max_retries=config.retry_max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            exponential_base=config.retry_exponential_base,
            jitter_range=config.retry_jitter_range,
        )


def is_retryable_error(error: Exception) -> bool:
    """
    Determine if an error is transient and worth retrying on the same profile.

    Retryable:
    - ProviderTransientError (5xx, overloaded, dropped stream)
    - Network/connection errors and timeouts

    NOT retryable here:
    - ProviderAuthError / ProviderRateLimitError — the router rotates instead
    - ProviderRequestError (400) — the request is wrong, nothing will fix it
    """
    if isinstance(error, (ProviderAuthError, ProviderRateLimitError, ProviderRequestError)):
        return False
    if isinstance(error, ProviderTransientError):
        return True
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    # OSError covers network-level issues
    if isinstance(error, OSError):
        return True
    return False


def compute_delay(
    attempt: int,
    config: RetryConfig,
    retry_after: Optional[float] = None,
) -> float:
    """
    Compute the delay before the next retry attempt.

    A server-provided Retry-After wins, clamped to max_delay so a single
    attempt never stalls the run for minutes.
    """
    if retry_after is not None and retry_after > 0:
        return min(config.max_delay, max(0.1, retry_after))

    delay = config.base_delay * (config.exponential_base ** attempt)
    delay = min(delay, config.max_delay)

    jitter = delay * config.jitter_range * (2 * random.random() - 1)
    return max(0.05, delay + jitter)


async def with_retries(
    func: Callable,
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable] = None,
) -> Any:
    """
    Execute an async function with retry logic.

    Args:
        func: The async function to execute (no arguments — use a lambda/closure)
        config: Retry configuration (uses defaults if not specified)
        on_retry: Optional callback when a retry occurs (receives attempt, error, delay)

    Returns:
        The result of the function call

    Raises:
        The last error if it is not retryable or retries are exhausted
    """
    if config is None:
        config = RetryConfig()

    for attempt in range(config.max_retries + 1):
        try:
            return await func()
        except Exception as e:
            if not is_retryable_error(e):
                raise

            if attempt >= config.max_retries:
                logger.warning(
                    "retry.exhausted",
                    error_type=type(e).__name__,
                    error=str(e)[:200],
                    total_attempts=attempt + 1,
                )
                raise

            delay = compute_delay(attempt, config, getattr(e, "retry_after", None))

            logger.warning(
                "retry.attempt",
                error_type=type(e).__name__,
                error=str(e)[:200],
                attempt=attempt + 1,
                max_retries=config.max_retries,
                delay_seconds=round(delay, 2),
            )

            if on_retry:
                on_retry(attempt + 1, e, delay)

            await asyncio.sleep(delay)

    raise RuntimeError("unreachable: retry loop exited without result")
