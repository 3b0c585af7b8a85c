"""Retry logic with exponential backoff for calls to external services."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.2  # ±20% random variation


class TransientError(Exception):
    """Exception for transient errors that should be retried."""
    pass


async def retry_with_backoff(
    func: Callable[..., Awaitable[T]],
    config: RetryConfig,
    *args: Any,
    **kwargs: Any
) -> T:
    """
    Execute an async function, retrying transient failures with backoff.

    Args:
        func: Async function to execute
        config: Retry configuration
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result from successful function execution

    Raises:
        The last exception when every attempt fails, or the first
        non-transient exception unchanged.
    """
    attempts = max(config.max_attempts, 1)

    for attempt in range(attempts):
        try:
            result = await func(*args, **kwargs)
            if attempt > 0:
                logger.info("Retry succeeded on attempt %d", attempt + 1)
            return result

        except asyncio.CancelledError:
            raise

        except Exception as e:
            if not is_transient_error(e):
                raise

            if attempt == attempts - 1:
                logger.error("All %d retry attempts failed", attempts)
                raise

            delay = compute_delay(config, attempt)
            logger.warning(
                "Attempt %d/%d failed: %s. Retrying in %.2fs...",
                attempt + 1,
                attempts,
                e,
                delay,
            )
            await asyncio.sleep(delay)

    raise RuntimeError("retry_with_backoff exhausted without a result")


def compute_delay(config: RetryConfig, attempt: int) -> float:
    """Backoff delay for a zero-based attempt number, with jitter."""
    base_delay = min(
        config.base_delay * (config.exponential_base ** attempt),
        config.max_delay
    )
    jitter = base_delay * config.jitter_factor * (2 * random.random() - 1)
    return max(0.0, base_delay + jitter)


def is_transient_error(error: Exception) -> bool:
    """Determine if an error is transient and should be retried."""
    if isinstance(error, TransientError):
        return True

    # Network-related errors
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True

    return False
