"""
Retry primitives for local I/O that may be briefly unavailable.

Used for secure vault access, where the platform keystore can refuse a read
right after device unlock. Network calls are never retried here.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class RetryConfig:
    """Configuration for retry behavior with exponential backoff."""

    enabled: bool = True
    max_retries: int = 2
    initial_backoff_ms: int = 50
    max_backoff_ms: int = 1000
    backoff_multiplier: float = 2.0
    jitter: bool = True


class ExponentialBackoff:
    """
    Calculate exponential backoff delays with optional jitter.
    """

    def __init__(self, config: RetryConfig):
        self.config = config
        self.attempt = 0

    def next_delay(self) -> Optional[float]:
        """
        Calculate next backoff delay in seconds.

        Returns:
            Delay in seconds, or None if max retries exceeded
        """
        if not self.config.enabled or self.attempt >= self.config.max_retries:
            return None

        delay_ms = min(
            self.config.initial_backoff_ms * (self.config.backoff_multiplier**self.attempt),
            self.config.max_backoff_ms,
        )

        # Randomize to 50-150% of calculated delay
        if self.config.jitter:
            delay_ms *= 0.5 + random.random()

        self.attempt += 1
        return delay_ms / 1000.0

    def reset(self):
        """Reset backoff state for new operation."""
        self.attempt = 0


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retry_on: Tuple[Type[BaseException], ...],
    description: str = 'operation',
) -> T:
    """
    Run ``operation`` and retry it on the given exception types.

    The last exception is re-raised once the retry budget is exhausted.
    """
    backoff = ExponentialBackoff(config)
    while True:
        try:
            return await operation()
        except retry_on as e:
            delay = backoff.next_delay()
            if delay is None:
                raise
            logger.warning(f'{description} failed (attempt {backoff.attempt}), retrying in {delay:.2f}s: {e}')
            await asyncio.sleep(delay)
