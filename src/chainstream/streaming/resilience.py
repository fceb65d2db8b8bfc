"""
Resilience primitives for chain streaming.

Provides retry logic with exponential backoff, per-call timeouts, error
classification and adaptive back pressure so transient transport failures,
rate limiting and slow nodes are absorbed before they reach subscribers.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..errors import TransportFailure

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class RetryConfig:
    """Configuration for retry behavior with exponential backoff."""

    enabled: bool = True
    max_retries: int = 5  # More generous default for production durability
    initial_backoff_ms: int = 2000  # Start with 2s delay
    max_backoff_ms: int = 120000  # Cap at 2 minutes
    backoff_multiplier: float = 2.0
    jitter: bool = True  # Add randomness to prevent thundering herd

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError(f'max_retries must be >= 0, got {self.max_retries}')
        if self.initial_backoff_ms < 0 or self.max_backoff_ms < 0:
            raise ValueError('backoff durations must be >= 0')
        if self.backoff_multiplier < 1.0:
            raise ValueError(f'backoff_multiplier must be >= 1.0, got {self.backoff_multiplier}')


@dataclass
class BackPressureConfig:
    """Configuration for adaptive back pressure / rate limiting."""

    enabled: bool = True
    initial_delay_ms: int = 0
    max_delay_ms: int = 5000
    adapt_on_429: bool = True  # Slow down on rate limit responses
    adapt_on_timeout: bool = True  # Slow down on timeouts
    recovery_factor: float = 0.9  # How fast to speed up after success (10% speedup)


class ErrorClassifier:
    """Classify errors as transient (retryable) or permanent (fatal)."""

    TRANSIENT_PATTERNS = [
        'timeout',
        '429',
        '502',
        '503',
        '504',
        'connection reset',
        'temporary failure',
        'service unavailable',
        'too many requests',
        'rate limit',
        'throttle',
        'connection error',
        'broken pipe',
        'connection refused',
        'timed out',
        'header not found',
        'unknown block',
    ]

    @staticmethod
    def is_transient(error: str) -> bool:
        """
        Determine if an error is transient and worth retrying.

        Args:
            error: Error message or exception string

        Returns:
            True if error appears transient, False if permanent
        """
        if not error:
            return False

        error_lower = error.lower()
        return any(pattern in error_lower for pattern in ErrorClassifier.TRANSIENT_PATTERNS)


class ExponentialBackoff:
    """
    Calculate exponential backoff delays with optional jitter.

    Jitter helps prevent thundering herd when many clients retry simultaneously.
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

        # Exponential backoff: initial * (multiplier ^ attempt)
        delay_ms = min(
            self.config.initial_backoff_ms * (self.config.backoff_multiplier**self.attempt),
            self.config.max_backoff_ms,
        )

        # Add jitter: randomize to 50-150% of calculated delay
        if self.config.jitter:
            delay_ms *= 0.5 + random.random()

        self.attempt += 1
        return delay_ms / 1000.0

    def reset(self):
        """Reset backoff state for new operation."""
        self.attempt = 0


class AdaptiveRateLimiter:
    """
    Adaptive rate limiting that adjusts delay based on error responses.

    Slows down when seeing rate limits (429) or timeouts.
    Speeds up gradually when operations succeed.
    """

    def __init__(self, config: BackPressureConfig):
        self.config = config
        self.current_delay_ms = config.initial_delay_ms

    async def wait(self):
        """Wait before next request (applies current delay)."""
        if not self.config.enabled:
            return

        delay_ms = self.current_delay_ms
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000.0)

    def record_success(self):
        """Speed up gradually after a successful operation."""
        if not self.config.enabled:
            return

        # Can decrease all the way to zero - only delay when actually needed
        self.current_delay_ms = max(0, self.current_delay_ms * self.config.recovery_factor)

    def record_rate_limit(self):
        """Slow down significantly after rate limit response (429)."""
        if not self.config.enabled or not self.config.adapt_on_429:
            return

        # Double the delay + 1 second penalty
        self.current_delay_ms = min(self.current_delay_ms * 2 + 1000, self.config.max_delay_ms)

        logger.warning(
            f'Rate limit detected (429). Adaptive back pressure increased delay to {self.current_delay_ms}ms.'
        )

    def record_timeout(self):
        """Slow down moderately after timeout."""
        if not self.config.enabled or not self.config.adapt_on_timeout:
            return

        # 1.5x the delay + 500ms penalty
        self.current_delay_ms = min(self.current_delay_ms * 1.5 + 500, self.config.max_delay_ms)

        logger.info(f'Timeout detected. Adaptive back pressure increased delay to {self.current_delay_ms}ms.')

    def get_current_delay(self) -> int:
        """Get current delay in milliseconds (for monitoring)."""
        return int(self.current_delay_ms)


async def call_with_retry(
    operation: str,
    call: Callable[[], Awaitable[T]],
    retry_config: Optional[RetryConfig] = None,
    timeout: Optional[float] = None,
    on_retry: Optional[Callable[[str, Exception], Any]] = None,
) -> T:
    """
    Run a transport call with a per-attempt timeout and retry policy.

    Only TransportFailure with retriable=True and timeouts are retried. Every
    other exception (including RangeRejected) propagates immediately.

    Args:
        operation: Name used in log messages and TransportFailure.operation
        call: Zero-argument coroutine factory issuing the request
        retry_config: Retry policy (defaults to RetryConfig())
        timeout: Seconds allowed per attempt, None for no limit
        on_retry: Optional hook invoked with (reason, error) before each retry

    Returns:
        The call's result

    Raises:
        TransportFailure: When the call keeps failing after all retries
    """
    backoff = ExponentialBackoff(retry_config or RetryConfig())

    while True:
        try:
            if timeout is None:
                return await call()
            return await asyncio.wait_for(call(), timeout=timeout)
        except asyncio.TimeoutError:
            error = TransportFailure(f'{operation} timed out after {timeout}s', operation=operation, error_code='TIMEOUT')
        except TransportFailure as e:
            if not e.retriable:
                raise
            error = e

        delay = backoff.next_delay()
        if delay is None:
            logger.warning(f'{operation} failed after {backoff.attempt} retries: {error.message}')
            raise error

        reason = 'timeout' if error.error_code == 'TIMEOUT' else 'transport'
        logger.warning(
            f'{operation} failed ({error.message}); retry {backoff.attempt}/{backoff.config.max_retries} in {delay:.2f}s'
        )
        if on_retry is not None:
            on_retry(reason, error)
        await asyncio.sleep(delay)
