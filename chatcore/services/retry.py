"""Retry/backoff controller for gateway calls."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from chatcore.errors import ChatCoreError, ErrorKind, RateLimited
from chatcore.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]
RetryHook = Callable[[int, ChatCoreError, float], None]


@dataclass
class RetryPolicy:
    """Configuration for bounded exponential backoff."""

    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    retryable_error_kinds: frozenset[ErrorKind] = field(
        default_factory=lambda: frozenset({ErrorKind.RATE_LIMITED, ErrorKind.PROVIDER_UNAVAILABLE})
    )
    honor_retry_after: bool = True

    def is_retryable(self, error: ChatCoreError) -> bool:
        return error.kind in self.retryable_error_kinds


NO_RETRY = RetryPolicy(max_attempts=1)


def compute_delay(policy: RetryPolicy, attempt: int, error: ChatCoreError | None = None) -> float:
    """Delay in milliseconds before retrying after failed ``attempt`` (1-based).

    A provider ``retry_after`` hint replaces the computed backoff.
    """
    if policy.honor_retry_after and isinstance(error, RateLimited) and error.retry_after_ms is not None:
        return float(error.retry_after_ms)
    return float(min(policy.base_delay_ms * 2 ** (attempt - 1), policy.max_delay_ms))


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Sleep = asyncio.sleep,
    on_retry: RetryHook | None = None,
) -> T:
    """Run ``operation`` until it succeeds, fails non-retryably, or attempts run out.

    Args:
        operation: Zero-argument coroutine factory, invoked once per attempt
        policy: Retry configuration
        sleep: Awaitable sleep taking seconds
        on_retry: Called with (attempt, error, delay_ms) before each backoff

    Returns:
        The operation's result

    Raises:
        ChatCoreError: The last error, unchanged apart from ``attempts``
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except ChatCoreError as e:
            e.attempts = attempt
            if not policy.is_retryable(e):
                logger.debug(f"Not retrying {e.kind} after attempt {attempt}")
                raise
            if attempt >= policy.max_attempts:
                logger.warning(f"Giving up after {attempt} attempt(s): {e.kind}")
                raise

            delay_ms = compute_delay(policy, attempt, e)
            logger.warning(
                f"Attempt {attempt}/{policy.max_attempts} failed with {e.kind}, retrying in {delay_ms:.0f}ms"
            )
            if on_retry is not None:
                on_retry(attempt, e, delay_ms)
            await sleep(delay_ms / 1000)
