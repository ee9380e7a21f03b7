"""Retry/backoff engine for Meta API calls.

WHAT:
    Re-invokes an async operation while it fails with a retryable error,
    sleeping with exponential backoff plus jitter between attempts.

WHY:
    - Transient failures (timeouts, 5xx, throttling) usually clear on their own
    - Fatal failures (auth, validation, permission, not found) never do, so
      they propagate on the first attempt without burning quota
    - Attempts are strictly sequential so an outage is never amplified

IDEMPOTENCE CONTRACT:
    GET calls are naturally idempotent. POST/DELETE calls are retried on the
    assumption that the Graph API is idempotent per resource id for
    create/update/delete. Callers that cannot accept a duplicate create
    should pass a policy with max_attempts=1.

REFERENCES:
    - exceptions.py (retryable flags)
    - services/meta_ads_client.py (wraps every HTTP dispatch)
    - services/auth_manager.py (wraps token endpoint calls)
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..exceptions import MetaAdsClientError, MetaAdsRateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Backoff parameters. Treated as configuration, not contract."""

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 1.0
    # Provider hints longer than this are not worth waiting for inside a call
    max_retry_after: float = 300.0
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
            jitter=settings.RETRY_JITTER_SECONDS,
            max_retry_after=settings.RETRY_MAX_RETRY_AFTER_SECONDS,
        )

    def compute_backoff(self, attempt: int) -> float:
        """Delay after failed attempt number `attempt` (1-based), before any provider hint."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter > 0:
            delay += random.uniform(0, self.jitter)
        return delay


@dataclass
class RetryContext:
    """State for one logical call. Discarded when the call resolves."""

    label: str
    attempt: int = 0
    last_error: Optional[BaseException] = None


def is_retryable(error: BaseException, policy: Optional[RetryPolicy] = None) -> bool:
    """Classify an error as retryable (transient) or fatal.

    Only MetaAdsClientError subclasses flagged `retryable` qualify; a rate
    limit whose hint exceeds the policy's ceiling is treated as fatal.
    """
    if not isinstance(error, MetaAdsClientError) or not error.retryable:
        return False
    if isinstance(error, MetaAdsRateLimitError) and error.retry_after is not None:
        ceiling = (policy or RetryPolicy()).max_retry_after
        return error.retry_after <= ceiling
    return True


def get_retry_delay(error: BaseException, attempt: int, policy: RetryPolicy) -> float:
    """How long to wait before the next attempt.

    A rate-limit hint wins over the computed schedule in both directions:
    shorter hints shorten the wait, longer hints extend it.
    """
    if isinstance(error, MetaAdsRateLimitError) and error.retry_after is not None:
        return max(0.0, float(error.retry_after))
    return policy.compute_backoff(attempt)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    label: str = "operation",
    policy: Optional[RetryPolicy] = None,
) -> T:
    """Run `operation`, retrying transient failures.

    Args:
        operation: Zero-argument coroutine factory, invoked once per attempt
        label: Name used in log lines (e.g. "GET act_123/campaigns")
        policy: Backoff parameters (defaults to RetryPolicy())

    Returns:
        Whatever the first successful attempt returns.

    Raises:
        The error from the most recent attempt: immediately if fatal, or
        once max_attempts is reached.
    """
    policy = policy or RetryPolicy()
    ctx = RetryContext(label=label)

    while True:
        ctx.attempt += 1
        try:
            result = await operation()
            if ctx.attempt > 1:
                logger.info(f"[RETRY] {label} succeeded on attempt {ctx.attempt}/{policy.max_attempts}")
            return result
        except Exception as e:
            ctx.last_error = e

            if not is_retryable(e, policy):
                logger.debug(f"[RETRY] {label} failed with fatal {type(e).__name__}: {e}")
                raise

            if ctx.attempt >= policy.max_attempts:
                logger.error(
                    f"[RETRY] {label} failed after {ctx.attempt} attempts. "
                    f"Last error ({type(e).__name__}): {e}"
                )
                raise

            delay = get_retry_delay(e, ctx.attempt, policy)
            logger.warning(
                f"[RETRY] {label} failed (attempt {ctx.attempt}/{policy.max_attempts}), "
                f"retrying in {delay:.1f}s: {e}"
            )
            await policy.sleep(delay)
