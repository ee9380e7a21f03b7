"""
Account Rate Limiter
====================

Per-ad-account admission control using Meta's weighted call scoring.

WHY THIS FILE EXISTS
--------------------
Meta throttles an ad account (and eventually the whole app) once the
account's call score crosses the tier budget. A single busy tenant must not
push every other tenant into platform-wide throttling, so every call that
targets a known account is admitted here first.

SCORING
-------
- Read call (GET): 1 point
- Write call (POST/DELETE): 3 points

TIERS
-----
- development: 60 points per 5-minute window, 5-minute block when exceeded
- standard:    9000 points per 5-minute window, 1-minute block when exceeded

The window resets wholesale once it elapses (no continuous decay). This
permits a burst right after a boundary but matches Meta's published behavior.

RELATED FILES
-------------
- services/meta_ads_client.py: Calls check_rate_limit before dispatch
- exceptions.py: MetaAdsRateLimitError
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..exceptions import MetaAdsRateLimitError

logger = logging.getLogger(__name__)

READ_CALL_SCORE = 1
WRITE_CALL_SCORE = 3


@dataclass(frozen=True)
class TierConfig:
    name: str
    max_score: int
    decay_seconds: float
    block_seconds: float
    read_call_score: int = READ_CALL_SCORE
    write_call_score: int = WRITE_CALL_SCORE


DEVELOPMENT_TIER = TierConfig(name="development", max_score=60, decay_seconds=300.0, block_seconds=300.0)
STANDARD_TIER = TierConfig(name="standard", max_score=9000, decay_seconds=300.0, block_seconds=60.0)

TIERS: Dict[str, TierConfig] = {
    DEVELOPMENT_TIER.name: DEVELOPMENT_TIER,
    STANDARD_TIER.name: STANDARD_TIER,
}


@dataclass
class TenantUsageWindow:
    """Usage for one ad account in the current window."""

    score: int
    window_start: float
    blocked_until: float = 0.0


class RateLimiter:
    """
    In-memory weighted rate limiter keyed by ad account id.

    WHAT:
        Tracks a usage score per account over a fixed window and rejects
        calls that would take the score past the tier budget.

    WHY:
        Owned explicitly (constructed and passed to MetaApiClient) so tests
        get isolated instances and nothing leaks between them.

    USAGE:
        limiter = RateLimiter(tier="development")
        await limiter.check_rate_limit("act_123", is_write_call=False)

    THREAD SAFETY:
        Each account has its own lock; the read-check-increment sequence runs
        under it, so two concurrent calls can never both take the last slot.
    """

    def __init__(
        self,
        tier: str = "standard",
        clock: Callable[[], float] = time.monotonic,
    ):
        if tier not in TIERS:
            raise ValueError(f"Unknown rate limit tier: {tier!r} (expected one of {sorted(TIERS)})")
        self.config = TIERS[tier]
        self._clock = clock
        self._windows: Dict[str, TenantUsageWindow] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._map_lock = threading.Lock()

        logger.info(
            f"[RATE_LIMITER] Initialized {self.config.name} tier "
            f"(max_score={self.config.max_score}, window={self.config.decay_seconds:.0f}s)"
        )

    @property
    def tier(self) -> str:
        return self.config.name

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._map_lock:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
            return lock

    def _window(self, account_id: str, now: float) -> TenantUsageWindow:
        """Fetch the account's window, resetting it if it has elapsed. Caller holds the lock."""
        window = self._windows.get(account_id)
        if window is None:
            window = TenantUsageWindow(score=0, window_start=now)
            self._windows[account_id] = window
        elif now - window.window_start > self.config.decay_seconds:
            window.score = 0
            window.window_start = now

        if window.blocked_until and now >= window.blocked_until:
            window.blocked_until = 0.0
        return window

    def call_score(self, is_write_call: bool) -> int:
        return self.config.write_call_score if is_write_call else self.config.read_call_score

    async def check_rate_limit(self, account_id: str, is_write_call: bool = False) -> None:
        """
        Admit a call for `account_id` or raise.

        On success the call's weight is added to the window score. On
        failure the account is blocked for the tier's block period.

        RAISES:
            MetaAdsRateLimitError: Budget exceeded or account currently blocked
        """
        self.admit(account_id, is_write_call)

    def admit(self, account_id: str, is_write_call: bool = False) -> int:
        """Synchronous admission check. Returns the new window score."""
        weight = self.call_score(is_write_call)

        with self._lock_for(account_id):
            now = self._clock()
            window = self._window(account_id, now)

            if window.blocked_until:
                wait = max(0.0, window.blocked_until - now)
                logger.warning(
                    f"[RATE_LIMITER] Account {account_id} is blocked for another {wait:.0f}s"
                )
                raise MetaAdsRateLimitError(
                    f"Rate limit exceeded for account {account_id}. Please wait {int(wait + 0.999)} seconds.",
                    retry_after=wait,
                    account_id=account_id,
                )

            if window.score + weight > self.config.max_score:
                window.blocked_until = now + self.config.block_seconds
                logger.warning(
                    f"[RATE_LIMITER] Account {account_id} hit {self.config.name} budget "
                    f"({window.score}+{weight} > {self.config.max_score}), "
                    f"blocking for {self.config.block_seconds:.0f}s"
                )
                raise MetaAdsRateLimitError(
                    f"Rate limit exceeded for account {account_id}. "
                    f"Blocked for {int(self.config.block_seconds)} seconds.",
                    retry_after=self.config.block_seconds,
                    account_id=account_id,
                )

            window.score += weight
            logger.debug(
                f"[RATE_LIMITER] Admitted {'write' if is_write_call else 'read'} call for "
                f"{account_id} (score {window.score}/{self.config.max_score})"
            )
            return window.score

    def get_current_score(self, account_id: str) -> int:
        with self._lock_for(account_id):
            return self._window(account_id, self._clock()).score

    def get_remaining_capacity(self, account_id: str) -> int:
        return max(0, self.config.max_score - self.get_current_score(account_id))

    def is_account_blocked(self, account_id: str) -> bool:
        return self.get_block_time_remaining(account_id) > 0

    def get_block_time_remaining(self, account_id: str) -> float:
        """Seconds until the account's block lifts (0 when not blocked)."""
        with self._lock_for(account_id):
            now = self._clock()
            window = self._window(account_id, now)
            if not window.blocked_until:
                return 0.0
            return max(0.0, window.blocked_until - now)

    def get_window_time_remaining(self, account_id: str) -> float:
        """Seconds until the account's current window resets."""
        with self._lock_for(account_id):
            now = self._clock()
            window = self._window(account_id, now)
            return max(0.0, window.window_start + self.config.decay_seconds - now)

    async def wait_for_capacity(
        self,
        account_id: str,
        required_score: int = READ_CALL_SCORE,
        max_wait: float = 60.0,
        poll_interval: float = 1.0,
    ) -> None:
        """
        Wait until `required_score` points fit into the account's budget.

        Does not consume capacity; callers still go through check_rate_limit.

        RAISES:
            MetaAdsRateLimitError: The block outlasts max_wait, or capacity
                never frees up within max_wait
        """
        waited = 0.0
        while waited < max_wait:
            with self._lock_for(account_id):
                now = self._clock()
                window = self._window(account_id, now)
                blocked_for = max(0.0, window.blocked_until - now) if window.blocked_until else 0.0
                fits = window.score + required_score <= self.config.max_score

            if not blocked_for and fits:
                return

            if blocked_for > max_wait - waited:
                raise MetaAdsRateLimitError(
                    f"Rate limit block time ({int(blocked_for + 0.999)}s) exceeds maximum wait time",
                    retry_after=blocked_for,
                    account_id=account_id,
                )

            await asyncio.sleep(poll_interval)
            waited += poll_interval

        raise MetaAdsRateLimitError(
            f"Could not acquire rate limit capacity after {int(max_wait)} seconds",
            retry_after=self.get_window_time_remaining(account_id),
            account_id=account_id,
        )

    def get_status(self, account_id: Optional[str] = None) -> Dict[str, Dict[str, float]]:
        """
        Current usage per account, for debugging.

        RETURNS:
            {"act_1": {"score": 12, "limit": 60, "remaining": 48, "blocked_for": 0.0}}
        """
        with self._map_lock:
            account_ids = [account_id] if account_id else list(self._windows)

        status = {}
        for acct in account_ids:
            score = self.get_current_score(acct)
            status[acct] = {
                "score": score,
                "limit": self.config.max_score,
                "remaining": max(0, self.config.max_score - score),
                "blocked_for": self.get_block_time_remaining(acct),
            }
        return status
