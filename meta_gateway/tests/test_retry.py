"""Unit tests for retry_with_backoff.

WHAT:
    Attempt counting, fatal short-circuit, backoff schedule, rate-limit
    hints and last-error propagation.

WHY:
    Transient failures must be absorbed without amplifying load, and fatal
    ones must cost exactly one call.

REFERENCES:
    - meta_gateway/services/retry.py (module under test)
"""

import httpx
import pytest

from meta_gateway.config import Settings
from meta_gateway.exceptions import (
    MetaAdsAuthenticationError,
    MetaAdsNetworkError,
    MetaAdsNotFoundError,
    MetaAdsRateLimitError,
    MetaAdsServerError,
    MetaAdsValidationError,
)
from meta_gateway.services.error_handler import send_request
from meta_gateway.services.retry import RetryPolicy, is_retryable, retry_with_backoff

from .conftest import GRAPH, GraphRecorder


def failing_then(results):
    """Operation that raises/returns each item of `results` in turn."""
    calls = {"count": 0}

    async def _operation():
        item = results[calls["count"]]
        calls["count"] += 1
        if isinstance(item, Exception):
            raise item
        return item

    return _operation, calls


class TestAttempts:
    @pytest.mark.asyncio
    async def test_k_failures_then_success(self, retry_policy):
        """WHAT: Two retryable failures then success returns the value after 3 calls.
        WHY: k failures cost exactly k+1 underlying calls.
        """
        operation, calls = failing_then([MetaAdsServerError("boom"), MetaAdsNetworkError("timeout"), {"ok": True}])

        result = await retry_with_backoff(operation, label="GET act_1/campaigns", policy=retry_policy)

        assert result == {"ok": True}
        assert calls["count"] == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            MetaAdsAuthenticationError("expired", 190, 463),
            MetaAdsValidationError("bad param", 100),
            MetaAdsNotFoundError("missing", 100, 33),
        ],
    )
    async def test_fatal_error_makes_one_call(self, sleeper, error):
        """WHAT: Fatal errors propagate on the first attempt regardless of max_attempts.
        WHY: Retrying auth/validation failures burns quota for nothing.
        """
        policy = RetryPolicy(max_attempts=10, jitter=0.0, sleep=sleeper)
        operation, calls = failing_then([error, {"ok": True}])

        with pytest.raises(type(error)):
            await retry_with_backoff(operation, policy=policy)

        assert calls["count"] == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_last_error_is_raised(self, sleeper):
        """WHAT: When attempts run out, the most recent error surfaces, not the first.
        WHY: Callers diagnosing a flapping dependency need the latest failure mode.
        """
        policy = RetryPolicy(max_attempts=3, jitter=0.0, sleep=sleeper)
        last = MetaAdsServerError("third")
        operation, calls = failing_then([MetaAdsServerError("first"), MetaAdsNetworkError("second"), last])

        with pytest.raises(MetaAdsServerError) as exc_info:
            await retry_with_backoff(operation, policy=policy)

        assert exc_info.value is last
        assert calls["count"] == 3

    @pytest.mark.asyncio
    async def test_unclassified_exception_is_fatal(self, retry_policy):
        operation, calls = failing_then([KeyError("data")])

        with pytest.raises(KeyError):
            await retry_with_backoff(operation, policy=retry_policy)
        assert calls["count"] == 1


class TestBackoff:
    @pytest.mark.asyncio
    async def test_delays_double(self, retry_policy, sleeper):
        operation, _ = failing_then([MetaAdsServerError("a"), MetaAdsServerError("b"), MetaAdsServerError("c"), 1])

        await retry_with_backoff(operation, policy=retry_policy)

        assert sleeper.delays == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_delay_capped_at_max(self, sleeper):
        policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=3.0, jitter=0.0, sleep=sleeper)
        operation, _ = failing_then([MetaAdsServerError("x")] * 4 + ["done"])

        await retry_with_backoff(operation, policy=policy)

        assert sleeper.delays == [1.0, 2.0, 3.0, 3.0]

    def test_jitter_stays_within_bounds(self):
        policy = RetryPolicy(base_delay=1.0, jitter=0.5)
        for _ in range(50):
            assert 2.0 <= policy.compute_backoff(2) <= 2.5

    @pytest.mark.asyncio
    async def test_rate_limit_hint_overrides_schedule(self, retry_policy, sleeper):
        """WHAT: A retry_after hint is used instead of the computed delay, shorter or longer.
        WHY: The provider knows when its throttle lifts.
        """
        operation, _ = failing_then(
            [MetaAdsRateLimitError("slow down", retry_after=0.25), MetaAdsRateLimitError("slow", retry_after=45), "ok"]
        )

        assert await retry_with_backoff(operation, policy=retry_policy) == "ok"
        assert sleeper.delays == [0.25, 45]

    @pytest.mark.asyncio
    async def test_hint_beyond_ceiling_is_fatal(self, retry_policy, sleeper):
        operation, calls = failing_then([MetaAdsRateLimitError("blocked", retry_after=3600), "ok"])

        with pytest.raises(MetaAdsRateLimitError):
            await retry_with_backoff(operation, policy=retry_policy)

        assert calls["count"] == 1

    def test_is_retryable_classification(self):
        assert is_retryable(MetaAdsServerError("x"))
        assert is_retryable(MetaAdsNetworkError("x"))
        assert is_retryable(MetaAdsRateLimitError("x"))
        assert not is_retryable(MetaAdsValidationError("x"))
        assert not is_retryable(ValueError("x"))

    def test_policy_from_settings(self):
        settings = Settings(RETRY_MAX_ATTEMPTS=6, RETRY_BASE_DELAY_SECONDS=0.5, RETRY_JITTER_SECONDS=0.0)
        policy = RetryPolicy.from_settings(settings)
        assert policy.max_attempts == 6
        assert policy.base_delay == 0.5
        assert policy.jitter == 0.0


class TestOverHttp:
    @pytest.mark.asyncio
    async def test_token_endpoint_500_twice_then_200(self, retry_policy):
        """WHAT: HTTP 500, 500, 200 yields the 200 payload after 3 attempts.
        WHY: Token-endpoint outages are retried like any other call.
        """
        responses = iter(
            [
                httpx.Response(500, json={"error": {"message": "Service unavailable", "code": 2}}),
                httpx.Response(500, text="upstream error"),
                httpx.Response(200, json={"access_token": "EAAlonglived", "expires_in": 5183944}),
            ]
        )
        recorder = GraphRecorder(lambda request: next(responses))
        client = recorder.client()

        async def _call():
            return await send_request("GET", f"{GRAPH}/oauth/access_token", client=client)

        result = await retry_with_backoff(_call, label="GET oauth/access_token", policy=retry_policy)

        assert result["access_token"] == "EAAlonglived"
        assert len(recorder.requests) == 3
