"""Pytest configuration for the gateway tests.

WHAT: Shared fixtures: settings, a controllable clock, an in-memory store,
      and mock Graph API transports.
WHY: Every component takes its collaborators explicitly, so tests build
     isolated instances and never touch Redis or the network.
REFERENCES:
    - meta_gateway/config.py
    - meta_gateway/services/kv_store.py
"""

import os
from typing import Callable, List

import httpx
import pytest

# Set test environment before anything reads settings
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
# Must be URL-safe base64-encoded 32-byte string
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")

from meta_gateway.config import Settings
from meta_gateway.services.kv_store import InMemoryKeyValueStore
from meta_gateway.services.retry import RetryPolicy
from meta_gateway.services.token_service import UserAuthManager

FERNET_KEY = "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA="
GRAPH = "https://graph.facebook.com/v23.0"


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class GraphRecorder:
    """httpx.MockTransport handler that records every request."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.handler = handler
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def graph_error(code: int, message: str = "error", subcode: int = None, status: int = 400) -> httpx.Response:
    error = {"message": message, "type": "OAuthException", "code": code, "fbtrace_id": "trace123"}
    if subcode is not None:
        error["error_subcode"] = subcode
    return httpx.Response(status, json={"error": error})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def retry_policy(sleeper) -> RetryPolicy:
    """Deterministic policy: no jitter, recorded sleeps."""
    return RetryPolicy(max_attempts=4, base_delay=1.0, max_delay=60.0, jitter=0.0, sleep=sleeper)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        META_APP_ID="app123",
        META_APP_SECRET="app-secret",
        META_REDIRECT_URI="https://gateway.example.com/auth/callback",
        META_API_TIER="development",
        JWT_SECRET="test-jwt-secret",
        TOKEN_ENCRYPTION_KEY=FERNET_KEY,
        RETRY_JITTER_SECONDS=0.0,
        COOKIE_SECURE=False,
    )


@pytest.fixture
def store(clock) -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore(clock=clock)


@pytest.fixture
def make_user_auth_manager(settings, store, retry_policy):
    """Factory: UserAuthManager wired to the in-memory store and a mock transport."""

    def _make(handler: Callable[[httpx.Request], httpx.Response] = None) -> UserAuthManager:
        recorder = GraphRecorder(handler or (lambda request: httpx.Response(404, json={})))
        manager = UserAuthManager(
            store=store,
            settings=settings,
            http_client=recorder.client(),
            retry_policy=retry_policy,
        )
        manager.recorder = recorder
        return manager

    return _make
