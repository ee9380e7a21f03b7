"""
Application State
=================

Process-wide components shared across requests.

WHY this exists:
- Rate-limit windows must survive between requests to mean anything
- The Redis connection pool should be shared to avoid connection overhead
- The session manager is stateless apart from its store handle, so one
  instance serves every user

WHAT it stores:
- kv_store: RedisKeyValueStore over a shared connection pool
- rate_limiter: RateLimiter for the configured access tier
- user_auth_manager: UserAuthManager bound to kv_store

WHERE it's used:
- meta_gateway/deps.py: FastAPI dependency providers
- meta_gateway/main.py: shutdown closes the store

Design:
- Built lazily on first use, so importing the package never dials Redis
- Tests replace components with the set_* helpers or call reset()
"""

import logging
from typing import Optional

from .config import get_settings
from .services.kv_store import KeyValueStore, RedisKeyValueStore
from .services.rate_limiter import RateLimiter
from .services.token_service import UserAuthManager

logger = logging.getLogger(__name__)

kv_store: Optional[KeyValueStore] = None
rate_limiter: Optional[RateLimiter] = None
user_auth_manager: Optional[UserAuthManager] = None


def get_kv_store() -> KeyValueStore:
    global kv_store
    if kv_store is None:
        settings = get_settings()
        kv_store = RedisKeyValueStore.from_url(settings.REDIS_URL, max_connections=20)
        logger.info("[STATE] Shared Redis store initialized")
    return kv_store


def get_rate_limiter() -> RateLimiter:
    global rate_limiter
    if rate_limiter is None:
        settings = get_settings()
        rate_limiter = RateLimiter(tier=settings.META_API_TIER.lower())
        logger.info(f"[STATE] Rate limiter initialized (tier={rate_limiter.tier})")
    return rate_limiter


def get_user_auth_manager() -> UserAuthManager:
    global user_auth_manager
    if user_auth_manager is None:
        user_auth_manager = UserAuthManager(store=get_kv_store(), settings=get_settings())
    return user_auth_manager


def set_kv_store(store: Optional[KeyValueStore]) -> None:
    global kv_store, user_auth_manager
    kv_store = store
    user_auth_manager = None


def set_rate_limiter(limiter: Optional[RateLimiter]) -> None:
    global rate_limiter
    rate_limiter = limiter


def set_user_auth_manager(manager: Optional[UserAuthManager]) -> None:
    global user_auth_manager
    user_auth_manager = manager


async def close() -> None:
    """Release the Redis pool, if one was opened."""
    global kv_store
    if isinstance(kv_store, RedisKeyValueStore):
        await kv_store.close()
        logger.info("[STATE] Redis store closed")
    kv_store = None


def reset() -> None:
    global kv_store, rate_limiter, user_auth_manager
    kv_store = None
    rate_limiter = None
    user_auth_manager = None
