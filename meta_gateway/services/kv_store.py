"""Key-value store handles for sessions and tokens.

WHAT:
    A minimal async get/set/delete/ttl interface with a Redis implementation
    (production) and an in-memory implementation (tests, local dev).

WHY:
    The session manager receives its store explicitly instead of reaching
    for a module-level client, so tests swap in InMemoryKeyValueStore.
"""

import logging
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(
        self, key: str, value: str, ex: Optional[int] = None, keep_ttl: bool = False, xx: bool = False
    ) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def ttl(self, key: str) -> Optional[int]: ...


class RedisKeyValueStore:
    """Redis-backed store. Values are UTF-8 strings (JSON documents)."""

    def __init__(self, client: Redis):
        self.redis = client

    @classmethod
    def from_url(cls, url: str, max_connections: int = 20) -> "RedisKeyValueStore":
        client = Redis.from_url(url, max_connections=max_connections, decode_responses=True)
        logger.info(f"[KV_STORE] Redis store initialized (max_connections={max_connections})")
        return cls(client)

    async def get(self, key: str) -> Optional[str]:
        value = await self.redis.get(key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(
        self, key: str, value: str, ex: Optional[int] = None, keep_ttl: bool = False, xx: bool = False
    ) -> None:
        """SET with EX or KEEPTTL; `xx` writes only when the key still exists."""
        if keep_ttl:
            await self.redis.set(key, value, keepttl=True, xx=xx)
        else:
            await self.redis.set(key, value, ex=ex, xx=xx)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.redis.delete(*keys))

    async def ttl(self, key: str) -> Optional[int]:
        """Remaining TTL in seconds; None if the key is missing or has no expiry."""
        remaining = await self.redis.ttl(key)
        return remaining if remaining is not None and remaining >= 0 else None

    async def close(self) -> None:
        await self.redis.aclose()


class InMemoryKeyValueStore:
    """Process-local store with per-key expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        entry = self._live(key)
        return entry[0] if entry else None

    async def set(
        self, key: str, value: str, ex: Optional[int] = None, keep_ttl: bool = False, xx: bool = False
    ) -> None:
        entry = self._live(key)
        if xx and entry is None:
            return
        if keep_ttl:
            expires_at = entry[1] if entry else None
        else:
            expires_at = self._clock() + ex if ex else None
        self._data[key] = (value, expires_at)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                del self._data[key]
                removed += 1
        return removed

    async def ttl(self, key: str) -> Optional[int]:
        entry = self._live(key)
        if entry is None or entry[1] is None:
            return None
        return max(0, int(entry[1] - self._clock()))
