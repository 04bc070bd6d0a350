"""Redis-backed counter store.

All processes sharing one Redis instance share one set of counters. The
increment-and-expire primitive is a server-side Lua script so the increment
and the first-time TTL assignment happen in one atomic round trip.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as redis
from redis.exceptions import RedisError

from gatekeeper.adapters.counter_store.base import AbstractCounterStore
from gatekeeper.core.errors import CounterValueError, StoreUnavailableError

logger = logging.getLogger(__name__)


INCREMENT_AND_MAYBE_EXPIRE_LUA = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
    redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return count
"""

DECREMENT_IF_EXISTS_LUA = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return redis.call('DECR', KEYS[1])
end
return false
"""


class RedisCounterStore(AbstractCounterStore):
    """Counter store backed by ``redis.asyncio``."""

    backend_name = "redis"

    def __init__(self, client: redis.Redis) -> None:
        """Wrap an existing client.

        Args:
            client: ``redis.asyncio.Redis`` instance created with
                ``decode_responses=True``.
        """
        self._client = client
        self._increment_script = client.register_script(INCREMENT_AND_MAYBE_EXPIRE_LUA)
        self._decrement_script = client.register_script(DECREMENT_IF_EXISTS_LUA)

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
    ) -> "RedisCounterStore":
        """Build a store from a Redis URL."""
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_connect_timeout,
        )
        return cls(client)

    @asynccontextmanager
    async def _translate_errors(self, operation: str) -> AsyncIterator[None]:
        """Re-raise backend failures as StoreUnavailableError."""
        try:
            yield
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise StoreUnavailableError(
                code="store_unavailable",
                message=f"Redis {operation} failed: {type(exc).__name__}",
                details={"backend": self.backend_name, "operation": operation},
            ) from exc

    async def get(self, key: str) -> int | None:
        async with self._translate_errors("get"):
            value = await self._client.get(key)
        if value is None:
            return None
        try:
            return int(value)
        except ValueError as exc:
            raise CounterValueError(
                code="invalid_counter_value",
                message="Key does not hold a counter",
                details={"backend": self.backend_name, "operation": "get"},
            ) from exc

    async def increment_and_maybe_expire(self, key: str, window_seconds: int) -> int:
        if window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")
        async with self._translate_errors("increment"):
            count = await self._increment_script(keys=[key], args=[window_seconds])
        return int(count)

    async def decrement(self, key: str) -> int | None:
        async with self._translate_errors("decrement"):
            count = await self._decrement_script(keys=[key])
        return int(count) if count is not None else None

    async def ttl(self, key: str) -> int | None:
        async with self._translate_errors("ttl"):
            seconds = await self._client.ttl(key)
        # -2: key missing, -1: key without expiry
        if seconds is None or seconds < 0:
            return None
        return int(seconds)

    async def delete(self, key: str) -> bool:
        async with self._translate_errors("delete"):
            removed = await self._client.delete(key)
        return bool(removed)

    async def read(self, key: str) -> str | None:
        async with self._translate_errors("read"):
            return await self._client.get(key)

    async def write(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        async with self._translate_errors("write"):
            await self._client.set(key, value, ex=ttl_seconds or None)

    async def ping(self) -> bool:
        try:
            async with self._translate_errors("ping"):
                return bool(await self._client.ping())
        except StoreUnavailableError:
            logger.warning("counter_store.ping_failed", extra={"backend": self.backend_name})
            return False

    async def close(self) -> None:
        await self._client.aclose()
