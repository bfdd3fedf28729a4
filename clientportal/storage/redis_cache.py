from __future__ import annotations

from typing import Optional, Set, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from clientportal.storage.errors import StoreUnavailable


class RedisCache:
    """Thin Redis wrapper implementing the counter store protocol."""

    DEFAULT_OPERATION_TIMEOUT = 2.0

    # Atomic increment that sets the window expiry on the first hit only. A key
    # left without an expiry (e.g. written by an older client) gets one here.
    _INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local window = tonumber(ARGV[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], window)
  return {count, window}
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], window)
  ttl = window
end
return {count, ttl}
"""

    def __init__(
        self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment = self.client.register_script(self._INCREMENT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before wiring dependent services."""

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def increment(self, key: str, window_seconds: int) -> Tuple[int, int]:
        try:
            count, ttl = await self._increment(
                keys=[key], args=[max(1, int(window_seconds))]
            )
        except RedisError as exc:
            raise StoreUnavailable("increment", exc) from exc
        return int(count), max(1, int(ttl))

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(key)
        except RedisError as exc:
            raise StoreUnavailable("get", exc) from exc

    async def set(
        self, key: str, value: str, ttl_seconds: int, *, only_if_present: bool = False
    ) -> bool:
        try:
            written = await self.client.set(
                key, value, ex=max(1, int(ttl_seconds)), xx=only_if_present
            )
        except RedisError as exc:
            raise StoreUnavailable("set", exc) from exc
        return bool(written)

    async def delete(self, key: str) -> int:
        try:
            return int(await self.client.delete(key))
        except RedisError as exc:
            raise StoreUnavailable("delete", exc) from exc

    async def add_member(self, key: str, member: str, ttl_seconds: int) -> None:
        pipe = self.client.pipeline()
        pipe.sadd(key, member)
        pipe.expire(key, max(1, int(ttl_seconds)))
        try:
            await pipe.execute()
        except RedisError as exc:
            raise StoreUnavailable("add_member", exc) from exc

    async def members(self, key: str) -> Set[str]:
        try:
            return set(await self.client.smembers(key))
        except RedisError as exc:
            raise StoreUnavailable("members", exc) from exc

    async def remove_member(self, key: str, member: str) -> None:
        try:
            await self.client.srem(key, member)
        except RedisError as exc:
            raise StoreUnavailable("remove_member", exc) from exc

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as exc:
            raise StoreUnavailable("ping", exc) from exc

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
