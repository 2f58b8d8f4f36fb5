from __future__ import annotations

import functools
from typing import Any, Awaitable, Callable, List, Optional, Tuple, TypeVar

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from authkernel.storage.errors import CacheUnavailable

T = TypeVar("T")


def _wrap_errors(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Re-raise transport failures as :class:`CacheUnavailable`."""

    @functools.wraps(func)
    async def wrapper(self: "RedisCache", *args: Any, **kwargs: Any) -> T:
        try:
            return await func(self, *args, **kwargs)
        except (RedisError, OSError) as exc:
            raise CacheUnavailable(
                f"redis {func.__name__} failed", {"error": str(exc)}
            ) from exc

    return wrapper


class RedisCache:
    """Thin Redis wrapper for session entries and rate-limit buckets."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Prune, count and insert as one step so concurrent checks cannot both pass
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. (now - window))
local count = redis.call('ZCARD', key)

if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local oldest_score = now
  if oldest[2] then
    oldest_score = tonumber(oldest[2])
  end
  return {0, math.max(1, window - (now - oldest_score))}
end

redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, window + 1)
return {1, 0}
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
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # A short-lived sync client avoids binding the async one to a temporary loop
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

    async def close(self) -> None:
        await self.client.aclose()

    @_wrap_errors
    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    @_wrap_errors
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    @_wrap_errors
    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    @_wrap_errors
    async def get_many(self, keys: List[str]) -> List[Optional[str]]:
        if not keys:
            return []
        pipe = self.client.pipeline()
        for key in keys:
            pipe.get(key)
        return list(await pipe.execute())

    @_wrap_errors
    async def scan_prefix(self, prefix: str) -> List[str]:
        keys: List[str] = []
        async for key in self.client.scan_iter(match=f"{prefix}*", count=500):
            keys.append(key)
        return keys

    @_wrap_errors
    async def zadd(self, key: str, score: float, member: str) -> None:
        await self.client.zadd(key, {member: score})

    @_wrap_errors
    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        return int(await self.client.zremrangebyscore(key, min_score, max_score))

    @_wrap_errors
    async def zcard(self, key: str) -> int:
        return int(await self.client.zcard(key))

    @_wrap_errors
    async def zoldest(self, key: str) -> Optional[Tuple[str, float]]:
        entries = await self.client.zrange(key, 0, 0, withscores=True)
        if not entries:
            return None
        member, score = entries[0]
        return member, float(score)

    @_wrap_errors
    async def expire(self, key: str, ttl_seconds: int) -> None:
        await self.client.expire(key, max(1, int(ttl_seconds)))

    @_wrap_errors
    async def sliding_window_hit(
        self, key: str, now: int, window_seconds: int, limit: int, member: str
    ) -> Tuple[bool, int]:
        allowed, retry_after = await self._sliding_window(
            keys=[key], args=[now, window_seconds, limit, member]
        )
        return bool(int(allowed)), int(retry_after)
