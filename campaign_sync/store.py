"""Async key-value store adapter over redis.

One ``KVStore`` is built per process (see ``campaign_sync.dependencies``) and
handed to every component that needs storage.
"""

import json
import uuid
from typing import Any, Optional

import redis.asyncio as redis_async
from redis.exceptions import RedisError

from campaign_sync.logging_config import get_logger

logger = get_logger("store")


class StoreError(Exception):
    def __init__(self, operation: str, key: str, detail: str):
        self.operation = operation
        self.key = key
        self.detail = detail
        super().__init__(f"KV {operation} {key} failed: {detail}")


class KVStore:
    def __init__(self, client):
        self._client = client

    @classmethod
    def from_url(cls, redis_url: str, socket_timeout_seconds: float = 2.0) -> "KVStore":
        client = redis_async.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout_seconds,
            socket_timeout=socket_timeout_seconds,
        )
        return cls(client)

    async def close(self) -> None:
        await self._client.aclose()

    async def _call(self, operation: str, key: str, *args, **kwargs) -> Any:
        try:
            return await getattr(self._client, operation)(key, *args, **kwargs)
        except RedisError as exc:
            logger.warning(
                "KV call failed",
                extra={"context": {"operation": operation, "key": key, "error": str(exc)}},
            )
            raise StoreError(operation, key, str(exc)) from exc

    # --- strings ---

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", key)

    async def set(self, key: str, value: str, *, ex: Optional[int] = None, nx: bool = False) -> bool:
        result = await self._call("set", key, value, ex=ex, nx=nx)
        return bool(result)

    async def delete(self, key: str) -> int:
        return await self._call("delete", key)

    async def get_json(self, key: str) -> Any:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return raw

    async def set_json(self, key: str, value: Any) -> bool:
        return await self.set(key, json.dumps(value, ensure_ascii=False, default=str))

    # --- lists ---

    async def lpush(self, key: str, value: str) -> int:
        return await self._call("lpush", key, value)

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        return list(await self._call("lrange", key, start, stop) or [])

    async def ltrim(self, key: str, start: int, stop: int) -> bool:
        return await self._call("ltrim", key, start, stop)

    async def lrem(self, key: str, count: int, value: str) -> int:
        return await self._call("lrem", key, count, value)

    async def push_capped(self, key: str, value: Any, limit: int) -> None:
        """Prepend a JSON entry and keep only the newest ``limit`` items."""
        await self.lpush(key, json.dumps(value, ensure_ascii=False, default=str))
        await self.ltrim(key, 0, limit - 1)

    # --- sorted sets ---

    async def zadd(self, key: str, score: float, member: str) -> int:
        return await self._call("zadd", key, {member: score})

    async def zrange(self, key: str, start: int, stop: int) -> list[str]:
        return list(await self._call("zrange", key, start, stop) or [])

    async def zrem(self, key: str, member: str) -> int:
        return await self._call("zrem", key, member)

    # --- hashes ---

    async def hget(self, key: str, field: str) -> Optional[str]:
        return await self._call("hget", key, field)

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(await self._call("hgetall", key) or {})

    async def hset(self, key: str, field: str, value: Any) -> int:
        return await self._call("hset", key, field, str(value))

    async def hsetnx(self, key: str, field: str, value: Any) -> bool:
        return bool(await self._call("hsetnx", key, field, str(value)))

    async def hdel(self, key: str, *fields: str) -> int:
        if not fields:
            return 0
        return await self._call("hdel", key, *fields)

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return int(await self._call("hincrby", key, field, amount))

    # --- locks ---

    async def acquire_lock(self, key: str, ttl_seconds: int) -> Optional[str]:
        """SET NX EX with an owner token. Returns the token, or None if held."""
        token = uuid.uuid4().hex
        if await self.set(key, token, ex=ttl_seconds, nx=True):
            return token
        return None

    async def release_lock(self, key: str, token: str) -> bool:
        # compare-then-delete; the ttl bounds any lock lost to the gap
        if await self.get(key) != token:
            return False
        await self.delete(key)
        return True
