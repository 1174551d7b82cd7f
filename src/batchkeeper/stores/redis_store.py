from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import redis.asyncio as redis

from batchkeeper.framework import Store, StoreTransaction

if TYPE_CHECKING:
    from redis.asyncio.client import Pipeline

logger = logging.getLogger(__name__)

# Deletes KEYS[1] only when it still holds ARGV[1].
COMPARE_AND_DELETE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisTransaction(StoreTransaction):
    """Transaction backed by a `MULTI`/`EXEC` pipeline."""

    def __init__(self, pipeline: Pipeline) -> None:
        self._pipeline = pipeline
        # Post-processing per queued command, applied to the EXEC results.
        self._converters: list[Any] = []

    def _queue(self, converter: Any = None) -> RedisTransaction:  # noqa: ANN401
        self._converters.append(converter)
        return self

    def hget(self, key: str, field: str) -> RedisTransaction:
        self._pipeline.hget(key, field)
        return self._queue()

    def hgetall(self, key: str) -> RedisTransaction:
        self._pipeline.hgetall(key)
        return self._queue(dict)

    def hset(self, key: str, mapping: dict[str, Any]) -> RedisTransaction:
        self._pipeline.hset(key, mapping={k: str(v) for k, v in mapping.items()})
        return self._queue(int)

    def hincrby(self, key: str, field: str, amount: int = 1) -> RedisTransaction:
        self._pipeline.hincrby(key, field, amount)
        return self._queue(int)

    def sadd(self, key: str, *members: str) -> RedisTransaction:
        self._pipeline.sadd(key, *members)
        return self._queue(int)

    def srem(self, key: str, *members: str) -> RedisTransaction:
        self._pipeline.srem(key, *members)
        return self._queue(int)

    def scard(self, key: str) -> RedisTransaction:
        self._pipeline.scard(key)
        return self._queue(int)

    def smembers(self, key: str) -> RedisTransaction:
        self._pipeline.smembers(key)
        return self._queue(set)

    def expire(self, key: str, seconds: int) -> RedisTransaction:
        self._pipeline.expire(key, seconds)
        return self._queue(bool)

    def delete(self, *keys: str) -> RedisTransaction:
        self._pipeline.delete(*keys)
        return self._queue(int)

    async def execute(self) -> list[Any]:
        async with self._pipeline as pipe:
            results = await pipe.execute()
        return [
            converter(result) if converter is not None else result
            for converter, result in zip(self._converters, results, strict=True)
        ]


class RedisStore(Store):
    """Store backed by a Redis server through `redis.asyncio`.

    Args:
        host: Redis host name.
        port: Redis port.
        db: Database index.
        password: Password, if the server requires one.
        url: A `redis://` URL. Takes precedence over the other settings.
        client: An already configured client, mainly for tests.

    """

    def __init__(  # noqa: PLR0913
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: str | None = None,
        url: str | None = None,
        client: redis.Redis | None = None,
    ) -> None:
        """Initialize the Redis client."""
        super().__init__()
        if client is not None:
            self._client = client
        elif url:
            self._client = redis.Redis.from_url(url, decode_responses=True)
        else:
            self._client = redis.Redis(
                host=host,
                port=port,
                db=db,
                password=password,
                decode_responses=True,
            )
        self._compare_and_delete = self._client.register_script(
            COMPARE_AND_DELETE_SCRIPT
        )

        logger.info(
            "RedisStore was initialized",
            extra={"host": host, "port": port, "db": db, "url_configured": bool(url)},
        )

    @property
    def client(self) -> redis.Redis:
        return self._client

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def set(
        self,
        key: str,
        value: str,
        *,
        nx: bool = False,
        ex: int | None = None,
    ) -> bool:
        return bool(await self._client.set(key, value, nx=nx, ex=ex))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._client.delete(*keys))

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        return bool(await self._compare_and_delete(keys=[key], args=[expected]))

    async def exists(self, key: str) -> bool:
        return bool(await self._client.exists(key))

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self._client.expire(key, seconds))

    async def ttl(self, key: str) -> int:
        return int(await self._client.ttl(key))

    async def hget(self, key: str, field: str) -> str | None:
        return await self._client.hget(key, field)

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(await self._client.hgetall(key))

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return int(await self._client.hincrby(key, field, amount))

    async def sadd(self, key: str, *members: str) -> int:
        return int(await self._client.sadd(key, *members))

    async def scard(self, key: str) -> int:
        return int(await self._client.scard(key))

    async def sismember(self, key: str, member: str) -> bool:
        return bool(await self._client.sismember(key, member))

    async def smembers(self, key: str) -> set[str]:
        return set(await self._client.smembers(key))

    async def rpush(self, key: str, *values: str) -> int:
        return int(await self._client.rpush(key, *values))

    async def lpop(self, key: str) -> str | None:
        return await self._client.lpop(key)

    def transaction(self) -> RedisTransaction:
        return RedisTransaction(self._client.pipeline(transaction=True))

    async def close(self) -> None:
        await self._client.aclose()
