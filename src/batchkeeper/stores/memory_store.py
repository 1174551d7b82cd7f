from __future__ import annotations

import logging
import time
from collections import deque
from typing import TYPE_CHECKING, Any

from batchkeeper.framework import Store, StoreTransaction

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class MemoryTransaction(StoreTransaction):
    """Transaction over a `MemoryStore`.

    Queued commands are applied back to back in `execute()` with no await in
    between, so no other task on the loop observes a partial result.
    """

    def __init__(self, store: MemoryStore) -> None:
        self._store = store
        self._commands: list[Callable[[], Any]] = []

    def _queue(self, command: Callable[[], Any]) -> MemoryTransaction:
        self._commands.append(command)
        return self

    def hget(self, key: str, field: str) -> MemoryTransaction:
        return self._queue(lambda: self._store.sync_hget(key, field))

    def hgetall(self, key: str) -> MemoryTransaction:
        return self._queue(lambda: self._store.sync_hgetall(key))

    def hset(self, key: str, mapping: dict[str, Any]) -> MemoryTransaction:
        return self._queue(lambda: self._store.sync_hset(key, mapping))

    def hincrby(self, key: str, field: str, amount: int = 1) -> MemoryTransaction:
        return self._queue(lambda: self._store.sync_hincrby(key, field, amount))

    def sadd(self, key: str, *members: str) -> MemoryTransaction:
        return self._queue(lambda: self._store.sync_sadd(key, *members))

    def srem(self, key: str, *members: str) -> MemoryTransaction:
        return self._queue(lambda: self._store.sync_srem(key, *members))

    def scard(self, key: str) -> MemoryTransaction:
        return self._queue(lambda: self._store.sync_scard(key))

    def smembers(self, key: str) -> MemoryTransaction:
        return self._queue(lambda: self._store.sync_smembers(key))

    def expire(self, key: str, seconds: int) -> MemoryTransaction:
        return self._queue(lambda: self._store.sync_expire(key, seconds))

    def delete(self, *keys: str) -> MemoryTransaction:
        return self._queue(lambda: self._store.sync_delete(*keys))

    async def execute(self) -> list[Any]:
        commands, self._commands = self._commands, []
        return [command() for command in commands]


class MemoryStore(Store):
    """In-process store for tests and single-process deployments.

    Keys live in one dict, whatever their type. Expiry deadlines are kept on
    the monotonic clock and checked lazily on access.
    """

    def __init__(self) -> None:
        """Initialize an empty store."""
        super().__init__()
        self._data: dict[str, Any] = {}
        self._deadlines: dict[str, float] = {}

        logger.info(
            "MemoryStore was initialized",
        )

    def _live(self, key: str) -> Any:  # noqa: ANN401
        deadline = self._deadlines.get(key)
        if deadline is not None and time.monotonic() >= deadline:
            self._data.pop(key, None)
            self._deadlines.pop(key, None)
        return self._data.get(key)

    def _typed(self, key: str, factory: type) -> Any:  # noqa: ANN401
        value = self._live(key)
        if value is None:
            value = factory()
            self._data[key] = value
        elif not isinstance(value, factory):
            message = f"key {key} holds a {type(value).__name__}, not a {factory.__name__}"
            raise TypeError(message)
        return value

    def _drop_if_empty(self, key: str) -> None:
        if not self._data.get(key):
            self._data.pop(key, None)
            self._deadlines.pop(key, None)

    def sync_hget(self, key: str, field: str) -> str | None:
        value = self._live(key)
        return value.get(field) if value else None

    def sync_hgetall(self, key: str) -> dict[str, str]:
        return dict(self._live(key) or {})

    def sync_hset(self, key: str, mapping: dict[str, Any]) -> int:
        values = self._typed(key, dict)
        added = sum(1 for field in mapping if field not in values)
        values.update({field: str(value) for field, value in mapping.items()})
        return added

    def sync_hincrby(self, key: str, field: str, amount: int = 1) -> int:
        values = self._typed(key, dict)
        value = int(values.get(field, 0)) + amount
        values[field] = str(value)
        return value

    def sync_sadd(self, key: str, *members: str) -> int:
        values = self._typed(key, set)
        added = len(set(members) - values)
        values.update(members)
        return added

    def sync_srem(self, key: str, *members: str) -> int:
        values = self._live(key)
        if not values:
            return 0
        removed = len(values & set(members))
        values.difference_update(members)
        self._drop_if_empty(key)
        return removed

    def sync_scard(self, key: str) -> int:
        return len(self._live(key) or ())

    def sync_smembers(self, key: str) -> set[str]:
        return set(self._live(key) or ())

    def sync_expire(self, key: str, seconds: int) -> bool:
        if self._live(key) is None:
            return False
        self._deadlines[key] = time.monotonic() + seconds
        return True

    def sync_delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._live(key) is not None:
                deleted += 1
            self._data.pop(key, None)
            self._deadlines.pop(key, None)
        return deleted

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def set(
        self,
        key: str,
        value: str,
        *,
        nx: bool = False,
        ex: int | None = None,
    ) -> bool:
        if nx and self._live(key) is not None:
            return False
        self._data[key] = str(value)
        if ex is not None:
            self._deadlines[key] = time.monotonic() + ex
        else:
            self._deadlines.pop(key, None)
        return True

    async def delete(self, *keys: str) -> int:
        return self.sync_delete(*keys)

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        if self._live(key) != expected:
            return False
        self.sync_delete(key)
        return True

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def expire(self, key: str, seconds: int) -> bool:
        return self.sync_expire(key, seconds)

    async def ttl(self, key: str) -> int:
        if self._live(key) is None:
            return -2
        deadline = self._deadlines.get(key)
        if deadline is None:
            return -1
        return max(0, round(deadline - time.monotonic()))

    async def hget(self, key: str, field: str) -> str | None:
        return self.sync_hget(key, field)

    async def hgetall(self, key: str) -> dict[str, str]:
        return self.sync_hgetall(key)

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return self.sync_hincrby(key, field, amount)

    async def sadd(self, key: str, *members: str) -> int:
        return self.sync_sadd(key, *members)

    async def scard(self, key: str) -> int:
        return self.sync_scard(key)

    async def sismember(self, key: str, member: str) -> bool:
        return member in (self._live(key) or ())

    async def smembers(self, key: str) -> set[str]:
        return self.sync_smembers(key)

    async def rpush(self, key: str, *values: str) -> int:
        items = self._typed(key, deque)
        items.extend(values)
        return len(items)

    async def lpop(self, key: str) -> str | None:
        items = self._live(key)
        if not items:
            return None
        value = items.popleft()
        self._drop_if_empty(key)
        return value

    def transaction(self) -> MemoryTransaction:
        return MemoryTransaction(self)
