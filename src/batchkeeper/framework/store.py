from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class StoreTransaction(ABC):
    """A batch of store commands applied atomically.

    Commands are queued by calling the methods below (each returns the
    transaction itself so calls can be chained) and run together by
    `execute()`, which returns one result per queued command in order.
    The result of each command is the same value the matching `Store`
    method would return.
    """

    @abstractmethod
    def hget(self, key: str, field: str) -> StoreTransaction:
        """Queue a hash field read."""

    @abstractmethod
    def hgetall(self, key: str) -> StoreTransaction:
        """Queue a whole-hash read."""

    @abstractmethod
    def hset(self, key: str, mapping: dict[str, Any]) -> StoreTransaction:
        """Queue a multi-field hash write."""

    @abstractmethod
    def hincrby(self, key: str, field: str, amount: int = 1) -> StoreTransaction:
        """Queue an atomic hash increment (a zero amount reads the counter)."""

    @abstractmethod
    def sadd(self, key: str, *members: str) -> StoreTransaction:
        """Queue a set add."""

    @abstractmethod
    def srem(self, key: str, *members: str) -> StoreTransaction:
        """Queue a set remove."""

    @abstractmethod
    def scard(self, key: str) -> StoreTransaction:
        """Queue a set cardinality read."""

    @abstractmethod
    def smembers(self, key: str) -> StoreTransaction:
        """Queue a set members read."""

    @abstractmethod
    def expire(self, key: str, seconds: int) -> StoreTransaction:
        """Queue a key expiry update."""

    @abstractmethod
    def delete(self, *keys: str) -> StoreTransaction:
        """Queue a key delete."""

    @abstractmethod
    async def execute(self) -> list[Any]:
        """Apply every queued command atomically.

        Returns:
            One result per queued command, in queue order.

        """
        message = "`execute` must be implemented in subclasses of StoreTransaction."
        raise NotImplementedError(message)


class Store(ABC):
    """Narrow interface to the shared key-value store.

    The engine relies only on the primitives declared here: hash counters,
    sets, conditional set with expiry, expiry management, an atomic
    compare-and-delete used by the lock manager, list push/pop used by the
    store-backed callback channel, and multi-command transactions.

    All values are strings. Missing keys read as `None` (scalars), `0`
    (counters and cardinalities) or an empty set.
    """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Read a string key."""
        message = "`get` must be implemented in subclasses of Store."
        raise NotImplementedError(message)

    @abstractmethod
    async def set(
        self,
        key: str,
        value: str,
        *,
        nx: bool = False,
        ex: int | None = None,
    ) -> bool:
        """Write a string key.

        Args:
            key: The key to write.
            value: The value to store.
            nx: Only write when the key does not exist.
            ex: Expiry in seconds.

        Returns:
            True when the value was written.

        """
        message = "`set` must be implemented in subclasses of Store."
        raise NotImplementedError(message)

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys and return how many existed."""
        message = "`delete` must be implemented in subclasses of Store."
        raise NotImplementedError(message)

    @abstractmethod
    async def compare_and_delete(self, key: str, expected: str) -> bool:
        """Delete `key` only if it currently holds `expected`, atomically."""
        message = "`compare_and_delete` must be implemented in subclasses of Store."
        raise NotImplementedError(message)

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Return whether the key exists."""
        message = "`exists` must be implemented in subclasses of Store."
        raise NotImplementedError(message)

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> bool:
        """Set a key's time to live."""
        message = "`expire` must be implemented in subclasses of Store."
        raise NotImplementedError(message)

    @abstractmethod
    async def ttl(self, key: str) -> int:
        """Return the remaining time to live (-1 without expiry, -2 if missing)."""
        message = "`ttl` must be implemented in subclasses of Store."
        raise NotImplementedError(message)

    @abstractmethod
    async def hget(self, key: str, field: str) -> str | None:
        """Read a hash field."""
        message = "`hget` must be implemented in subclasses of Store."
        raise NotImplementedError(message)

    @abstractmethod
    async def hgetall(self, key: str) -> dict[str, str]:
        """Read a whole hash."""
        message = "`hgetall` must be implemented in subclasses of Store."
        raise NotImplementedError(message)

    @abstractmethod
    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        """Atomically increment a hash field and return the new value."""
        message = "`hincrby` must be implemented in subclasses of Store."
        raise NotImplementedError(message)

    @abstractmethod
    async def sadd(self, key: str, *members: str) -> int:
        """Add set members and return how many were new."""
        message = "`sadd` must be implemented in subclasses of Store."
        raise NotImplementedError(message)

    @abstractmethod
    async def scard(self, key: str) -> int:
        """Return a set's cardinality."""
        message = "`scard` must be implemented in subclasses of Store."
        raise NotImplementedError(message)

    @abstractmethod
    async def sismember(self, key: str, member: str) -> bool:
        """Return whether `member` belongs to the set."""
        message = "`sismember` must be implemented in subclasses of Store."
        raise NotImplementedError(message)

    @abstractmethod
    async def smembers(self, key: str) -> set[str]:
        """Return all set members."""
        message = "`smembers` must be implemented in subclasses of Store."
        raise NotImplementedError(message)

    @abstractmethod
    async def rpush(self, key: str, *values: str) -> int:
        """Append values to a list and return its new length."""
        message = "`rpush` must be implemented in subclasses of Store."
        raise NotImplementedError(message)

    @abstractmethod
    async def lpop(self, key: str) -> str | None:
        """Pop the head of a list."""
        message = "`lpop` must be implemented in subclasses of Store."
        raise NotImplementedError(message)

    @abstractmethod
    def transaction(self) -> StoreTransaction:
        """Start a new transaction."""
        message = "`transaction` must be implemented in subclasses of Store."
        raise NotImplementedError(message)

    async def close(self) -> None:  # noqa: B027
        """Release client resources. No-op by default."""
