from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .keys import batch_key, complete_key, failed_key, success_key
from .model import FinalStatusSnapshot

if TYPE_CHECKING:
    from .store import Store


def as_int(value: Any) -> int:  # noqa: ANN401
    return int(value) if value not in {None, ""} else 0


def as_float(value: Any) -> float | None:  # noqa: ANN401
    return float(value) if value not in {None, ""} else None


class BatchStatus:
    """Live, read-through view of a batch.

    Every accessor reads the store; nothing is cached between calls.
    """

    def __init__(self, store: Store, bid: str) -> None:
        self._store = store
        self.bid = bid

    async def exists(self) -> bool:
        return await self._store.exists(batch_key(self.bid))

    async def pending(self) -> int:
        return as_int(await self._store.hget(batch_key(self.bid), "pending"))

    async def total(self) -> int:
        return as_int(await self._store.hget(batch_key(self.bid), "total"))

    async def done(self) -> int:
        return as_int(await self._store.hget(batch_key(self.bid), "done"))

    async def failures(self) -> int:
        return await self._store.scard(failed_key(self.bid))

    async def failure_info(self) -> list[str]:
        return sorted(await self._store.smembers(failed_key(self.bid)))

    async def created_at(self) -> float | None:
        return as_float(await self._store.hget(batch_key(self.bid), "created_at"))

    async def parent_bid(self) -> str | None:
        return await self._store.hget(batch_key(self.bid), "parent_bid") or None

    async def child_count(self) -> int:
        return as_int(await self._store.hget(batch_key(self.bid), "children"))

    async def data(self) -> dict[str, Any]:
        """Return every field of the batch as a plain dict."""
        return (await self.snapshot()).model_dump(exclude={"captured_at"})

    async def snapshot(self) -> FinalStatusSnapshot:
        """Capture an immutable snapshot of the batch.

        All reads happen in one transaction, so the snapshot is a consistent
        view. Missing batch data yields zero counts.
        """
        bid = self.bid
        data, failure_info, complete_count, success_count = await (
            self._store.transaction()
            .hgetall(batch_key(bid))
            .smembers(failed_key(bid))
            .scard(complete_key(bid))
            .scard(success_key(bid))
            .execute()
        )

        pending = as_int(data.get("pending"))
        children = as_int(data.get("children"))
        failures = len(failure_info)
        return FinalStatusSnapshot(
            bid=bid,
            total=as_int(data.get("total")),
            done=as_int(data.get("done")),
            pending=pending,
            failures=failures,
            failure_info=sorted(failure_info),
            created_at=as_float(data.get("created_at")),
            description=data.get("description") or None,
            parent_bid=data.get("parent_bid") or None,
            child_count=children,
            complete=pending == failures and children == complete_count,
            success=pending == 0 and children == success_count,
        )
