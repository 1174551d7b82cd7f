"""Counter protocol of a batch.

Every report runs its whole read-modify-decide sequence under the lock
`batch-lock-{bid}`. Counter mutations are applied in store transactions, and
the decision to dispatch callbacks is taken from the values returned by the
same transaction.

While a batch's declaration block runs, the batch holds one extra pending
unit. Its conditions cannot hold until the block has returned and every
declared item is registered.

Failure propagation to the parent batch is one level deep and reversible:

- a *new* failure adds one pending, failed unit (the item id) to the parent;
- a later success of that item removes it again.

Deeper ancestors learn about descendants through the `complete` and
`success` sets maintained by Finalize.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .exceptions import InconsistentBatchStateError
from .keys import (
    BatchEvent,
    batch_key,
    complete_key,
    failed_key,
    jids_key,
    success_key,
)
from .status import as_int

if TYPE_CHECKING:
    from .engine import BatchEngine

logger = logging.getLogger(__name__)


def batch_lock_name(bid: str) -> str:
    return f"batch-lock-{bid}"


class BatchCounter:
    """Registration, success and failure bookkeeping for batches."""

    def __init__(self, engine: BatchEngine) -> None:
        self._engine = engine

    @property
    def _store(self):  # noqa: ANN202
        return self._engine.store

    @property
    def _ttl(self) -> int:
        return self._engine.config.bid_expire_ttl

    async def register_work_items(
        self,
        bid: str,
        item_ids: list[str],
        parent_bid: str | None = None,
    ) -> int:
        """Add work items to a batch.

        Only ids that are not already members of the batch's `jids` set are
        counted: `total` and `pending` grow by the number of newly added
        ids. The parent's `total` grows too; its `pending` does not, since
        it only counts the parent's own items and unresolved child failures.

        Returns:
            The number of newly registered items.

        """
        if not item_ids:
            return 0
        store = self._store
        ttl = self._ttl
        async with self._engine.locks.hold(batch_lock_name(bid)):
            added, _ = await (
                store.transaction()
                .sadd(jids_key(bid), *item_ids)
                .expire(jids_key(bid), ttl)
                .execute()
            )
            if added:
                tx = store.transaction()
                if parent_bid:
                    tx.hincrby(batch_key(parent_bid), "total", added)
                    tx.expire(batch_key(parent_bid), ttl)
                await (
                    tx.hincrby(batch_key(bid), "pending", added)
                    .hincrby(batch_key(bid), "total", added)
                    .expire(batch_key(bid), ttl)
                    .execute()
                )

        if added < len(item_ids):
            logger.warning(
                "ignoring work items already registered",
                extra={"bid": bid, "duplicates": len(item_ids) - added},
            )
        logger.debug(
            "work items registered",
            extra={"bid": bid, "count": added, "parent_bid": parent_bid},
        )
        return added

    async def hold_declaration(self, bid: str) -> None:
        """Keep `bid` pending while its declaration block runs.

        One pending unit is added for the length of the block, so neither
        reports on items nor child batches resolving into this batch can
        satisfy its conditions before every item is registered. Counters
        are created at zero when absent.
        """
        await (
            self._store.transaction()
            .hincrby(batch_key(bid), "pending", 1)
            .hincrby(batch_key(bid), "total", 0)
            .hincrby(batch_key(bid), "done", 0)
            .expire(batch_key(bid), self._ttl)
            .execute()
        )

    async def release_declaration(self, bid: str, *, dispatch: bool = True) -> None:
        """Drop the unit taken by `hold_declaration` and re-evaluate `bid`.

        Args:
            bid: The batch whose declaration block finished.
            dispatch: Whether satisfied conditions enqueue callbacks.

        Raises:
            LockAcquisitionError: If the batch lock could not be acquired.
            InconsistentBatchStateError: If the counters contradict each other.

        """
        store = self._store
        async with self._engine.locks.hold(batch_lock_name(bid)):
            pending, failed, children, complete, success, _ = await (
                store.transaction()
                .hincrby(batch_key(bid), "pending", -1)
                .scard(failed_key(bid))
                .hincrby(batch_key(bid), "children", 0)
                .scard(complete_key(bid))
                .scard(success_key(bid))
                .expire(batch_key(bid), self._ttl)
                .execute()
            )
            logger.debug(
                "declaration released",
                extra={"bid": bid, "pending": pending, "failures": failed},
            )
            self._check_consistency(bid, pending, failed)
            if dispatch:
                await self._dispatch(
                    bid,
                    complete=pending == failed and children == complete,
                    all_success=pending == 0 and children == success,
                )

    async def report_success(self, bid: str, item_id: str) -> None:
        """Record that `item_id` finished successfully.

        Raises:
            LockAcquisitionError: If the batch lock could not be acquired.
            InconsistentBatchStateError: If the counters contradict each other.

        """
        store = self._store
        async with self._engine.locks.hold(batch_lock_name(bid)):
            if not await store.sismember(jids_key(bid), item_id):
                logger.warning(
                    "ignoring success report for unregistered or resolved item",
                    extra={"bid": bid, "item_id": item_id},
                )
                return

            (
                was_failed,
                _,
                failed,
                pending,
                done,
                children,
                complete,
                success,
                total,
                parent_bid,
                _,
            ) = await (
                store.transaction()
                .srem(failed_key(bid), item_id)
                .srem(jids_key(bid), item_id)
                .scard(failed_key(bid))
                .hincrby(batch_key(bid), "pending", -1)
                .hincrby(batch_key(bid), "done", 1)
                .hincrby(batch_key(bid), "children", 0)
                .scard(complete_key(bid))
                .scard(success_key(bid))
                .hget(batch_key(bid), "total")
                .hget(batch_key(bid), "parent_bid")
                .expire(batch_key(bid), self._ttl)
                .execute()
            )

            if was_failed and parent_bid:
                await (
                    store.transaction()
                    .hincrby(batch_key(parent_bid), "pending", -1)
                    .srem(failed_key(parent_bid), item_id)
                    .execute()
                )

            logger.info(
                "work item succeeded",
                extra={
                    "bid": bid,
                    "item_id": item_id,
                    "pending": pending,
                    "done": done,
                    "total": as_int(total),
                    "failures": failed,
                    "retried": bool(was_failed),
                },
            )
            self._check_consistency(bid, pending, failed)
            await self._dispatch(
                bid,
                complete=pending == failed and children == complete,
                all_success=pending == 0 and children == success,
            )

    async def report_failure(self, bid: str, item_id: str) -> None:
        """Record that `item_id` failed.

        `pending` is left unchanged: a failed item stays pending until it is
        retried successfully.

        Raises:
            LockAcquisitionError: If the batch lock could not be acquired.
            InconsistentBatchStateError: If the counters contradict each other.

        """
        store = self._store
        ttl = self._ttl
        async with self._engine.locks.hold(batch_lock_name(bid)):
            if not await store.sismember(jids_key(bid), item_id):
                logger.warning(
                    "ignoring failure report for unregistered or resolved item",
                    extra={"bid": bid, "item_id": item_id},
                )
                return

            added, pending, failed, children, complete, parent_bid, _ = await (
                store.transaction()
                .sadd(failed_key(bid), item_id)
                .hincrby(batch_key(bid), "pending", 0)
                .scard(failed_key(bid))
                .hincrby(batch_key(bid), "children", 0)
                .scard(complete_key(bid))
                .hget(batch_key(bid), "parent_bid")
                .expire(failed_key(bid), ttl)
                .execute()
            )

            if added and parent_bid:
                await (
                    store.transaction()
                    .hincrby(batch_key(parent_bid), "pending", 1)
                    .sadd(failed_key(parent_bid), item_id)
                    .expire(failed_key(parent_bid), ttl)
                    .execute()
                )

            logger.info(
                "work item failed",
                extra={
                    "bid": bid,
                    "item_id": item_id,
                    "pending": pending,
                    "failures": failed,
                    "repeated": not added,
                },
            )
            self._check_consistency(bid, pending, failed)

            if pending == failed and children == complete:
                await self._engine.dispatcher.enqueue_callbacks(bid, BatchEvent.COMPLETE)

    async def _dispatch(self, bid: str, *, complete: bool, all_success: bool) -> None:
        # Full success implies completion, so complete is always enqueued
        # first.
        if complete or all_success:
            await self._engine.dispatcher.enqueue_callbacks(bid, BatchEvent.COMPLETE)
        if all_success:
            await self._engine.dispatcher.enqueue_callbacks(bid, BatchEvent.SUCCESS)

    @staticmethod
    def _check_consistency(bid: str, pending: int, failed: int) -> None:
        if pending < failed:
            detail = f"pending={pending} is below failed={failed}"
            raise InconsistentBatchStateError(bid, detail)
