from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .batch import Batch
from .counter import BatchCounter
from .dispatcher import CallbackDispatcher
from .exceptions import InconsistentBatchStateError
from .keys import (
    BatchEvent,
    batch_key,
    complete_key,
    failed_key,
    invalidated_key,
    processed_key,
    success_key,
)
from .lock import LockManager
from .status import BatchStatus, as_int

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .channel import CallbackChannel
    from .context import BatchContext, GlobalContext
    from .handlers import CallbackHandlerRegistry
    from .model import BatchConfig
    from .store import Store

logger = logging.getLogger(__name__)


class BatchEngine:
    """Entry point wiring the store, locks, counter and dispatcher together.

    One engine is built per process from a `GlobalContext`. It attaches
    itself to the configured callback channel, so deliveries consumed by the
    channel are reported back to it.
    """

    def __init__(self, gctx: GlobalContext) -> None:
        self._gctx = gctx
        self.locks = LockManager(
            gctx.store,
            timeout=gctx.config.lock_timeout,
            max_wait=gctx.config.lock_max_wait,
        )
        self.dispatcher = CallbackDispatcher(self)
        self.counter = BatchCounter(self)
        if gctx.channel is not None:
            gctx.channel.engine = self

    @property
    def gctx(self) -> GlobalContext:
        return self._gctx

    @property
    def store(self) -> Store:
        return self._gctx.store

    @property
    def config(self) -> BatchConfig:
        return self._gctx.config

    @property
    def channel(self) -> CallbackChannel | None:
        return self._gctx.channel

    @property
    def handlers(self) -> CallbackHandlerRegistry:
        return self._gctx.handlers

    def batch(self, bid: str | None = None, *, context: BatchContext | None = None) -> Batch:
        """Create a new batch, or re-attach to the existing batch `bid`."""
        return Batch(self, bid, context=context)

    def status(self, bid: str) -> BatchStatus:
        return BatchStatus(self.store, bid)

    async def report_success(self, bid: str, item_id: str) -> None:
        await self.counter.report_success(bid, item_id)

    async def report_failure(self, bid: str, item_id: str) -> None:
        await self.counter.report_failure(bid, item_id)

    async def enqueue_callbacks(self, bid: str, event: str) -> None:
        await self.dispatcher.enqueue_callbacks(bid, event)

    async def track(
        self,
        bid: str,
        item_id: str,
        work: Callable[[], Awaitable[Any]],
    ) -> Any:  # noqa: ANN401
        """Run one work item and report its outcome.

        Args:
            bid: The batch the item belongs to.
            item_id: The id returned when the item was declared.
            work: A coroutine factory performing the work.

        Returns:
            Whatever `work` returned.

        Raises:
            Exception: Whatever `work` raised, after the failure was reported.

        """
        try:
            result = await work()
        except Exception:
            logger.exception(
                "work item raised", extra={"bid": bid, "item_id": item_id}
            )
            await self.report_failure(bid, item_id)
            raise
        await self.report_success(bid, item_id)
        return result

    async def is_valid(self, bid: str) -> bool:
        """Return whether `bid` and every ancestor are still valid."""
        current: str | None = bid
        seen: set[str] = set()
        while current and current not in seen:
            if await self.store.exists(invalidated_key(current)):
                return False
            seen.add(current)
            current = await self.store.hget(batch_key(current), "parent_bid") or None
        return True

    async def reconcile(self, bid: str) -> list[BatchEvent]:
        """Re-evaluate both completion conditions of `bid`.

        Used after a crash or a lock timeout interrupted a dispatch.

        Returns:
            The events whose callbacks were enqueued.

        Raises:
            InconsistentBatchStateError: If a processed flag is set while the
                counters say its condition does not hold.

        """
        pending, children, complete, success, failed = await (
            self.store.transaction()
            .hget(batch_key(bid), "pending")
            .hget(batch_key(bid), "children")
            .scard(complete_key(bid))
            .scard(success_key(bid))
            .scard(failed_key(bid))
            .execute()
        )
        pending = as_int(pending)
        children = as_int(children)
        holds = {
            BatchEvent.COMPLETE: pending == failed and children == complete,
            BatchEvent.SUCCESS: pending == 0 and children == success,
        }

        enqueued: list[BatchEvent] = []
        for event, condition in holds.items():
            processed = await self.store.get(processed_key(bid, event)) == "true"
            if processed and not condition:
                detail = (
                    f"{event.value} already processed but pending={pending}, "
                    f"failed={failed}, children={children}, "
                    f"complete={complete}, success={success}"
                )
                raise InconsistentBatchStateError(bid, detail)
            if condition and not processed:
                logger.info(
                    "reconciling batch event",
                    extra={"bid": bid, "event": event.value},
                )
                await self.dispatcher.enqueue_callbacks(bid, event)
                enqueued.append(event)
        return enqueued
