"""Exactly-once dispatch of batch callbacks.

`enqueue_callbacks` may be called any number of times, concurrently, for
the same batch and event. The per-event lock serialises callers, and the
processed flag, set before anything is delivered and stored apart from the
batch data, makes every call after the first a no-op.

Several callbacks for one event are coordinated by a *callback batch*: a
batch whose work items are "deliver one callback" and whose own `complete`
event runs Finalize for the original batch. Finalize is therefore only run
once every delivery has been resolved.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from .keys import (
    BatchEvent,
    batch_key,
    callbacks_key,
    complete_key,
    failed_key,
    processed_key,
    success_key,
)
from .model import CallbackDelivery, CallbackRegistration
from .status import BatchStatus, as_int

if TYPE_CHECKING:
    from .engine import BatchEngine

logger = logging.getLogger(__name__)

# Descriptor registered on callback batches. It is never delivered: the
# dispatcher recognises callback batches and runs Finalize itself.
FINALIZE_CALLBACK = "batchkeeper.finalize"


def callback_lock_name(bid: str, event: str) -> str:
    return f"callback-lock-{bid}-{event}"


class CallbackDispatcher:
    """Evaluates completion conditions and delivers callbacks exactly once."""

    def __init__(self, engine: BatchEngine) -> None:
        self._engine = engine

    async def enqueue_callbacks(self, bid: str, event: str) -> None:
        """Fire the callbacks registered for `event` if its condition holds.

        Args:
            bid: The batch id.
            event: `complete` or `success`.

        Raises:
            LockAcquisitionError: If the callback lock could not be acquired.

        """
        event = BatchEvent(event)
        store = self._engine.store
        flag_key = processed_key(bid, event)

        async with self._engine.locks.hold(callback_lock_name(bid, event)):
            if await store.get(flag_key) == "true":
                logger.debug(
                    "callbacks already processed, skipping",
                    extra={"bid": bid, "event": event.value},
                )
                return

            if not await self.condition_holds(bid, event):
                return

            raw_callbacks, queue, parent_bid, callback_batch = await (
                store.transaction()
                .smembers(callbacks_key(bid, event))
                .hget(batch_key(bid), "callback_queue")
                .hget(batch_key(bid), "parent_bid")
                .hget(batch_key(bid), "callback_batch")
                .execute()
            )
            is_callback_batch = callback_batch == "true"
            if raw_callbacks and not is_callback_batch and self._engine.channel is None:
                # Checked before the flag is set, so the callbacks stay
                # deliverable once a channel is configured.
                message = f"no callback channel configured to deliver callbacks of {bid}"
                raise RuntimeError(message)

            await store.set(
                flag_key, "true", ex=self._engine.config.callback_flag_ttl
            )

            registrations = sorted(
                (
                    CallbackRegistration.model_validate_json(raw)
                    for raw in raw_callbacks
                ),
                key=lambda reg: (reg.callback, json.dumps(reg.opts, sort_keys=True)),
            )
            logger.info(
                "enqueueing callbacks",
                extra={
                    "bid": bid,
                    "event": event.value,
                    "callbacks": len(registrations),
                    "callback_batch": is_callback_batch,
                },
            )

            if not registrations:
                if not is_callback_batch:
                    await self.finalize(bid, event)
                return

            await store.delete(callbacks_key(bid, event))

            if is_callback_batch:
                # The registration options name the batch this callback
                # batch was delivering for.
                opts = registrations[0].opts
                await self.finalize(
                    opts.get("bid", bid), opts.get("event", event), callback_bid=bid
                )
                return

            status = await BatchStatus(store, bid).snapshot()
            deliveries = [
                CallbackDelivery(
                    callback=reg.callback,
                    event=event.value,
                    opts=reg.opts,
                    bid=bid,
                    parent_bid=parent_bid or None,
                    status=status,
                    queue=queue or self._engine.config.default_callback_queue,
                )
                for reg in registrations
            ]

            if len(deliveries) == 1:
                await self._channel_deliver(
                    deliveries[0].model_copy(update={"finalize": True})
                )
                return

            await self._deliver_through_callback_batch(bid, event, deliveries)

    async def condition_holds(self, bid: str, event: str) -> bool:
        """Re-read the counters and evaluate the condition of `event`.

        Missing batch data reads as zero, so callbacks registered on a
        batch whose hash already expired can still fire.
        """
        store = self._engine.store
        pending, children, complete, success, failed = await (
            store.transaction()
            .hget(batch_key(bid), "pending")
            .hget(batch_key(bid), "children")
            .scard(complete_key(bid))
            .scard(success_key(bid))
            .scard(failed_key(bid))
            .execute()
        )
        pending = as_int(pending)
        children = as_int(children)

        if event == BatchEvent.COMPLETE:
            holds = pending == failed and children == complete
        else:
            holds = pending == 0 and children == success

        if not holds:
            logger.debug(
                "callback condition no longer holds, skipping",
                extra={
                    "bid": bid,
                    "event": str(event),
                    "pending": pending,
                    "failed": failed,
                    "children": children,
                    "complete": complete,
                    "success": success,
                },
            )
        return holds

    async def finalize(
        self,
        bid: str,
        event: str,
        callback_bid: str | None = None,
    ) -> None:
        """Propagate the outcome of `event` on `bid` to the hierarchy.

        Args:
            bid: The batch whose callbacks were delivered.
            event: The event that was delivered.
            callback_bid: The callback batch that coordinated the deliveries,
                if any.

        """
        event = BatchEvent(event)
        parent_bid = await self._engine.store.hget(batch_key(bid), "parent_bid") or None
        logger.debug(
            "finalizing batch event",
            extra={
                "bid": bid,
                "event": event.value,
                "parent_bid": parent_bid,
                "callback_bid": callback_bid,
            },
        )
        if event == BatchEvent.SUCCESS:
            await self._finalize_success(bid, parent_bid)
        else:
            await self._finalize_complete(bid, parent_bid)

    async def _finalize_success(self, bid: str, parent_bid: str | None) -> None:
        if not parent_bid:
            return
        store = self._engine.store
        ttl = self._engine.config.bid_expire_ttl
        _, _, success, _, complete, pending, children, failed, _ = await (
            store.transaction()
            .sadd(success_key(parent_bid), bid)
            .expire(success_key(parent_bid), ttl)
            .scard(success_key(parent_bid))
            .sadd(complete_key(parent_bid), bid)
            .scard(complete_key(parent_bid))
            .hincrby(batch_key(parent_bid), "pending", 0)
            .hget(batch_key(parent_bid), "children")
            .scard(failed_key(parent_bid))
            .expire(complete_key(parent_bid), ttl)
            .execute()
        )
        children = as_int(children)
        if complete != children or pending != failed:
            return

        complete_processed = (
            await store.get(processed_key(parent_bid, BatchEvent.COMPLETE)) == "true"
        )
        if not complete_processed:
            await self.enqueue_callbacks(parent_bid, BatchEvent.COMPLETE)
        elif pending == 0 and success == children:
            # The parent completed while this child still had failures; its
            # own items are all resolved, so nothing else would dispatch
            # its success.
            await self.enqueue_callbacks(parent_bid, BatchEvent.SUCCESS)

    async def _finalize_complete(self, bid: str, parent_bid: str | None) -> None:
        if await self.condition_holds(bid, BatchEvent.SUCCESS):
            # The success path propagates to the parent itself.
            await self.enqueue_callbacks(bid, BatchEvent.SUCCESS)
            return
        if not parent_bid:
            return

        ttl = self._engine.config.bid_expire_ttl
        _, _, complete, pending, children, failed = await (
            self._engine.store.transaction()
            .sadd(complete_key(parent_bid), bid)
            .expire(complete_key(parent_bid), ttl)
            .scard(complete_key(parent_bid))
            .hincrby(batch_key(parent_bid), "pending", 0)
            .hget(batch_key(parent_bid), "children")
            .scard(failed_key(parent_bid))
            .execute()
        )
        if complete == as_int(children) and pending == failed:
            await self.enqueue_callbacks(parent_bid, BatchEvent.COMPLETE)

    async def _deliver_through_callback_batch(
        self,
        bid: str,
        event: BatchEvent,
        deliveries: list[CallbackDelivery],
    ) -> None:
        cb_batch = self._engine.batch()
        await cb_batch.mark_callback_batch()
        await cb_batch.on(
            BatchEvent.COMPLETE, FINALIZE_CALLBACK, {"bid": bid, "event": event.value}
        )
        item_ids: list[str] = []

        async def declare(ctx) -> None:  # noqa: ANN001
            for _ in deliveries:
                item_ids.append(await ctx.add())

        cb_batch.add_jobs(declare)
        await cb_batch.run()
        logger.debug(
            "callback batch created",
            extra={"bid": bid, "callback_bid": cb_batch.bid, "callbacks": len(deliveries)},
        )

        # Deliveries are handed out only once the callback batch is
        # committed, so no report can overtake its registration.
        for delivery, item_id in zip(deliveries, item_ids, strict=True):
            await self._channel_deliver(
                delivery.model_copy(
                    update={"callback_bid": cb_batch.bid, "item_id": item_id}
                )
            )

    async def _channel_deliver(self, delivery: CallbackDelivery) -> None:
        channel = self._engine.channel
        if channel is None:
            message = "no callback channel configured"
            raise RuntimeError(message)
        await channel.deliver(delivery)


