from __future__ import annotations

import logging
import secrets
import time
from typing import TYPE_CHECKING, Any

from .context import BatchContext
from .dispatcher import FINALIZE_CALLBACK
from .exceptions import (
    BatchAlreadyStartedError,
    InvalidEventError,
    NoJobsBlockError,
    UnknownCallbackError,
)
from .keys import BatchEvent, batch_key, callbacks_key, invalidated_key, jids_key
from .model import CallbackRegistration
from .status import BatchStatus

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .engine import BatchEngine

logger = logging.getLogger(__name__)


def generate_bid() -> str:
    """Return a random, URL-safe batch id."""
    return secrets.token_urlsafe(10)


class Batch:
    """A group of work items whose completion fires callbacks.

    Typical use::

        batch = engine.batch()
        await batch.on("success", "report#on_success", {"report_id": 7})

        async def declare(ctx: BatchContext) -> None:
            for chunk in chunks:
                item_id = await ctx.add()
                await executor.submit(ctx.bid, item_id, chunk)

        await batch.jobs(declare)

    Work items are declared inside the block through the `BatchContext` it
    receives. Batches created with `ctx.new_batch()` inside the block become
    children of this batch.
    """

    def __init__(
        self,
        engine: BatchEngine,
        bid: str | None = None,
        *,
        context: BatchContext | None = None,
    ) -> None:
        """Initialize the batch.

        Args:
            engine: The engine the batch belongs to.
            bid: An existing batch id to re-attach to. A new id is
                generated when omitted.
            context: The declaration context this batch is created in. Its
                batch becomes the parent of this one.

        """
        self.engine = engine
        self.bid = bid or generate_bid()
        self._existing = bool(bid)
        self._parent_bid = context.bid if context is not None else None
        self.created_at = time.time()
        self.description: str | None = None
        self.callback_queue: str | None = None
        self._jobs_block: Callable[[BatchContext], Awaitable[None]] | None = None
        self._initialized = False
        self._started = False

    def __repr__(self) -> str:
        return f"Batch(bid={self.bid}, parent_bid={self._parent_bid})"

    @property
    def started(self) -> bool:
        return self._started

    async def set_description(self, description: str) -> None:
        self.description = description
        await self._persist_attr("description", description)

    async def set_callback_queue(self, callback_queue: str) -> None:
        self.callback_queue = callback_queue
        await self._persist_attr("callback_queue", callback_queue)

    async def mark_callback_batch(self) -> None:
        """Flag this batch as a callback batch coordinating deliveries."""
        await self._persist_attr("callback_batch", "true")

    async def on(
        self,
        event: str,
        callback: str,
        opts: dict[str, Any] | None = None,
    ) -> None:
        """Register a callback for `event`.

        Args:
            event: `complete` or `success`.
            callback: Descriptor of the handler, `"target"` or
                `"target#method"`.
            opts: Options passed to the handler verbatim. Must be JSON
                serialisable.

        Raises:
            BatchAlreadyStartedError: If the batch was already committed.
            InvalidEventError: If the event is unknown.
            UnknownCallbackError: If handlers are registered in this process
                and none matches the descriptor.

        """
        if self._started:
            message = "Cannot add callbacks to a batch that has already been started"
            raise BatchAlreadyStartedError(message)
        try:
            event = BatchEvent(event)
        except ValueError as exc:
            message = f"unknown batch event: {event!r}"
            raise InvalidEventError(message) from exc

        handlers = self.engine.handlers
        if callback != FINALIZE_CALLBACK and handlers.names() and callback not in handlers:
            message = f"no callback handler registered for '{callback}'"
            raise UnknownCallbackError(message)

        registration = CallbackRegistration(callback=callback, opts=opts or {})
        key = callbacks_key(self.bid, event)
        await (
            self.engine.store.transaction()
            .sadd(key, registration.model_dump_json())
            .expire(key, self.engine.config.bid_expire_ttl)
            .execute()
        )
        logger.debug(
            "callback registered",
            extra={"bid": self.bid, "event": event.value, "callback": callback},
        )

    def add_jobs(self, block: Callable[[BatchContext], Awaitable[None]] | None) -> Batch:
        """Set the declaration block run on commit.

        The block is not executed until `run()`.

        Returns:
            The batch itself, for chaining.

        Raises:
            NoJobsBlockError: If no block is given.

        """
        if block is None:
            raise NoJobsBlockError("a declaration block is required")
        self._jobs_block = block
        return self

    async def jobs(self, block: Callable[[BatchContext], Awaitable[None]]) -> list[str]:
        """Set the declaration block and commit the batch."""
        return await self.add_jobs(block).run()

    async def run(self) -> list[str]:
        """Run the declaration block and commit its work items.

        The batch stays pending while the block runs; its conditions are
        evaluated once the block has returned and every item is registered.

        Returns:
            The ids of the declared work items (empty when no block was set).

        Raises:
            BatchAlreadyStartedError: If the batch was already committed.

        """
        if self._jobs_block is None:
            return []
        if self._started:
            message = f"batch {self.bid} has already been committed"
            raise BatchAlreadyStartedError(message)
        self._started = True

        store = self.engine.store
        ttl = self.engine.config.bid_expire_ttl
        parent_bid = self._parent_bid

        if not self._existing and not self._initialized:
            tx = (
                store.transaction()
                .hset(batch_key(self.bid), {"created_at": str(self.created_at)})
                .expire(batch_key(self.bid), ttl)
            )
            if parent_bid:
                tx.hset(batch_key(self.bid), {"parent_bid": parent_bid})
                tx.hincrby(batch_key(parent_bid), "children", 1)
            await tx.execute()
            self._initialized = True

        await self.engine.counter.hold_declaration(self.bid)
        ctx = BatchContext(self, parent_bid)
        try:
            await self._jobs_block(ctx)
        finally:
            await ctx.flush()
            await self._release_declaration()

        tx = store.transaction()
        if parent_bid:
            tx.expire(batch_key(parent_bid), ttl)
        await tx.expire(batch_key(self.bid), ttl).expire(jids_key(self.bid), ttl).execute()

        logger.info(
            "batch committed",
            extra={
                "bid": self.bid,
                "parent_bid": parent_bid,
                "items": len(ctx.queued),
            },
        )
        return ctx.queued

    async def _release_declaration(self) -> None:
        store = self.engine.store
        has_callbacks = (
            await store.scard(callbacks_key(self.bid, BatchEvent.COMPLETE))
            + await store.scard(callbacks_key(self.bid, BatchEvent.SUCCESS))
        ) > 0
        parent_bid = self._parent_bid or await self.parent_bid()
        # A parent waits for this batch in its complete/success sets, so the
        # conditions are evaluated for a child even without callbacks.
        await self.engine.counter.release_declaration(
            self.bid, dispatch=has_callbacks or bool(parent_bid)
        )

    async def invalidate_all(self) -> None:
        """Mark this batch, and through it every descendant, as invalid.

        Invalidation is advisory: work items check `is_valid()` themselves.
        """
        await self.engine.store.set(
            invalidated_key(self.bid), "1", ex=self.engine.config.bid_expire_ttl
        )
        logger.info("batch invalidated", extra={"bid": self.bid})

    async def is_valid(self) -> bool:
        return await self.engine.is_valid(self.bid)

    async def parent_bid(self) -> str | None:
        return await self.engine.store.hget(batch_key(self.bid), "parent_bid") or None

    async def parent(self) -> Batch | None:
        parent_bid = await self.parent_bid()
        if not parent_bid:
            return None
        return self.engine.batch(parent_bid)

    async def status(self) -> BatchStatus:
        """Return a live, read-through status view of this batch."""
        return self.engine.status(self.bid)

    async def _persist_attr(self, attribute: str, value: str) -> None:
        await (
            self.engine.store.transaction()
            .hset(batch_key(self.bid), {attribute: value})
            .expire(batch_key(self.bid), self.engine.config.bid_expire_ttl)
            .execute()
        )
