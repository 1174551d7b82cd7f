from __future__ import annotations

import logging
import secrets
import time
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from .channel import CallbackChannel  # noqa: TC001
from .handlers import CallbackHandlerRegistry
from .model import BatchConfig
from .store import Store  # noqa: TC001

if TYPE_CHECKING:
    from .batch import Batch

logger = logging.getLogger(__name__)


def generate_item_id() -> str:
    """Return a random work-item id."""
    return secrets.token_hex(12)


class GlobalContext(BaseModel):
    """Collaborators shared by every batch of one engine."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    config: BatchConfig = Field(default_factory=BatchConfig)
    store: Store
    channel: CallbackChannel | None = None
    handlers: CallbackHandlerRegistry = Field(default_factory=CallbackHandlerRegistry)


class BatchContext:
    """The "current batch" of a work-item declaration block.

    A context is passed explicitly to the block given to `Batch.add_jobs`.
    Work items declared through it belong to its batch, and batches created
    through `new_batch` become its children. Nothing is kept in thread-local
    or other ambient state, so the same code behaves identically across
    tasks, threads and worker pools.

    Registrations are buffered and flushed to the store according to
    `BatchConfig.push_interval`; the owning batch forces a final flush when
    the block returns.
    """

    def __init__(self, batch: Batch, parent_bid: str | None) -> None:
        self.batch = batch
        self.parent_bid = parent_bid
        self.queued: list[str] = []
        self._unflushed: list[str] = []
        self._declared: set[str] = set()
        self._last_flush: float | None = None

    @property
    def bid(self) -> str:
        return self.batch.bid

    async def add(self, item_id: str | None = None) -> str:
        """Declare one work item in this batch.

        Args:
            item_id: The id to use. A random id is generated when omitted.
                Declaring an id that is already registered counts it once.

        Returns:
            The work-item id the executor must report back with.

        """
        item_id = item_id or generate_item_id()
        if item_id in self._declared:
            logger.warning(
                "work item already declared in this block",
                extra={"bid": self.bid, "item_id": item_id},
            )
            return item_id
        self._declared.add(item_id)
        self.queued.append(item_id)
        self._unflushed.append(item_id)
        if self._should_flush():
            await self.flush()
        return item_id

    def new_batch(self, bid: str | None = None) -> Batch:
        """Create a batch whose parent is this context's batch."""
        return self.batch.engine.batch(bid, context=self)

    async def is_valid(self) -> bool:
        """Return whether this batch and all its ancestors are still valid."""
        return await self.batch.engine.is_valid(self.bid)

    async def flush(self) -> None:
        """Push buffered registrations to the store."""
        if not self._unflushed:
            return
        items, self._unflushed = self._unflushed, []
        await self.batch.engine.counter.register_work_items(
            self.bid, items, parent_bid=self.parent_bid
        )
        self._last_flush = time.monotonic()

    def _should_flush(self) -> bool:
        interval = self.batch.engine.config.push_interval
        if interval is None:
            return False
        if interval == 0 or self._last_flush is None:
            return True
        return time.monotonic() - self._last_flush >= interval
