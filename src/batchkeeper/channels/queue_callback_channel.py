from __future__ import annotations

import asyncio
import logging

from batchkeeper.framework import CallbackChannel, CallbackDelivery, perform_delivery

logger = logging.getLogger(__name__)


class QueueCallbackChannel(CallbackChannel):
    """In-process channel backed by `asyncio.Queue`.

    `deliver` only enqueues. Deliveries are invoked by worker tasks run by
    `start()`, so callbacks never execute inside the lock of the report that
    triggered them.

    Args:
        maxsize: Maximum number of queued deliveries. A value of 0 indicates
            unlimited capacity.
        max_concurrency: Number of worker tasks invoking callbacks.

    """

    def __init__(self, maxsize: int = 0, max_concurrency: int = 1) -> None:
        super().__init__()
        self._queue: asyncio.Queue[CallbackDelivery] = asyncio.Queue(maxsize=maxsize)
        self._max_concurrency = max_concurrency
        self._workers: list[asyncio.Task] = []

        logger.info(
            "QueueCallbackChannel was initialized",
            extra={"maxsize": maxsize, "max_concurrency": max_concurrency},
        )

    async def deliver(self, delivery: CallbackDelivery) -> None:
        """Enqueue a delivery.

        Note:
            This operation waits if the queue is full (only when `maxsize > 0`).

        """
        await self._queue.put(delivery)

    async def start(self) -> None:
        """Run the worker tasks until `stop()` is called."""
        engine = self.validate_channel_ready()
        self._workers = [
            asyncio.create_task(self._worker(engine, index))
            for index in range(self._max_concurrency)
        ]
        logger.info("QueueCallbackChannel was started")
        await asyncio.gather(*self._workers, return_exceptions=True)
        logger.info("QueueCallbackChannel was stopped")

    async def stop(self) -> None:
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    async def join(self) -> None:
        """Wait until every enqueued delivery has been processed."""
        await self._queue.join()

    def size(self) -> int:
        """Return the current number of queued deliveries.

        Returns:
            The size of the underlying queue.

        """
        return self._queue.qsize()

    async def _worker(self, engine, index: int) -> None:  # noqa: ANN001
        while True:
            delivery = await self._queue.get()
            try:
                await perform_delivery(engine, delivery)
            except Exception:
                logger.exception(
                    "callback failed",
                    extra={
                        "worker": index,
                        "bid": delivery.bid,
                        "event": delivery.event,
                        "callback": delivery.callback,
                    },
                )
            finally:
                self._queue.task_done()
