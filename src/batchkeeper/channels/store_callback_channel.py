from __future__ import annotations

import asyncio
import logging

from batchkeeper.framework import CallbackChannel, CallbackDelivery, perform_delivery
from batchkeeper.framework.keys import queue_key

logger = logging.getLogger(__name__)


class StoreCallbackChannel(CallbackChannel):
    """Channel that hands deliveries over through lists in the shared store.

    Deliveries are pushed as JSON to `queue:{name}`, where `name` is the
    batch's callback queue. Any process running `start()` on the same store
    consumes them, which lets callbacks run on a different machine from the
    work items.

    Args:
        queues: Names of the queues consumed by `start()`.
        interval_seconds: Sleep between polls when every queue is empty.

    """

    def __init__(
        self,
        queues: list[str] | None = None,
        interval_seconds: float = 1.0,
    ) -> None:
        super().__init__()
        self._queues = list(queues or ["default"])
        self._interval_seconds = interval_seconds
        self._running = False

        logger.info(
            "StoreCallbackChannel was initialized",
            extra={"queues": self._queues, "interval_seconds": interval_seconds},
        )

    async def deliver(self, delivery: CallbackDelivery) -> None:
        engine = self.validate_channel_ready()
        await engine.store.rpush(queue_key(delivery.queue), delivery.model_dump_json())
        logger.debug(
            "callback pushed",
            extra={
                "bid": delivery.bid,
                "event": delivery.event,
                "queue": delivery.queue,
            },
        )

    async def drain(self) -> int:
        """Consume every delivery currently queued.

        Returns:
            The number of deliveries consumed.

        """
        engine = self.validate_channel_ready()
        consumed = 0
        for name in self._queues:
            while (raw := await engine.store.lpop(queue_key(name))) is not None:
                consumed += 1
                delivery = CallbackDelivery.model_validate_json(raw)
                try:
                    await perform_delivery(engine, delivery)
                except Exception:
                    logger.exception(
                        "callback failed",
                        extra={
                            "bid": delivery.bid,
                            "event": delivery.event,
                            "callback": delivery.callback,
                        },
                    )
        return consumed

    async def start(self) -> None:
        """Poll the configured queues until `stop()` is called."""
        self.validate_channel_ready()
        self._running = True

        logger.info("StoreCallbackChannel was started")
        while self._running:
            try:
                if await self.drain() == 0:
                    await asyncio.sleep(self._interval_seconds)
            except Exception:
                logger.exception("failed to consume callbacks")
                await asyncio.sleep(self._interval_seconds)
        logger.info("StoreCallbackChannel was stopped")

    async def stop(self) -> None:
        self._running = False
