import logging

from batchkeeper.framework import CallbackChannel, CallbackDelivery, perform_delivery

logger = logging.getLogger(__name__)


class InlineCallbackChannel(CallbackChannel):
    """Invoke callbacks immediately, in the task that enqueued them.

    Suitable for tests and single-process use. A failing callback is logged
    and recorded through the engine; it never propagates into the work-item
    report that triggered it.
    """

    def __init__(self) -> None:
        """Initialize the inline channel."""
        super().__init__()

        logger.info(
            "InlineCallbackChannel was initialized",
        )

    async def deliver(self, delivery: CallbackDelivery) -> None:
        engine = self.validate_channel_ready()
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
