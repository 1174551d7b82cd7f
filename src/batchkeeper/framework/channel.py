from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from .keys import BatchEvent

if TYPE_CHECKING:
    from .engine import BatchEngine
    from .model import CallbackDelivery

logger = logging.getLogger(__name__)


async def perform_delivery(engine: BatchEngine, delivery: CallbackDelivery) -> None:
    """Invoke one delivered callback and report its outcome to the engine.

    - A delivery that belongs to a callback batch is tracked as a work item
      of that batch: success or failure is reported there, and the callback
      batch's completion runs Finalize.
    - A single direct delivery runs Finalize for the originating batch once
      the callback returned or raised.

    Exceptions raised by the callback propagate to the caller after the
    outcome has been recorded.
    """
    if delivery.event not in {event.value for event in BatchEvent}:
        logger.warning(
            "ignoring delivery for unknown event",
            extra={"bid": delivery.bid, "event": delivery.event},
        )
        return

    async def invoke() -> None:
        await engine.handlers.invoke(
            delivery.callback, delivery.event, delivery.status, delivery.opts
        )

    if delivery.callback_bid is not None and delivery.item_id is not None:
        await engine.track(delivery.callback_bid, delivery.item_id, invoke)
        return

    try:
        await invoke()
    finally:
        if delivery.finalize:
            await engine.dispatcher.finalize(delivery.bid, delivery.event)


class CallbackChannel(ABC):
    """Abstract base class for callback invocation channels.

    A channel receives `CallbackDelivery` objects from the dispatcher and
    must invoke them asynchronously, at least once. The dispatcher's
    processed flags make repeated delivery safe from the batch's point of
    view.

    The engine attaches itself to its channel when it is constructed, so
    consumers can run `perform_delivery` against it.
    """

    def __init__(self) -> None:
        self._engine: BatchEngine | None = None

    @property
    def engine(self) -> BatchEngine | None:
        """Get the engine this channel reports to.

        Returns:
            The BatchEngine instance or None.

        """
        return self._engine

    @engine.setter
    def engine(self, engine: BatchEngine) -> None:
        """Attach the engine deliveries are reported to.

        Args:
            engine: The owning BatchEngine.

        """
        self._engine = engine

    def validate_channel_ready(self) -> BatchEngine:
        """Return the attached engine.

        Raises:
            RuntimeError: If no engine has been attached yet.

        """
        engine = self.engine
        if engine is None:
            message = "BatchEngine must be attached before using the channel."
            raise RuntimeError(message)
        return engine

    @abstractmethod
    async def deliver(self, delivery: CallbackDelivery) -> None:
        """Hand one callback delivery over for invocation.

        Args:
            delivery: The delivery to invoke.

        """
        message = "`deliver` must be implemented in subclasses of CallbackChannel."
        raise NotImplementedError(message)

    async def start(self) -> None:  # noqa: B027
        """Run the consumer side of the channel. No-op by default."""

    async def stop(self) -> None:  # noqa: B027
        """Stop the consumer side of the channel. No-op by default."""
