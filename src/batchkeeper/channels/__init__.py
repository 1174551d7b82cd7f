from .inline_callback_channel import InlineCallbackChannel
from .queue_callback_channel import QueueCallbackChannel
from .store_callback_channel import StoreCallbackChannel

__all__ = [
    "InlineCallbackChannel",
    "QueueCallbackChannel",
    "StoreCallbackChannel",
]
