from .logging_callback_handler import LoggingCallbackHandler

__all__ = [
    "LoggingCallbackHandler",
]
