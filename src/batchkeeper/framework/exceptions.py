class BatchError(Exception):
    """Base class for all errors raised by batchkeeper."""


class NoJobsBlockError(BatchError):
    """Raised when `add_jobs` is called without a declaration block."""


class BatchAlreadyStartedError(BatchError):
    """Raised when a committed batch is modified or committed again."""


class InvalidEventError(BatchError, ValueError):
    """Raised when a callback is registered for an unknown event."""


class LockAcquisitionError(BatchError):
    """Raised when a named lock cannot be acquired within `max_wait`.

    This is fatal to the current protocol step. The engine does not retry;
    callers decide whether to invoke the operation again.
    """

    def __init__(self, name: str, max_wait: float) -> None:
        self.name = name
        self.max_wait = max_wait
        message = f"failed to acquire lock '{name}' after {max_wait} seconds"
        super().__init__(message)


class InconsistentBatchStateError(BatchError):
    """Raised when stored counters contradict the completion protocol.

    This signals a true race (or external tampering) and is surfaced to the
    caller instead of being re-queued silently.
    """

    def __init__(self, bid: str, detail: str) -> None:
        self.bid = bid
        self.detail = detail
        super().__init__(f"inconsistent state for batch {bid}: {detail}")


class UnknownCallbackError(BatchError, LookupError):
    """Raised when a callback descriptor has no registered handler."""
