"""Key layout of batch state in the shared store.

Every key a batch touches is derived here, so that the counter, the
dispatcher and the status views agree on one schema.
"""

from enum import StrEnum


class BatchEvent(StrEnum):
    """Events a callback can be registered for."""

    COMPLETE = "complete"
    SUCCESS = "success"


def batch_key(bid: str) -> str:
    """Hash holding counters and metadata."""
    return f"BID-{bid}"


def failed_key(bid: str) -> str:
    return f"BID-{bid}-failed"


def jids_key(bid: str) -> str:
    return f"BID-{bid}-jids"


def complete_key(bid: str) -> str:
    """Set of child bids that reached the complete condition."""
    return f"BID-{bid}-complete"


def success_key(bid: str) -> str:
    """Set of child bids that reached the success condition."""
    return f"BID-{bid}-success"


def callbacks_key(bid: str, event: str) -> str:
    return f"BID-{bid}-callbacks-{event}"


def processed_key(bid: str, event: str) -> str:
    """Processed flag, kept apart from the batch hash so it survives expiry."""
    return f"BID-{bid}-processed-{event}"


def invalidated_key(bid: str) -> str:
    return f"invalidated-bid-{bid}"


def lock_key(name: str) -> str:
    return f"lock:{name}"


def queue_key(name: str) -> str:
    return f"queue:{name}"
