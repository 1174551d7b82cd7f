from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class BatchConfig(BaseModel):
    """Engine settings, read from the `batch` section of the configuration."""

    # Lifetime of every batch data key, refreshed on each mutation (30 days).
    bid_expire_ttl: int = 2_592_000
    # Lifetime of processed flags, independent of the batch data (24 hours).
    callback_flag_ttl: int = 86_400
    lock_timeout: int = 5
    lock_max_wait: float = 60.0
    # Seconds between registration flushes while declaring work items.
    # None flushes once when the declaration block completes; 0 flushes
    # every item.
    push_interval: float | None = None
    default_callback_queue: str = "default"


class CallbackRegistration(BaseModel):
    """One callback registered for a batch event."""

    model_config = ConfigDict(frozen=True)

    callback: str
    opts: dict[str, Any] = Field(default_factory=dict)


class FinalStatusSnapshot(BaseModel):
    """Immutable status of a batch, captured when its callbacks are enqueued.

    The snapshot travels with each callback delivery and stays valid after
    the live batch data has expired.
    """

    model_config = ConfigDict(frozen=True)

    bid: str
    total: int = 0
    done: int = 0
    pending: int = 0
    failures: int = 0
    failure_info: list[str] = Field(default_factory=list)
    created_at: float | None = None
    description: str | None = None
    parent_bid: str | None = None
    child_count: int = 0
    complete: bool = False
    success: bool = False
    captured_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def serialized(self) -> str:
        """Return the JSON form carried by deliveries."""
        return self.model_dump_json()

    @classmethod
    def deserialize(cls, data: str) -> "FinalStatusSnapshot":
        return cls.model_validate_json(data)


class CallbackDelivery(BaseModel):
    """A single callback invocation handed to a callback channel.

    `callback_bid` and `item_id` are set when the delivery is one work item
    of a callback batch; the consumer reports its outcome there. `finalize`
    is set for a single direct delivery, whose consumer runs Finalize itself
    after invoking the callback.
    """

    callback: str
    event: str
    opts: dict[str, Any] = Field(default_factory=dict)
    bid: str
    parent_bid: str | None = None
    status: FinalStatusSnapshot
    queue: str = "default"
    callback_bid: str | None = None
    item_id: str | None = None
    finalize: bool = False
