from .batch import Batch
from .channel import CallbackChannel, perform_delivery
from .context import BatchContext, GlobalContext
from .counter import BatchCounter
from .dispatcher import CallbackDispatcher
from .engine import BatchEngine
from .exceptions import (
    BatchAlreadyStartedError,
    BatchError,
    InconsistentBatchStateError,
    InvalidEventError,
    LockAcquisitionError,
    NoJobsBlockError,
    UnknownCallbackError,
)
from .handlers import CallbackHandlerRegistry
from .keys import BatchEvent
from .lock import LockManager
from .model import (
    BatchConfig,
    CallbackDelivery,
    CallbackRegistration,
    FinalStatusSnapshot,
)
from .status import BatchStatus
from .store import Store, StoreTransaction

__all__ = [
    "Batch",
    "BatchAlreadyStartedError",
    "BatchConfig",
    "BatchContext",
    "BatchCounter",
    "BatchEngine",
    "BatchError",
    "BatchEvent",
    "BatchStatus",
    "CallbackChannel",
    "CallbackDelivery",
    "CallbackDispatcher",
    "CallbackHandlerRegistry",
    "CallbackRegistration",
    "FinalStatusSnapshot",
    "GlobalContext",
    "InconsistentBatchStateError",
    "InvalidEventError",
    "LockAcquisitionError",
    "LockManager",
    "NoJobsBlockError",
    "Store",
    "StoreTransaction",
    "UnknownCallbackError",
    "perform_delivery",
]
