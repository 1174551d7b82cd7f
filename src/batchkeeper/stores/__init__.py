from .memory_store import MemoryStore
from .redis_store import RedisStore

__all__ = [
    "MemoryStore",
    "RedisStore",
]
