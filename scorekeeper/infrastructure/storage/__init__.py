"""Browser-style key-value storage and its cross-process bridge."""

from .memory import MemoryStorageArea, StorageHub, TabStorage
from .redis_bridge import RedisStorageBridge

__all__ = ["MemoryStorageArea", "StorageHub", "TabStorage", "RedisStorageBridge"]
