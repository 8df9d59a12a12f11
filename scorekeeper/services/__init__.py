"""
Services Module

Entity cache stores and the services that keep them coherent: the
mutation executor, the domain event bus with its invalidation subscriber
and the cross-tab replicator, all wired together by ``CacheManager``.
"""

from .cache.cache_manager import CacheManager
from .cache.entity_store import EntityCacheStore
from .events.event_bus import DomainEventBus, Subscription
from .events.invalidation import InvalidationSubscriber
from .mutation.executor import MutationExecutor
from .sync.replicator import CrossTabReplicator

__all__ = [
    "CacheManager",
    "EntityCacheStore",
    "DomainEventBus",
    "Subscription",
    "InvalidationSubscriber",
    "MutationExecutor",
    "CrossTabReplicator",
]
