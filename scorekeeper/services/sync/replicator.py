"""
Cross-Tab Replicator

Mirrors persisted store records written by other tabs into this tab's
in-memory stores. Only raw snapshots travel: a replicated record replaces
the local store wholesale (last write wins) and no domain event is
republished, so invalidation rules do not run in the receiving tab.
"""

from typing import Callable, Dict, List, Optional

import structlog
from pydantic import ValidationError

from ...core.config import get_settings
from ...domain.cache.entities import PersistedCacheRecord
from ...domain.cache.repository_interfaces import StorageArea, StorageChange
from ..cache.entity_store import EntityCacheStore

logger = structlog.get_logger(__name__)


class CrossTabReplicator:
    """Apply foreign storage writes to registered stores."""

    def __init__(self, record_version: Optional[int] = None):
        self.record_version = (
            record_version
            if record_version is not None
            else get_settings().PERSISTED_RECORD_VERSION
        )
        self._stores: Dict[str, EntityCacheStore] = {}
        self._areas: List[StorageArea] = []
        self._unsubscribers: List[Callable[[], None]] = []
        self._running = False
        self.applied_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def storage_keys(self) -> List[str]:
        return list(self._stores.keys())

    def register(self, store: EntityCacheStore) -> None:
        """Replicate ``store``; it must have a storage area."""
        if store.storage is None:
            raise ValueError(f"Store {store.name} has no storage area to replicate")
        if store.storage_key in self._stores and self._stores[store.storage_key] is not store:
            raise ValueError(f"Storage key {store.storage_key} is already registered")

        self._stores[store.storage_key] = store
        if store.storage not in self._areas:
            self._areas.append(store.storage)
            if self._running:
                self._listen(store.storage)

    def start(self) -> None:
        """Begin listening for foreign writes."""
        if self._running:
            return
        for area in self._areas:
            self._listen(area)
        self._running = True
        logger.info("Cross-tab replicator started", stores=len(self._stores))

    def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self._running = False
        logger.info("Cross-tab replicator stopped")

    def _listen(self, area: StorageArea) -> None:
        self._unsubscribers.append(area.subscribe(self.handle_change))

    def handle_change(self, change: StorageChange) -> bool:
        """Apply one storage change; returns True when a store was replaced."""
        store = self._stores.get(change.key)
        if store is None or store.storage is None:
            return False
        if change.origin == store.storage.origin:
            return False
        if change.new_value is None:
            logger.debug("Ignoring removed record", storage_key=change.key)
            return False

        try:
            record = PersistedCacheRecord.from_json(change.new_value)
        except ValidationError as e:
            logger.warning(
                "Ignoring malformed foreign record",
                storage_key=change.key,
                origin=change.origin,
                error=str(e),
            )
            return False

        if record.version != self.record_version:
            logger.warning(
                "Ignoring foreign record with unexpected version",
                storage_key=change.key,
                version=record.version,
                expected=self.record_version,
            )
            return False

        try:
            store.replace_state(record.state)
        except ValueError as e:
            logger.warning(
                "Ignoring foreign record with unreadable keys",
                storage_key=change.key,
                error=str(e),
            )
            return False

        self.applied_count += 1
        logger.info(
            "Foreign snapshot applied",
            store=store.name,
            origin=change.origin,
            entries=len(store),
        )
        return True
