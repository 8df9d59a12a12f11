"""
In-Memory Storage Hub

In-process stand-in for a browser profile's key-value storage. A hub
holds one shared key space per storage tier; every tab connects to it and
gets its own view, and a write through one view is announced to the
listeners of every other view, the way storage events reach other tabs.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from ...domain.cache.repository_interfaces import (
    StorageArea,
    StorageChange,
    StorageListener,
)
from ...domain.cache.value_objects import StorageTier

logger = logging.getLogger(__name__)


class MemoryStorageArea(StorageArea):
    """One tab's view of one tier of a ``StorageHub``."""

    def __init__(self, hub: "StorageHub", tier: StorageTier, origin: str):
        self.hub = hub
        self.tier = tier
        self.origin = origin
        self._listeners: List[Tuple[StorageListener, bool]] = []

    def get_item(self, key: str) -> Optional[str]:
        return self.hub._read(self.tier, key)

    def set_item(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError(f"Storage values must be strings, got {type(value).__name__}")
        self.hub._write(self.tier, key, value, self.origin)

    def remove_item(self, key: str) -> None:
        self.hub._write(self.tier, key, None, self.origin)

    def keys(self) -> List[str]:
        return self.hub._keys(self.tier)

    def subscribe(
        self, listener: StorageListener, include_own: bool = False
    ) -> Callable[[], None]:
        entry = (listener, include_own)
        self._listeners.append(entry)

        def unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return unsubscribe

    def apply_foreign(self, key: str, value: Optional[str], origin: str) -> None:
        if origin == self.origin:
            raise ValueError("Foreign writes must carry a different origin")
        self.hub._write(self.tier, key, value, origin)

    def _deliver(self, change: StorageChange) -> None:
        for listener, include_own in list(self._listeners):
            if change.origin == self.origin and not include_own:
                continue
            try:
                listener(change)
            except Exception:
                # One broken listener must not starve the others
                logger.exception(
                    f"Storage listener failed for key {change.key}",
                    extra={"key": change.key, "origin": self.origin},
                )


@dataclass
class TabStorage:
    """Both storage tiers as seen from one tab."""

    origin: str
    session: MemoryStorageArea
    durable: MemoryStorageArea
    hub: "StorageHub"

    def area(self, tier: StorageTier) -> MemoryStorageArea:
        """Area for ``tier``."""
        return self.session if tier == StorageTier.SESSION else self.durable

    def close(self) -> None:
        """Disconnect this tab from the hub."""
        self.hub.disconnect(self)


class StorageHub:
    """
    Shared key-value storage for a set of connected tabs.

    Writes are last-write-wins per key; a write that does not change the
    stored string is not announced.
    """

    def __init__(self):
        self._data: Dict[StorageTier, Dict[str, str]] = {
            tier: {} for tier in StorageTier
        }
        self._areas: Dict[StorageTier, List[MemoryStorageArea]] = {
            tier: [] for tier in StorageTier
        }

    def connect(self, origin: Optional[str] = None) -> TabStorage:
        """Open a new tab view onto this hub."""
        origin = origin or f"tab-{uuid4().hex[:8]}"
        session = MemoryStorageArea(self, StorageTier.SESSION, origin)
        durable = MemoryStorageArea(self, StorageTier.DURABLE, origin)
        self._areas[StorageTier.SESSION].append(session)
        self._areas[StorageTier.DURABLE].append(durable)
        logger.debug(f"Tab {origin} connected to storage hub")
        return TabStorage(origin=origin, session=session, durable=durable, hub=self)

    def disconnect(self, tab: TabStorage) -> None:
        """Stop delivering changes to ``tab``."""
        for tier, area in ((StorageTier.SESSION, tab.session), (StorageTier.DURABLE, tab.durable)):
            if area in self._areas[tier]:
                self._areas[tier].remove(area)

    def end_session(self) -> None:
        """Clear the session tier, silently, as a browser does at session end."""
        self._data[StorageTier.SESSION].clear()
        logger.info("Session storage cleared")

    def _read(self, tier: StorageTier, key: str) -> Optional[str]:
        return self._data[tier].get(key)

    def _keys(self, tier: StorageTier) -> List[str]:
        return list(self._data[tier].keys())

    def _write(
        self, tier: StorageTier, key: str, value: Optional[str], origin: str
    ) -> None:
        space = self._data[tier]
        old_value = space.get(key)
        if old_value == value:
            return

        if value is None:
            space.pop(key, None)
        else:
            space[key] = value

        change = StorageChange(
            key=key, old_value=old_value, new_value=value, tier=tier, origin=origin
        )
        for area in list(self._areas[tier]):
            area._deliver(change)
