"""
Cache Repository Interfaces

Abstract contracts for the two boundaries the cache layer talks to: the
browser-style persisted key-value storage and the remote scoring API.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from .value_objects import StorageTier


@dataclass(frozen=True)
class StorageChange:
    """One write to a storage area, as delivered to listeners.

    ``new_value`` is None when the key was removed.
    """

    key: str
    old_value: Optional[str]
    new_value: Optional[str]
    tier: StorageTier
    origin: str


StorageListener = Callable[[StorageChange], None]


class StorageArea(ABC):
    """
    Abstract browser-style key-value storage area.

    Synchronous like Web Storage. Listeners observe writes made through
    other connections to the same area (other tabs); a connection's own
    writes reach its listeners only when subscribed with ``include_own``.
    """

    tier: StorageTier
    origin: str

    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        """Return the stored string or None."""
        pass

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        """Store ``value`` under ``key`` and notify other connections."""
        pass

    @abstractmethod
    def remove_item(self, key: str) -> None:
        """Remove ``key`` and notify other connections."""
        pass

    @abstractmethod
    def keys(self) -> List[str]:
        """All keys currently stored."""
        pass

    @abstractmethod
    def subscribe(
        self, listener: StorageListener, include_own: bool = False
    ) -> Callable[[], None]:
        """Register a change listener; returns an unsubscribe callable."""
        pass

    @abstractmethod
    def apply_foreign(self, key: str, value: Optional[str], origin: str) -> None:
        """Apply a write made elsewhere (another process) as a foreign change."""
        pass


class RemoteApi(ABC):
    """
    Abstract remote API boundary.

    Fetches return either a bare payload or the unwrapped ``envelope``
    field; failures raise NetworkFailure or ValidationFailure.
    """

    @abstractmethod
    async def get(self, path: str, envelope: Optional[str] = None) -> Any:
        """GET ``path``."""
        pass

    @abstractmethod
    async def post(
        self, path: str, payload: Any = None, envelope: Optional[str] = None
    ) -> Any:
        """POST ``payload`` to ``path``."""
        pass

    @abstractmethod
    async def delete(self, path: str) -> Any:
        """DELETE ``path``."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release transport resources."""
        pass
