"""
Entity Cache Store

One keyed in-memory store per relationship (judges by cluster, teams by
cluster, scoresheet by team/judge/type, ...). Values are fetched on first
read and then served from memory until purged or force-refreshed; every
change is persisted as a whole-store record to the store's storage key.
"""

import asyncio
import copy
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
    TypeVar,
)

from opentelemetry import trace
from pydantic import ValidationError

from ...core.config import get_settings
from ...domain.cache.entities import MutationSnapshot, PersistedCacheRecord
from ...domain.cache.repository_interfaces import StorageArea
from ...domain.cache.value_objects import CacheKey, StorageTier
from ...infrastructure.exceptions import InvariantViolation

V = TypeVar("V")

Fetcher = Callable[[CacheKey], Awaitable[Any]]
BatchFetcher = Callable[[List[CacheKey]], Awaitable[Mapping[Any, Any]]]
StoreListener = Callable[["EntityCacheStore", List[CacheKey]], None]

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_MISSING = object()


class EntityCacheStore(Generic[V]):
    """
    Keyed cache of remotely fetched values for one relationship.

    Presence alone signals freshness: an entry stays valid until it is
    purged or a caller forces a refresh. Concurrent reads of a missing key
    are not de-duplicated.
    """

    def __init__(
        self,
        name: str,
        fetcher: Fetcher,
        *,
        storage_key: Optional[str] = None,
        tier: StorageTier = StorageTier.SESSION,
        storage: Optional[StorageArea] = None,
        batch_fetcher: Optional[BatchFetcher] = None,
        replicate: bool = True,
        record_version: Optional[int] = None,
    ):
        if storage is not None and storage.tier != tier:
            raise ValueError(
                f"Store {name} is {tier.value} but storage area is {storage.tier.value}"
            )

        self.name = name
        self.fetcher = fetcher
        self.batch_fetcher = batch_fetcher
        self.storage_key = storage_key or name
        self.tier = tier
        self.storage = storage
        self.replicate = replicate
        self.record_version = (
            record_version
            if record_version is not None
            else get_settings().PERSISTED_RECORD_VERSION
        )

        self._entries: Dict[CacheKey, V] = {}
        self._listeners: List[StoreListener] = []
        self._in_flight = 0
        self.last_error: Optional[str] = None

    def __repr__(self) -> str:
        return f"EntityCacheStore(name={self.name!r}, entries={len(self._entries)})"

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Any) -> bool:
        return self.contains(key)

    @property
    def is_loading(self) -> bool:
        """True while at least one fetch is in flight."""
        return self._in_flight > 0

    # Reads

    async def get_or_fetch(self, key: Any, force_refresh: bool = False) -> V:
        """
        Return the cached value at ``key``, fetching it when absent.

        Args:
            key: Id, tuple of ids or CacheKey
            force_refresh: Fetch even when a value is cached

        Returns:
            The cached or freshly fetched value

        Raises:
            Whatever the fetcher raises; the prior value at ``key`` is kept.
        """
        cache_key = CacheKey.coerce(key)
        if not force_refresh and cache_key in self._entries:
            logger.debug(f"Cache hit: {self.name}[{cache_key}]")
            return self._entries[cache_key]

        logger.debug(f"Cache miss: {self.name}[{cache_key}] (force={force_refresh})")
        with tracer.start_as_current_span("entity_store.get_or_fetch") as span:
            span.set_attribute("store", self.name)
            span.set_attribute("key", str(cache_key))
            span.set_attribute("force_refresh", force_refresh)

            self._in_flight += 1
            try:
                value = await self.fetcher(cache_key)
            except Exception as e:
                self._record_failure(cache_key, e)
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                raise
            finally:
                self._in_flight -= 1

        self.last_error = None
        self._entries[cache_key] = value
        self._changed([cache_key])
        return value

    async def get_or_fetch_many(
        self, keys: Iterable[Any], force_refresh: bool = False
    ) -> Dict[CacheKey, V]:
        """
        Return values for several keys, fetching only the missing ones.

        Uses the batch fetcher in a single call when the store has one,
        otherwise fetches each missing key concurrently.

        Returns:
            Mapping of each requested key that has a value after the fetch
        """
        requested = [CacheKey.coerce(key) for key in keys]
        missing = [
            key for key in dict.fromkeys(requested)
            if force_refresh or key not in self._entries
        ]

        if missing:
            if self.batch_fetcher is not None:
                await self._fetch_batch(missing)
            else:
                await self._fetch_each(missing)

        return {key: self._entries[key] for key in requested if key in self._entries}

    async def _fetch_batch(self, keys: List[CacheKey]) -> None:
        with tracer.start_as_current_span("entity_store.fetch_batch") as span:
            span.set_attribute("store", self.name)
            span.set_attribute("key_count", len(keys))

            self._in_flight += 1
            try:
                result = await self.batch_fetcher(keys)
            except Exception as e:
                self._record_failure(keys[0] if len(keys) == 1 else None, e)
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                raise
            finally:
                self._in_flight -= 1

        changed = []
        for raw_key, value in (result or {}).items():
            cache_key = (
                CacheKey.parse(raw_key) if isinstance(raw_key, str) else CacheKey.coerce(raw_key)
            )
            self._entries[cache_key] = value
            changed.append(cache_key)

        self.last_error = None
        if changed:
            self._changed(changed)

    async def _fetch_each(self, keys: List[CacheKey]) -> None:
        results = await asyncio.gather(
            *(self.get_or_fetch(key, force_refresh=True) for key in keys),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    def peek(self, key: Any, default: Any = None) -> Optional[V]:
        """Cached value at ``key`` without fetching."""
        return self._entries.get(CacheKey.coerce(key), default)

    def contains(self, key: Any) -> bool:
        return CacheKey.coerce(key) in self._entries

    def keys(self) -> List[CacheKey]:
        return list(self._entries.keys())

    def items(self) -> List[Tuple[CacheKey, V]]:
        return list(self._entries.items())

    # Writes

    def put(self, key: Any, value: V) -> None:
        """Overwrite the value at ``key``."""
        cache_key = CacheKey.coerce(key)
        self._entries[cache_key] = value
        self._changed([cache_key])

    def put_many(self, values: Mapping[Any, V]) -> None:
        """Overwrite several keys with a single change notification."""
        changed = []
        for key, value in values.items():
            cache_key = CacheKey.coerce(key)
            self._entries[cache_key] = value
            changed.append(cache_key)
        if changed:
            self._changed(changed)

    def merge(
        self, key: Any, patch_fn: Callable[[V], V], default: Any = _MISSING
    ) -> Optional[V]:
        """
        Replace the value at ``key`` with ``patch_fn(value)``.

        An absent key is left absent unless ``default`` is given, in which
        case the patch is applied to ``default``.

        Returns:
            The new value, or None when nothing was merged
        """
        cache_key = CacheKey.coerce(key)
        if cache_key in self._entries:
            current = self._entries[cache_key]
        elif default is not _MISSING:
            current = default
        else:
            return None

        updated = patch_fn(current)
        self._entries[cache_key] = updated
        self._changed([cache_key])
        return updated

    def merge_all(self, patch_fn: Callable[[V], V]) -> List[CacheKey]:
        """Apply ``patch_fn`` to every entry; returns the keys whose value changed."""
        changed = []
        for cache_key, current in list(self._entries.items()):
            updated = patch_fn(current)
            if updated != current:
                self._entries[cache_key] = updated
                changed.append(cache_key)
        if changed:
            self._changed(changed)
        return changed

    def purge(self, key: Any) -> bool:
        """Drop the entry at ``key``; the next read goes to the network."""
        cache_key = CacheKey.coerce(key)
        if cache_key not in self._entries:
            return False
        del self._entries[cache_key]
        self._changed([cache_key])
        return True

    def purge_all(self) -> int:
        """Drop every entry. The empty state is persisted so other tabs follow."""
        purged = list(self._entries.keys())
        self._entries.clear()
        self.last_error = None
        self._changed(purged)
        logger.debug(f"Purged {len(purged)} entries from {self.name}")
        return len(purged)

    # Snapshots

    def snapshot(self, keys: Iterable[Any]) -> MutationSnapshot:
        """Deep-copy the values at ``keys`` for a later ``restore``."""
        return MutationSnapshot.capture(
            self.name, self._entries, [CacheKey.coerce(key) for key in keys]
        )

    def restore(self, snapshot: MutationSnapshot) -> None:
        """Put every key of ``snapshot`` back to its captured value."""
        if snapshot.store_name != self.name:
            raise InvariantViolation(
                f"Snapshot of {snapshot.store_name} restored into {self.name}",
                details={"snapshot_store": snapshot.store_name, "store": self.name},
            )

        for entry in snapshot.entries:
            if entry.present:
                self._entries[entry.key] = copy.deepcopy(entry.value)
            else:
                self._entries.pop(entry.key, None)
        self._changed(snapshot.keys())

    def export_state(self) -> Dict[str, Any]:
        """Deep copy of the store keyed by the string form of each key."""
        return {str(key): copy.deepcopy(value) for key, value in self._entries.items()}

    def to_record(self) -> PersistedCacheRecord:
        return PersistedCacheRecord(state=self.export_state(), version=self.record_version)

    def replace_state(self, state: Mapping[str, Any]) -> None:
        """
        Bulk-replace the whole store from an exported state.

        Does not write back to storage. Raises ValueError when a key cannot
        be parsed, leaving the current state untouched.
        """
        entries = {CacheKey.parse(raw_key): copy.deepcopy(value) for raw_key, value in state.items()}
        affected = list(dict.fromkeys(list(self._entries.keys()) + list(entries.keys())))
        self._entries = entries
        self._notify(affected)

    # Persistence

    def hydrate(self) -> bool:
        """Load the persisted record, if any; returns True when state was loaded."""
        if self.storage is None:
            return False

        raw = self.storage.get_item(self.storage_key)
        if raw is None:
            return False

        try:
            record = PersistedCacheRecord.from_json(raw)
        except ValidationError:
            logger.warning(
                f"Ignoring unreadable persisted record for {self.name}",
                extra={"storage_key": self.storage_key},
            )
            return False

        if record.version != self.record_version:
            logger.warning(
                f"Ignoring persisted record for {self.name} with version "
                f"{record.version} (expected {self.record_version})",
                extra={"storage_key": self.storage_key},
            )
            return False

        try:
            self.replace_state(record.state)
        except ValueError as e:
            logger.warning(f"Ignoring persisted record for {self.name}: {e}")
            return False

        logger.debug(f"Hydrated {self.name} with {len(self._entries)} entries")
        return True

    def persist(self) -> None:
        """Write the whole store to its storage key."""
        if self.storage is None:
            return
        self.storage.set_item(self.storage_key, self.to_record().to_json())

    # Observation

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Call ``listener(store, keys)`` after every change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _changed(self, keys: List[CacheKey]) -> None:
        self.persist()
        self._notify(keys)

    def _notify(self, keys: List[CacheKey]) -> None:
        for listener in list(self._listeners):
            try:
                listener(self, keys)
            except Exception:
                logger.exception(f"Store listener failed for {self.name}")

    def _record_failure(self, key: Optional[CacheKey], error: Exception) -> None:
        self.last_error = getattr(error, "message", None) or str(error)
        logger.warning(
            f"Fetch failed for {self.name}[{key}]: {self.last_error}",
            extra={"store": self.name, "key": str(key) if key else None},
        )
