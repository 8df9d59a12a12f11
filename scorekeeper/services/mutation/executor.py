"""
Mutation Executor

Wraps remote writes in the optimistic protocol: snapshot the affected
keys, apply the change locally so observers see it at once, call the
remote API, then either commit the server's answer or restore the
snapshot. Removals and relocations can also schedule a forced refetch of
their keys after a rollback, since rollback alone cannot repair a cache
that had already drifted from the server.
"""

import asyncio
import copy
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Deque,
    Dict,
    Iterable,
    List,
    Optional,
    Set,
    Tuple,
)

from opentelemetry import trace

from ...core.config import get_settings
from ...domain.cache.entities import Mutation
from ...domain.cache.value_objects import CacheKey, MutationState
from ...infrastructure.exceptions import InvariantViolation
from ..cache.entity_store import EntityCacheStore

RemoteCall = Callable[[], Awaitable[Any]]
LockId = Tuple[str, CacheKey]

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

RECENT_MUTATIONS_LIMIT = 100


class MutationExecutor:
    """
    Runs optimistic mutations against entity cache stores.

    The executor never publishes domain events; callers publish one after a
    successful write so dependent caches get invalidated.
    """

    def __init__(self, serialize: Optional[bool] = None):
        """
        Args:
            serialize: Serialize overlapping mutations on the same key with a
                per-key lock; defaults to ``SERIALIZE_MUTATIONS``
        """
        self.serialize = (
            serialize if serialize is not None else get_settings().SERIALIZE_MUTATIONS
        )
        self._locks: Dict[LockId, asyncio.Lock] = {}
        self._lock_users: Dict[LockId, int] = {}
        self._refetches: Set[asyncio.Task] = set()
        self.recent: Deque[Mutation] = deque(maxlen=RECENT_MUTATIONS_LIMIT)

    @property
    def pending_refetches(self) -> int:
        return len(self._refetches)

    async def execute(
        self,
        store: EntityCacheStore,
        key: Any,
        transform: Callable[[Any], Any],
        remote_call: RemoteCall,
        *,
        commit: Optional[Callable[[Any, Any], Any]] = None,
        refetch_on_failure: bool = False,
        label: Optional[str] = None,
    ) -> Any:
        """
        Optimistically transform the value at one key.

        Args:
            store: Store owning the key
            key: Key to mutate
            transform: Maps a copy of the current value (None when absent) to
                the optimistic value
            remote_call: Zero-argument coroutine function doing the write
            commit: ``commit(current, response)`` returns the authoritative
                value to store after success
            refetch_on_failure: Force a refetch of the key after rollback
            label: Name used in logs and traces

        Returns:
            The remote call's response

        Raises:
            The remote call's exception, after the key has been restored;
            a failing ``commit`` re-raises after scheduling a refetch
        """
        cache_key = CacheKey.coerce(key)

        def apply() -> None:
            current = copy.deepcopy(store.peek(cache_key))
            store.put(cache_key, transform(current))

        on_success = None
        if commit is not None:

            def on_success(response: Any) -> None:
                store.put(cache_key, commit(store.peek(cache_key), response))

        return await self.run(
            store,
            [cache_key],
            apply,
            remote_call,
            commit=on_success,
            refetch_on_failure=refetch_on_failure,
            label=label,
        )

    async def run(
        self,
        store: EntityCacheStore,
        keys: Iterable[Any],
        apply: Callable[[], None],
        remote_call: RemoteCall,
        *,
        commit: Optional[Callable[[Any], None]] = None,
        refetch_on_failure: bool = False,
        label: Optional[str] = None,
    ) -> Any:
        """
        Optimistically mutate several keys of one store.

        Every key in ``keys`` is snapshotted before ``apply`` runs; ``apply``
        edits the store directly and must only touch those keys.
        ``commit(response)`` runs after a successful remote call.
        """
        cache_keys = list(dict.fromkeys(CacheKey.coerce(key) for key in keys))
        if not cache_keys:
            raise InvariantViolation("Mutation needs at least one key")

        mutation = Mutation(
            label=label or f"{store.name}.mutation",
            store_name=store.name,
            keys=cache_keys,
        )
        async with self._lock_keys(store.name, cache_keys):
            self.recent.append(mutation)
            with tracer.start_as_current_span("mutation_executor.run") as span:
                span.set_attribute("mutation", mutation.label)
                span.set_attribute("store", store.name)
                span.set_attribute("keys", [str(key) for key in cache_keys])

                mutation.snapshot = store.snapshot(cache_keys)
                self._advance(mutation, MutationState.SNAPSHOT_TAKEN)

                try:
                    apply()
                except BaseException as e:
                    # The optimistic change itself failed; nothing was sent
                    mutation.error = e
                    self._rollback(store, mutation)
                    self._settle(mutation)
                    span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                    raise
                self._advance(mutation, MutationState.OPTIMISTIC_APPLIED)

                # Cancellation rolls back too
                try:
                    response = await remote_call()
                except BaseException as e:
                    mutation.error = e
                    self._advance(mutation, MutationState.REMOTE_FAIL)
                    self._rollback(store, mutation)
                    if refetch_on_failure:
                        self._schedule_refetch(store, cache_keys)
                    self._settle(mutation)
                    span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                    logger.warning(
                        f"Mutation {mutation.label} failed and was rolled back: {e!r}",
                        extra={
                            "mutation": mutation.label,
                            "store": store.name,
                            "keys": [str(key) for key in cache_keys],
                            "refetch": refetch_on_failure,
                        },
                    )
                    raise

                self._advance(mutation, MutationState.REMOTE_OK)
                try:
                    if commit is not None:
                        commit(response)
                except Exception as e:
                    # The write went through; only the server copy can repair the keys
                    mutation.error = e
                    self._schedule_refetch(store, cache_keys)
                    span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                    logger.error(
                        f"Commit of {mutation.label} failed after a successful write: {e}",
                        exc_info=True,
                        extra={
                            "mutation": mutation.label,
                            "store": store.name,
                            "keys": [str(key) for key in cache_keys],
                        },
                    )
                    raise
                finally:
                    self._settle(mutation)
                return response

    async def drain(self) -> None:
        """Wait for every scheduled refetch to finish."""
        while self._refetches:
            await asyncio.gather(*list(self._refetches), return_exceptions=True)

    def is_locked(self, store_name: str, key: Any) -> bool:
        lock = self._locks.get((store_name, CacheKey.coerce(key)))
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def _lock_keys(
        self, store_name: str, keys: List[CacheKey]
    ) -> AsyncIterator[None]:
        if not self.serialize:
            yield
            return

        # Fixed acquisition order keeps multi-key mutations deadlock free
        ordered = sorted(keys, key=lambda key: key.sort_token())
        entered: List[LockId] = []
        held: List[LockId] = []
        try:
            for key in ordered:
                lock_id = (store_name, key)
                lock = self._locks.setdefault(lock_id, asyncio.Lock())
                self._lock_users[lock_id] = self._lock_users.get(lock_id, 0) + 1
                entered.append(lock_id)
                await lock.acquire()
                held.append(lock_id)
            yield
        finally:
            for lock_id in reversed(held):
                self._locks[lock_id].release()
            # Drop locks nobody holds or waits on
            for lock_id in entered:
                self._lock_users[lock_id] -= 1
                if not self._lock_users[lock_id]:
                    del self._lock_users[lock_id]
                    del self._locks[lock_id]

    def _advance(self, mutation: Mutation, state: MutationState) -> None:
        try:
            mutation.transition(state)
        except ValueError as e:
            raise InvariantViolation(
                str(e),
                details={"mutation": mutation.label, "state": mutation.state.value},
            ) from e
        logger.debug(f"Mutation {mutation.label} -> {state.value}")

    def _rollback(self, store: EntityCacheStore, mutation: Mutation) -> None:
        if mutation.snapshot is None:
            raise InvariantViolation(
                f"Rollback of {mutation.label} without a snapshot",
                details={"mutation": mutation.label, "store": store.name},
            )
        store.restore(mutation.snapshot)
        self._advance(mutation, MutationState.ROLLED_BACK)

    def _settle(self, mutation: Mutation) -> None:
        self._advance(mutation, MutationState.SETTLED)
        mutation.release_snapshot()

    def _schedule_refetch(self, store: EntityCacheStore, keys: List[CacheKey]) -> None:
        task = asyncio.create_task(self._refetch(store, keys))
        self._refetches.add(task)
        task.add_done_callback(self._refetches.discard)

    async def _refetch(self, store: EntityCacheStore, keys: List[CacheKey]) -> None:
        for key in keys:
            try:
                await store.get_or_fetch(key, force_refresh=True)
            except Exception:
                logger.warning(
                    f"Refetch of {store.name}[{key}] after rollback failed",
                    exc_info=True,
                    extra={"store": store.name, "key": str(key)},
                )
