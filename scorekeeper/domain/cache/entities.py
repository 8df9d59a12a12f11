"""
Cache Domain Entities

Core domain entities for the cache layer: mutation snapshots, the
mutation lifecycle record and the persisted form of a cache store.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ...constants import DEFAULT_RECORD_VERSION, get_current_timestamp
from .value_objects import CacheKey, MutationState


@dataclass(frozen=True)
class SnapshotEntry:
    """Value captured at one key; ``present`` distinguishes absent from None."""

    key: CacheKey
    present: bool
    value: Any = None


@dataclass(frozen=True)
class MutationSnapshot:
    """
    Values at a set of keys immediately before an optimistic transform.

    Retained only while the remote call is in flight. Values are deep
    copies so later in-place edits cannot leak into the snapshot.
    """

    store_name: str
    entries: Tuple[SnapshotEntry, ...]
    taken_at: datetime = field(default_factory=get_current_timestamp)

    @classmethod
    def capture(
        cls, store_name: str, entries: Dict[CacheKey, Any], keys: Iterable[CacheKey]
    ) -> "MutationSnapshot":
        """Capture the given keys out of a store's entry mapping."""
        captured = []
        for key in keys:
            if key in entries:
                captured.append(SnapshotEntry(key, True, copy.deepcopy(entries[key])))
            else:
                captured.append(SnapshotEntry(key, False))
        return cls(store_name=store_name, entries=tuple(captured))

    def keys(self) -> List[CacheKey]:
        """Keys covered by this snapshot."""
        return [entry.key for entry in self.entries]

    def value_of(self, key: CacheKey) -> Any:
        """Captured value at ``key`` (None when it was absent)."""
        for entry in self.entries:
            if entry.key == key:
                return copy.deepcopy(entry.value)
        raise KeyError(str(key))


_ALLOWED_TRANSITIONS = {
    MutationState.IDLE: {MutationState.SNAPSHOT_TAKEN},
    MutationState.SNAPSHOT_TAKEN: {
        MutationState.OPTIMISTIC_APPLIED,
        MutationState.ROLLED_BACK,
    },
    MutationState.OPTIMISTIC_APPLIED: {
        MutationState.REMOTE_OK,
        MutationState.REMOTE_FAIL,
    },
    MutationState.REMOTE_OK: {MutationState.SETTLED},
    MutationState.REMOTE_FAIL: {MutationState.ROLLED_BACK},
    MutationState.ROLLED_BACK: {MutationState.SETTLED},
    MutationState.SETTLED: set(),
}


@dataclass
class Mutation:
    """
    Optimistic mutation entity.

    Tracks one pass through IDLE -> SNAPSHOT_TAKEN -> OPTIMISTIC_APPLIED ->
    (REMOTE_OK -> SETTLED) | (REMOTE_FAIL -> ROLLED_BACK -> SETTLED).
    """

    label: str
    store_name: str
    keys: List[CacheKey]
    state: MutationState = MutationState.IDLE
    snapshot: Optional[MutationSnapshot] = None
    error: Optional[BaseException] = None
    history: List[MutationState] = field(default_factory=list)
    started_at: datetime = field(default_factory=get_current_timestamp)
    settled_at: Optional[datetime] = None

    def can_transition(self, new_state: MutationState) -> bool:
        """Check whether ``new_state`` follows the current state."""
        return new_state in _ALLOWED_TRANSITIONS[self.state]

    def transition(self, new_state: MutationState) -> None:
        """Move to ``new_state``; raises ValueError on an illegal transition."""
        if not self.can_transition(new_state):
            raise ValueError(
                f"Illegal mutation transition {self.state.value} -> {new_state.value}"
            )
        self.history.append(self.state)
        self.state = new_state
        if new_state == MutationState.SETTLED:
            self.settled_at = get_current_timestamp()

    def release_snapshot(self) -> None:
        """Drop the snapshot once the mutation has settled."""
        self.snapshot = None

    @property
    def is_settled(self) -> bool:
        return self.state == MutationState.SETTLED

    @property
    def rolled_back(self) -> bool:
        return MutationState.ROLLED_BACK in self.history or (
            self.state == MutationState.ROLLED_BACK
        )


class PersistedCacheRecord(BaseModel):
    """Serialized form of one entity cache store under a single storage key.

    Laid out as ``{"state": {...}, "version": N}``; ``state`` maps the string
    form of each cache key to its value.
    """

    model_config = ConfigDict(extra="ignore")

    state: Dict[str, Any] = Field(default_factory=dict)
    version: int = Field(default=DEFAULT_RECORD_VERSION, ge=0)

    def to_json(self) -> str:
        """Serialize for the storage area."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str) -> "PersistedCacheRecord":
        """Parse a stored record; raises pydantic ValidationError on bad input."""
        return cls.model_validate_json(raw)
