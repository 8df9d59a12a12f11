"""
Cache Value Objects

Immutable value objects for the cache domain. Provides type safety for
cache keys, storage tiers and the mutation lifecycle.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Tuple, Union

from ...constants import CACHE_KEY_SEPARATOR

KeyPart = Union[int, str]


class StorageTier(str, Enum):
    """Persistence tier backing a cache store."""

    SESSION = "session"  # cleared when the browsing session ends
    DURABLE = "durable"  # survives browser restarts


class MutationState(str, Enum):
    """Optimistic mutation lifecycle states."""

    IDLE = "idle"
    SNAPSHOT_TAKEN = "snapshot_taken"
    OPTIMISTIC_APPLIED = "optimistic_applied"
    REMOTE_OK = "remote_ok"
    REMOTE_FAIL = "remote_fail"
    ROLLED_BACK = "rolled_back"
    SETTLED = "settled"


class EntityType(str, Enum):
    """Entity types that domain change events describe."""

    TEAM = "team"
    JUDGE = "judge"
    CLUSTER = "cluster"
    CONTEST = "contest"
    SCORESHEET = "scoresheet"
    CHAMPIONSHIP = "championship"
    COACH = "coach"
    ORGANIZER = "organizer"


class ChangeAction(str, Enum):
    """Kinds of change a domain event reports."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class CacheKey:
    """
    Immutable composite cache key.

    Either a single id (cluster id, team id) or a tuple such as
    (team id, judge id, sheet type). The string form joins the parts with
    ``-`` and is what persisted records use.
    """

    parts: Tuple[KeyPart, ...]

    def __post_init__(self) -> None:
        """Validate key parts."""
        if not self.parts:
            raise ValueError("Cache key cannot be empty")

        for part in self.parts:
            if isinstance(part, bool) or not isinstance(part, (int, str)):
                raise ValueError(f"Invalid cache key part: {part!r}")
            if isinstance(part, int) and part < 0:
                raise ValueError("Cache key ids cannot be negative")
            if isinstance(part, str):
                if not part or any(char.isspace() for char in part):
                    raise ValueError("Cache key parts cannot be blank or contain whitespace")
                if CACHE_KEY_SEPARATOR in part:
                    raise ValueError(
                        f"Cache key parts cannot contain '{CACHE_KEY_SEPARATOR}'"
                    )
                if part.isdigit():
                    # "5" would read back from storage as the int 5
                    raise ValueError(f"Numeric cache key part must be an int: {part!r}")

    @classmethod
    def of(cls, *parts: KeyPart) -> "CacheKey":
        """Create a key from one or more parts."""
        return cls(tuple(parts))

    @classmethod
    def scoresheet(cls, team_id: int, judge_id: int, sheet_type: int) -> "CacheKey":
        """Create the composite key of a team/judge/sheet-type scoresheet."""
        return cls((team_id, judge_id, sheet_type))

    @classmethod
    def coerce(cls, value: Any) -> "CacheKey":
        """Normalize an id, tuple of ids or key into a ``CacheKey``."""
        if isinstance(value, CacheKey):
            return value
        if isinstance(value, tuple):
            return cls(value)
        if isinstance(value, list):
            return cls(tuple(value))
        return cls((value,))

    @classmethod
    def parse(cls, text: str) -> "CacheKey":
        """Invert ``str(key)``; numeric parts come back as ints."""
        if not text:
            raise ValueError("Cache key cannot be empty")

        parts = []
        for raw in text.split(CACHE_KEY_SEPARATOR):
            parts.append(int(raw) if raw.isdigit() else raw)
        return cls(tuple(parts))

    @property
    def is_composite(self) -> bool:
        """True for tuple keys."""
        return len(self.parts) > 1

    def sort_token(self) -> Tuple[str, ...]:
        """Total ordering across mixed int/str parts."""
        return tuple(f"{type(part).__name__}:{part:>20}" for part in self.parts)

    def __str__(self) -> str:
        return CACHE_KEY_SEPARATOR.join(str(part) for part in self.parts)
