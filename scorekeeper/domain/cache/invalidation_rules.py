"""
Cache Invalidation Rules

Static, hand-authored mapping from domain change types to the cache
stores that must be purged. Rules are type-level: a team update purges the
whole teams-by-cluster store rather than the one affected cluster.
"""

from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple

from ... import constants as c
from .events import DomainEvent
from .value_objects import ChangeAction, EntityType


@dataclass(frozen=True)
class InvalidationRule:
    """Purge ``cache_identifiers`` when a matching event is published."""

    entity_type: EntityType
    cache_identifiers: Tuple[str, ...]
    action: Optional[ChangeAction] = None
    predicate: Optional[Callable[[DomainEvent], bool]] = None

    def __post_init__(self) -> None:
        if not self.cache_identifiers:
            raise ValueError("Invalidation rule must name at least one cache")

    def matches(self, event: DomainEvent) -> bool:
        """Type must match; action and predicate only when given."""
        if event.entity_type != self.entity_type.value:
            return False
        if self.action is not None and event.action != self.action:
            return False
        if self.predicate is not None and not self.predicate(event):
            return False
        return True


INVALIDATION_RULES: Tuple[InvalidationRule, ...] = (
    # Team changes affect every team-keyed or team-listing cache
    InvalidationRule(
        EntityType.TEAM,
        (
            c.CONTEST_BY_TEAM,
            c.TEAMS_BY_CONTEST,
            c.TEAMS_BY_CLUSTER,
            c.COACH_BY_TEAM,
            c.AWARD_BY_TEAM,
            c.TEAM,
            c.TEAM_ROSTER_BY_COACH,
        ),
    ),
    InvalidationRule(
        EntityType.JUDGE,
        (c.JUDGES_BY_CLUSTER, c.JUDGES_BY_CONTEST, c.CONTEST_BY_JUDGE, c.JUDGE),
    ),
    InvalidationRule(
        EntityType.CLUSTER,
        (
            c.CLUSTERS_BY_CONTEST,
            c.TEAMS_BY_CLUSTER,
            c.JUDGES_BY_CLUSTER,
            c.SUBMISSION_STATUS_BY_CLUSTER,
            c.CLUSTER,
        ),
    ),
    InvalidationRule(
        EntityType.CONTEST,
        (
            c.CONTEST_BY_TEAM,
            c.TEAMS_BY_CONTEST,
            c.JUDGES_BY_CONTEST,
            c.CONTEST_BY_JUDGE,
            c.ORGANIZERS_BY_CONTEST,
            c.CLUSTERS_BY_CONTEST,
            c.CONTEST,
        ),
    ),
    InvalidationRule(
        EntityType.SCORESHEET,
        (c.SCORESHEET_BY_KEY, c.SCORESHEET, c.SUBMISSION_STATUS_BY_CLUSTER),
    ),
    InvalidationRule(
        EntityType.CHAMPIONSHIP,
        (c.RANKINGS_BY_CONTEST, c.CONTEST_BY_TEAM, c.TEAMS_BY_CONTEST),
    ),
    # Advancing a contest to championship creates a championship cluster
    InvalidationRule(
        EntityType.CHAMPIONSHIP,
        (c.CLUSTERS_BY_CONTEST, c.TEAMS_BY_CLUSTER),
        predicate=lambda event: event.contest_id is not None,
    ),
    InvalidationRule(EntityType.COACH, (c.COACH_BY_TEAM, c.TEAM_ROSTER_BY_COACH)),
    InvalidationRule(EntityType.ORGANIZER, (c.ORGANIZERS_BY_CONTEST,)),
)


def matching_rules(
    event: DomainEvent, rules: Iterable[InvalidationRule] = INVALIDATION_RULES
) -> List[InvalidationRule]:
    """Rules that fire for ``event``, in table order."""
    return [rule for rule in rules if rule.matches(event)]


def identifiers_for(
    event: DomainEvent, rules: Iterable[InvalidationRule] = INVALIDATION_RULES
) -> List[str]:
    """De-duplicated cache identifiers to purge for ``event``, in table order."""
    seen = []
    for rule in matching_rules(event, rules):
        for identifier in rule.cache_identifiers:
            if identifier not in seen:
                seen.append(identifier)
    return seen
