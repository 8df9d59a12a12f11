"""
Domain Change Events

Typed notifications describing a create/update/delete on a named entity
type. Each entity type is its own variant; every variant may carry any of
the foreign keys (contest, cluster, team, judge) the writer knows about.
``DomainEvent`` is the discriminated union over all of them, keyed on
``entity_type``. Unknown payload fields are ignored so a richer payload
never blocks invalidation.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from .value_objects import ChangeAction, EntityType


class _ChangeEvent(BaseModel):
    """Fields shared by every event variant."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    action: ChangeAction
    id: Optional[int] = None
    contest_id: Optional[int] = None
    cluster_id: Optional[int] = None
    team_id: Optional[int] = None
    judge_id: Optional[int] = None

    @property
    def entity(self) -> EntityType:
        return EntityType(self.entity_type)

    def describe(self) -> str:
        """Short ``type:action`` label used in logs."""
        return f"{self.entity_type}:{self.action.value}"


class TeamEvent(_ChangeEvent):
    entity_type: Literal["team"] = "team"


class JudgeEvent(_ChangeEvent):
    entity_type: Literal["judge"] = "judge"


class ClusterEvent(_ChangeEvent):
    entity_type: Literal["cluster"] = "cluster"


class ContestEvent(_ChangeEvent):
    entity_type: Literal["contest"] = "contest"


class ScoresheetEvent(_ChangeEvent):
    entity_type: Literal["scoresheet"] = "scoresheet"


class ChampionshipEvent(_ChangeEvent):
    entity_type: Literal["championship"] = "championship"


class CoachEvent(_ChangeEvent):
    entity_type: Literal["coach"] = "coach"


class OrganizerEvent(_ChangeEvent):
    entity_type: Literal["organizer"] = "organizer"


DomainEvent = Annotated[
    Union[
        TeamEvent,
        JudgeEvent,
        ClusterEvent,
        ContestEvent,
        ScoresheetEvent,
        ChampionshipEvent,
        CoachEvent,
        OrganizerEvent,
    ],
    Field(discriminator="entity_type"),
]

_EVENT_ADAPTER: TypeAdapter = TypeAdapter(DomainEvent)

EVENT_TYPES: Dict[EntityType, type] = {
    EntityType.TEAM: TeamEvent,
    EntityType.JUDGE: JudgeEvent,
    EntityType.CLUSTER: ClusterEvent,
    EntityType.CONTEST: ContestEvent,
    EntityType.SCORESHEET: ScoresheetEvent,
    EntityType.CHAMPIONSHIP: ChampionshipEvent,
    EntityType.COACH: CoachEvent,
    EntityType.ORGANIZER: OrganizerEvent,
}


def parse_event(payload: Dict[str, Any]) -> DomainEvent:
    """Validate a raw event payload (snake_case or camelCase keys).

    A legacy ``type`` key is accepted as ``entity_type``.
    """
    data = dict(payload)
    if "type" in data and "entity_type" not in data and "entityType" not in data:
        data["entity_type"] = data.pop("type")
    return _EVENT_ADAPTER.validate_python(data)


def make_event(
    entity_type: Union[EntityType, str],
    action: Union[ChangeAction, str],
    **keys: Optional[int],
) -> DomainEvent:
    """Build the event variant for ``entity_type`` with the given keys."""
    event_cls = EVENT_TYPES[EntityType(entity_type)]
    return event_cls(action=ChangeAction(action), **keys)
