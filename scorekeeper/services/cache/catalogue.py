"""
Store Catalogue

Declarative table of every entity cache store: which endpoint fills it,
which envelope field holds the payload, which storage tier persists it and
whether it replicates across tabs.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from ... import constants as c
from ...domain.cache.repository_interfaces import RemoteApi
from ...domain.cache.value_objects import CacheKey, StorageTier
from .entity_store import BatchFetcher, Fetcher


def _scoresheet_entry(body: Any) -> Dict[str, Any]:
    body = body or {}
    return {"scoresheet": body.get("ScoreSheet"), "total": body.get("total")}


@dataclass(frozen=True)
class StoreSpec:
    """How one store is fetched and persisted.

    ``path`` is formatted with the key parts (``{0}``, ``{1}``, ...).
    ``batch_path`` names a POST endpoint taking a list of ids and answering
    a mapping keyed by id. ``shape`` post-processes the raw response body
    instead of unwrapping ``envelope``.
    """

    name: str
    path: Optional[str] = None
    envelope: Optional[str] = None
    tier: StorageTier = StorageTier.SESSION
    replicate: bool = True
    batch_path: Optional[str] = None
    shape: Optional[Callable[[Any], Any]] = None

    def __post_init__(self) -> None:
        if not self.path and not self.batch_path:
            raise ValueError(f"Store {self.name} needs a path or a batch path")

    @property
    def storage_key(self) -> str:
        return c.STORAGE_KEYS[self.name]


STORE_CATALOGUE: Tuple[StoreSpec, ...] = (
    StoreSpec(
        c.JUDGES_BY_CLUSTER,
        "/api/mapping/clusterToJudge/getAllJudgesByCluster/{0}/",
        "Judges",
    ),
    StoreSpec(
        c.TEAMS_BY_CLUSTER,
        "/api/mapping/clusterToTeam/getAllTeamsByCluster/{0}/",
        "Teams",
    ),
    StoreSpec(
        c.CLUSTERS_BY_CONTEST,
        "/api/mapping/clusterToContest/getAllClustersByContest/{0}/",
        "Clusters",
    ),
    StoreSpec(
        c.CONTEST_BY_TEAM,
        batch_path="/api/mapping/contestToTeam/contestsByTeams/",
    ),
    StoreSpec(c.TEAMS_BY_CONTEST, "/api/mapping/teamToContest/getTeamsByContest/{0}/"),
    StoreSpec(
        c.COACH_BY_TEAM,
        batch_path="/api/mapping/coachToTeam/coachesByTeams/",
    ),
    StoreSpec(c.AWARD_BY_TEAM, "/api/awards/getAwardsByTeam/{0}/", "awards"),
    StoreSpec(
        c.JUDGES_BY_CONTEST, "/api/mapping/judgeToContest/getAllJudges/{0}/", "Judges"
    ),
    StoreSpec(
        c.CONTEST_BY_JUDGE,
        "/api/mapping/contestToJudge/getContestByJudge/{0}/",
        "Contest",
    ),
    StoreSpec(
        c.ORGANIZERS_BY_CONTEST,
        "/api/mapping/organizerToContest/getOrganizersByContest/{0}/",
        "Organizers",
    ),
    StoreSpec(
        c.SCORESHEET_BY_KEY,
        "/api/mapping/scoreSheet/getByTeamJudge/{2}/{1}/{0}/",
        shape=_scoresheet_entry,
    ),
    StoreSpec(
        c.SUBMISSION_STATUS_BY_CLUSTER,
        "/api/mapping/scoreSheet/allSubmittedForCluster/{0}/",
        "allSubmitted",
    ),
    StoreSpec(
        c.RANKINGS_BY_CONTEST, "/api/tabulation/listAdvancers/?contestid={0}", "advancers"
    ),
    StoreSpec(
        c.TEAM_ROSTER_BY_COACH,
        "/api/mapping/coachToTeam/teamsByCoach/{0}/",
        "Teams",
        tier=StorageTier.DURABLE,
    ),
    StoreSpec(
        c.FEEDBACK_SETTINGS_BY_CONTEST,
        "/api/feedback/settings/{0}/",
        tier=StorageTier.DURABLE,
    ),
    StoreSpec(c.JUDGE, "/api/judge/get/{0}/", "Judge"),
    StoreSpec(c.TEAM, "/api/team/get/{0}/", "Team"),
    StoreSpec(c.CLUSTER, "/api/cluster/get/{0}/", "Cluster"),
    StoreSpec(c.CONTEST, "/api/contest/get/{0}/", "Contest"),
    # A judge's in-progress sheet stays local to its tab
    StoreSpec(c.SCORESHEET, "/api/scoreSheet/get/{0}/", "ScoreSheet", replicate=False),
)


def _batch_ids(keys: List[CacheKey]) -> List[Any]:
    return [key.parts[0] if not key.is_composite else str(key) for key in keys]


def build_batch_fetcher(spec: StoreSpec, api: RemoteApi) -> Optional[BatchFetcher]:
    """POST the missing ids to the batch endpoint; returns None without one."""
    if not spec.batch_path:
        return None

    async def fetch_batch(keys: List[CacheKey]) -> Dict[Any, Any]:
        result = await api.post(spec.batch_path, _batch_ids(keys))
        return result or {}

    return fetch_batch


def build_fetcher(spec: StoreSpec, api: RemoteApi) -> Fetcher:
    """Single-key fetcher for ``spec``.

    Batch-only stores fetch one key through the batch endpoint.
    """
    if spec.path:

        async def fetch(key: CacheKey) -> Any:
            path = spec.path.format(*key.parts)
            if spec.shape is not None:
                return spec.shape(await api.get(path))
            return await api.get(path, spec.envelope)

        return fetch

    batch = build_batch_fetcher(spec, api)

    async def fetch_one(key: CacheKey) -> Any:
        result = await batch([key])
        if str(key) in result:
            return result[str(key)]
        return result.get(key.parts[0])

    return fetch_one
