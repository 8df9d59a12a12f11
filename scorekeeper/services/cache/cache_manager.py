"""
Cache Manager Service

High-level facade that builds every entity cache store and wires them to
the event bus, the invalidation subscriber, the mutation executor and the
cross-tab replicator. UI code reads through it and runs its optimistic
domain mutations through it; after a successful mutation the caller
publishes a domain event so dependent caches get purged.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from opentelemetry import trace

from ... import constants as c
from ...domain.cache.events import DomainEvent
from ...domain.cache.repository_interfaces import RemoteApi
from ...domain.cache.value_objects import CacheKey, StorageTier
from ...infrastructure.api_client import RemoteApiClient
from ...infrastructure.storage.memory import TabStorage
from ..events.event_bus import DomainEventBus
from ..events.invalidation import InvalidationSubscriber
from ..mutation.executor import MutationExecutor, RemoteCall
from ..sync.replicator import CrossTabReplicator
from .catalogue import STORE_CATALOGUE, StoreSpec, build_batch_fetcher, build_fetcher
from .entity_store import EntityCacheStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Judge fields shown in cluster listings
JUDGE_LIST_FIELDS = ("first_name", "last_name", "phone_number", "role")
PENALTY_SHEET_TYPES = (c.SHEET_TYPE_RUN_PENALTIES, c.SHEET_TYPE_GENERAL_PENALTIES)


def _without(items: Optional[List[Dict[str, Any]]], item_id: Any) -> List[Dict[str, Any]]:
    return [item for item in (items or []) if item.get("id") != item_id]


def _replace_fields(item: Dict[str, Any], update: Dict[str, Any], fields: Sequence[str]):
    return {**item, **{field: update[field] for field in fields if field in update}}


class CacheManager:
    """
    Client-side cache coherency facade.

    Args:
        api: Remote API boundary; a ``RemoteApiClient`` is built when omitted
        storage: This tab's storage; stores are memory-only without it
        specs: Store catalogue
        serialize_mutations: Override ``SERIALIZE_MUTATIONS``
        record_version: Override ``PERSISTED_RECORD_VERSION``
    """

    def __init__(
        self,
        api: Optional[RemoteApi] = None,
        storage: Optional[TabStorage] = None,
        *,
        specs: Sequence[StoreSpec] = STORE_CATALOGUE,
        serialize_mutations: Optional[bool] = None,
        record_version: Optional[int] = None,
    ):
        self.api = api or RemoteApiClient()
        self.storage = storage
        self.stores: Dict[str, EntityCacheStore] = {}
        for spec in specs:
            self.stores[spec.name] = EntityCacheStore(
                spec.name,
                build_fetcher(spec, self.api),
                storage_key=spec.storage_key,
                tier=spec.tier,
                storage=storage.area(spec.tier) if storage else None,
                batch_fetcher=build_batch_fetcher(spec, self.api),
                replicate=spec.replicate,
                record_version=record_version,
            )

        self.bus = DomainEventBus()
        self.invalidation = InvalidationSubscriber(self.stores)
        self.executor = MutationExecutor(serialize=serialize_mutations)
        self.replicator = CrossTabReplicator(record_version=record_version)
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def store(self, name: str) -> EntityCacheStore:
        """Store registered under ``name``."""
        try:
            return self.stores[name]
        except KeyError:
            raise KeyError(f"Unknown cache store: {name}") from None

    async def initialize(self) -> None:
        """Hydrate persisted stores, attach invalidation and start replication."""
        with tracer.start_as_current_span("cache_manager.initialize") as span:
            hydrated = 0
            for store in self.stores.values():
                if store.hydrate():
                    hydrated += 1
                if store.replicate and store.storage is not None:
                    self.replicator.register(store)

            self.invalidation.attach(self.bus)
            self.replicator.start()
            self._initialized = True
            span.set_attribute("hydrated_stores", hydrated)
            logger.info(
                f"Cache manager initialized ({hydrated} stores hydrated)",
                extra={"origin": self.storage.origin if self.storage else None},
            )

    async def close(self) -> None:
        """Stop replication, detach invalidation and release the API client."""
        self.replicator.stop()
        self.invalidation.detach()
        await self.executor.drain()
        await self.api.close()
        self._initialized = False
        logger.info("Cache manager closed")

    def publish(self, event: Union[DomainEvent, Dict[str, Any]]) -> int:
        """Publish a domain event (or its raw payload) after a successful write."""
        return self.bus.publish(event)

    def clear_all(self, tier: Optional[StorageTier] = None) -> int:
        """Purge every store, or only those persisted in ``tier``."""
        purged = 0
        for store in self.stores.values():
            if tier is None or store.tier == tier:
                store.purge_all()
                purged += 1
        logger.info(f"Cleared {purged} cache stores")
        return purged

    # Reads

    async def fetch(self, name: str, key: Any, force_refresh: bool = False) -> Any:
        return await self.store(name).get_or_fetch(key, force_refresh)

    async def judges_by_cluster(self, cluster_id: int, force_refresh: bool = False):
        return await self.fetch(c.JUDGES_BY_CLUSTER, cluster_id, force_refresh)

    async def teams_by_cluster(self, cluster_id: int, force_refresh: bool = False):
        return await self.fetch(c.TEAMS_BY_CLUSTER, cluster_id, force_refresh)

    async def clusters_by_contest(self, contest_id: int, force_refresh: bool = False):
        return await self.fetch(c.CLUSTERS_BY_CONTEST, contest_id, force_refresh)

    async def contests_by_teams(
        self, team_ids: Iterable[int], force_refresh: bool = False
    ) -> Dict[CacheKey, Any]:
        return await self.store(c.CONTEST_BY_TEAM).get_or_fetch_many(team_ids, force_refresh)

    async def teams_by_contest(self, contest_id: int, force_refresh: bool = False):
        return await self.fetch(c.TEAMS_BY_CONTEST, contest_id, force_refresh)

    async def coaches_by_teams(
        self, team_ids: Iterable[int], force_refresh: bool = False
    ) -> Dict[CacheKey, Any]:
        return await self.store(c.COACH_BY_TEAM).get_or_fetch_many(team_ids, force_refresh)

    async def awards_by_team(self, team_id: int, force_refresh: bool = False):
        return await self.fetch(c.AWARD_BY_TEAM, team_id, force_refresh)

    async def judges_by_contest(self, contest_id: int, force_refresh: bool = False):
        return await self.fetch(c.JUDGES_BY_CONTEST, contest_id, force_refresh)

    async def contest_by_judge(self, judge_id: int, force_refresh: bool = False):
        return await self.fetch(c.CONTEST_BY_JUDGE, judge_id, force_refresh)

    async def organizers_by_contest(self, contest_id: int, force_refresh: bool = False):
        return await self.fetch(c.ORGANIZERS_BY_CONTEST, contest_id, force_refresh)

    async def scoresheet_by_key(
        self, team_id: int, judge_id: int, sheet_type: int, force_refresh: bool = False
    ):
        key = CacheKey.scoresheet(team_id, judge_id, sheet_type)
        return await self.fetch(c.SCORESHEET_BY_KEY, key, force_refresh)

    async def submission_status_by_cluster(
        self, cluster_id: int, force_refresh: bool = False
    ):
        return await self.fetch(c.SUBMISSION_STATUS_BY_CLUSTER, cluster_id, force_refresh)

    async def rankings_by_contest(self, contest_id: int, force_refresh: bool = False):
        return await self.fetch(c.RANKINGS_BY_CONTEST, contest_id, force_refresh)

    async def team_roster_by_coach(self, coach_id: int, force_refresh: bool = False):
        return await self.fetch(c.TEAM_ROSTER_BY_COACH, coach_id, force_refresh)

    async def feedback_settings_by_contest(
        self, contest_id: int, force_refresh: bool = False
    ):
        return await self.fetch(c.FEEDBACK_SETTINGS_BY_CONTEST, contest_id, force_refresh)

    async def judge(self, judge_id: int, force_refresh: bool = False):
        return await self.fetch(c.JUDGE, judge_id, force_refresh)

    async def team(self, team_id: int, force_refresh: bool = False):
        return await self.fetch(c.TEAM, team_id, force_refresh)

    async def cluster(self, cluster_id: int, force_refresh: bool = False):
        return await self.fetch(c.CLUSTER, cluster_id, force_refresh)

    async def contest(self, contest_id: int, force_refresh: bool = False):
        return await self.fetch(c.CONTEST, contest_id, force_refresh)

    async def scoresheet(self, scoresheet_id: int, force_refresh: bool = False):
        return await self.fetch(c.SCORESHEET, scoresheet_id, force_refresh)

    async def load_scoresheets_for_judge(
        self, judge_id: int, cluster_id: Optional[int] = None
    ) -> List[CacheKey]:
        """
        Fill the scoresheet-by-key store with every sheet of a judge.

        Args:
            judge_id: Judge whose sheets to load
            cluster_id: Restrict to one cluster

        Returns:
            Keys that were stored
        """
        if cluster_id is None:
            path = f"/api/mapping/scoreSheet/getSheetsByJudge/{judge_id}/"
        else:
            path = (
                f"/api/mapping/scoreSheet/getSheetsByJudgeAndCluster/{judge_id}/{cluster_id}/"
            )

        items = await self.api.get(path, "ScoreSheets") or []
        values = {}
        for item in items:
            mapping = item.get("mapping") or {}
            key = CacheKey.scoresheet(
                mapping["teamid"], mapping["judgeid"], mapping["sheetType"]
            )
            values[key] = {"scoresheet": item.get("scoresheet"), "total": item.get("total")}

        self.store(c.SCORESHEET_BY_KEY).put_many(values)
        logger.debug(f"Loaded {len(values)} scoresheets for judge {judge_id}")
        return list(values.keys())

    # Mutations

    async def _run_or_call(
        self,
        store: EntityCacheStore,
        keys: List[CacheKey],
        apply: Callable[[], None],
        remote_call: RemoteCall,
        **options: Any,
    ) -> Any:
        # Nothing cached to update optimistically; just make the call
        if not keys:
            return await remote_call()
        return await self.executor.run(store, keys, apply, remote_call, **options)

    async def remove_judge_from_cluster(self, judge_id: int, cluster_id: int) -> None:
        """Drop a judge from a cluster's list, restoring and refetching on failure."""
        await self._remove_from_list(
            self.store(c.JUDGES_BY_CLUSTER),
            cluster_id,
            judge_id,
            lambda: self.api.delete(
                f"/api/mapping/clusterToJudge/remove/{judge_id}/{cluster_id}/"
            ),
            label="remove_judge_from_cluster",
        )

    async def _remove_from_list(
        self,
        store: EntityCacheStore,
        list_key: Any,
        item_id: Any,
        remote_call: RemoteCall,
        label: str,
    ) -> Any:
        key = CacheKey.coerce(list_key)
        if not store.contains(key):
            return await remote_call()
        return await self.executor.execute(
            store,
            key,
            lambda items: _without(items, item_id),
            remote_call,
            refetch_on_failure=True,
            label=label,
        )

    async def relocate_judge(
        self, judge: Dict[str, Any], from_cluster_id: int, to_cluster_id: int
    ) -> Any:
        """Move a judge between clusters; both lists are restored on failure."""
        store = self.store(c.JUDGES_BY_CLUSTER)
        judge_id = judge["id"]
        source, target = CacheKey.of(from_cluster_id), CacheKey.of(to_cluster_id)

        def apply() -> None:
            if store.contains(source):
                store.put(source, _without(store.peek(source), judge_id))
            if store.contains(target):
                store.put(target, _without(store.peek(target), judge_id) + [dict(judge)])

        def commit(server_judge: Any) -> None:
            if isinstance(server_judge, dict) and store.contains(target):
                store.put(target, _without(store.peek(target), judge_id) + [server_judge])

        keys = [key for key in (source, target) if store.contains(key)]
        return await self._run_or_call(
            store,
            keys,
            apply,
            lambda: self.api.post(
                "/api/judge/edit/", {**judge, "clusterid": to_cluster_id}, "judge"
            ),
            commit=commit,
            refetch_on_failure=True,
            label="relocate_judge",
        )

    async def update_judge(self, judge: Dict[str, Any]) -> Any:
        """Edit a judge everywhere it is cached."""
        judge_id = judge["id"]
        lists = self.store(c.JUDGES_BY_CLUSTER)
        keys = [
            key for key, judges in lists.items()
            if any(item.get("id") == judge_id for item in judges or [])
        ]

        def patch(judges: List[Dict[str, Any]], source: Dict[str, Any]):
            return [
                _replace_fields(item, source, JUDGE_LIST_FIELDS)
                if item.get("id") == judge_id else item
                for item in judges or []
            ]

        def apply() -> None:
            for key in keys:
                lists.put(key, patch(lists.peek(key), judge))

        def commit(server_judge: Any) -> None:
            if isinstance(server_judge, dict):
                for key in keys:
                    lists.put(key, patch(lists.peek(key), server_judge))

        def remote() -> Any:
            return self.executor.execute(
                self.store(c.JUDGE),
                judge_id,
                lambda current: {**(current or {}), **judge},
                lambda: self.api.post("/api/judge/edit/", judge, "judge"),
                commit=lambda current, server: server if isinstance(server, dict) else current,
                label="update_judge",
            )

        return await self._run_or_call(
            lists, keys, apply, remote, commit=commit, label="update_judge_lists"
        )

    async def add_judge_to_cluster(self, cluster_id: int, judge: Dict[str, Any]) -> Any:
        """Map a judge to a cluster, appending to the cached list if there is one."""
        store = self.store(c.JUDGES_BY_CLUSTER)
        key = CacheKey.of(cluster_id)
        keys = [key] if store.contains(key) else []

        def apply() -> None:
            store.put(key, _without(store.peek(key), judge["id"]) + [dict(judge)])

        return await self._run_or_call(
            store,
            keys,
            apply,
            lambda: self.api.post(
                "/api/mapping/clusterToJudge/create/",
                {"clusterid": cluster_id, "judgeid": judge["id"]},
            ),
            label="add_judge_to_cluster",
        )

    async def add_team_to_cluster(self, cluster_id: int, team: Dict[str, Any]) -> Any:
        """Map a team to a cluster, appending to the cached list if there is one."""
        store = self.store(c.TEAMS_BY_CLUSTER)
        key = CacheKey.of(cluster_id)
        keys = [key] if store.contains(key) else []

        def apply() -> None:
            store.put(key, _without(store.peek(key), team["id"]) + [dict(team)])

        return await self._run_or_call(
            store,
            keys,
            apply,
            lambda: self.api.post(
                "/api/mapping/clusterToTeam/create/",
                {"clusterid": cluster_id, "teamid": team["id"]},
                "mapping",
            ),
            label="add_team_to_cluster",
        )

    async def remove_team_from_cluster(
        self, team_id: int, cluster_id: int, map_id: int
    ) -> None:
        """Drop a team from a cluster's list, restoring and refetching on failure."""
        await self._remove_from_list(
            self.store(c.TEAMS_BY_CLUSTER),
            cluster_id,
            team_id,
            lambda: self.api.delete(f"/api/mapping/clusterToTeam/delete/{map_id}/"),
            label="remove_team_from_cluster",
        )

    async def update_team(self, team: Dict[str, Any]) -> Any:
        """Edit a team everywhere it is cached."""
        team_id = team["id"]
        lists = self.store(c.TEAMS_BY_CLUSTER)
        keys = [
            key for key, teams in lists.items()
            if any(item.get("id") == team_id for item in teams or [])
        ]

        def patch(teams: List[Dict[str, Any]], source: Dict[str, Any]):
            return [
                {**item, **source} if item.get("id") == team_id else item
                for item in teams or []
            ]

        def apply() -> None:
            for key in keys:
                lists.put(key, patch(lists.peek(key), team))

        def commit(server_team: Any) -> None:
            if isinstance(server_team, dict):
                for key in keys:
                    lists.put(key, patch(lists.peek(key), server_team))

        def remote() -> Any:
            return self.executor.execute(
                self.store(c.TEAM),
                team_id,
                lambda current: {**(current or {}), **team},
                lambda: self.api.post("/api/team/edit/", team, "Team"),
                commit=lambda current, server: server if isinstance(server, dict) else current,
                label="update_team",
            )

        return await self._run_or_call(
            lists, keys, apply, remote, commit=commit, label="update_team_lists"
        )

    async def update_coach_for_all_teams(
        self,
        username: str,
        coach: Dict[str, Any],
        remote_call: Optional[RemoteCall] = None,
    ) -> List[CacheKey]:
        """
        Replace the coach on every cached team coached by ``username``.

        The username is kept when the new coach record has none. Without a
        ``remote_call`` the change is applied directly, reconciling the cache
        after a write made elsewhere.

        Returns:
            Team keys whose coach was replaced
        """
        store = self.store(c.COACH_BY_TEAM)
        keys = [
            key for key, existing in store.items()
            if existing and existing.get("username") == username
        ]

        def apply() -> None:
            store.put_many(
                {
                    key: {
                        **coach,
                        "username": coach.get("username")
                        or store.peek(key).get("username")
                        or username,
                    }
                    for key in keys
                }
            )

        if remote_call is None:
            apply()
        else:
            await self._run_or_call(
                store, keys, apply, remote_call, label="update_coach_for_all_teams"
            )
        return keys

    async def edit_scoresheet_field(
        self, scoresheet_id: int, field: Any, value: Any
    ) -> Any:
        """Edit one field of a cached scoresheet, committing the server's sheet."""
        store = self.store(c.SCORESHEET)
        key = CacheKey.of(scoresheet_id)
        field_name = field if isinstance(field, str) else f"field{field}"

        def apply() -> None:
            store.merge(key, lambda sheet: {**sheet, field_name: value})

        def commit(server_sheet: Any) -> None:
            if isinstance(server_sheet, dict):
                store.put(key, server_sheet)

        return await self.executor.run(
            store,
            [key],
            apply,
            lambda: self.api.post(
                "/api/scoreSheet/edit/editField/",
                {"id": scoresheet_id, "field": field, "new_value": value},
                "score_sheet",
            ),
            commit=commit,
            label="edit_scoresheet_field",
        )

    async def delete_scoresheet_mapping(self, map_id: int, key: Any) -> None:
        """Drop a scoresheet mapping, restoring and refetching the key on failure."""
        store = self.store(c.SCORESHEET_BY_KEY)
        cache_key = CacheKey.coerce(key)
        await self.executor.run(
            store,
            [cache_key],
            lambda: store.purge(cache_key),
            lambda: self.api.delete(f"/api/scoreSheet/mapping/delete/{map_id}/"),
            refetch_on_failure=True,
            label="delete_scoresheet_mapping",
        )

    async def submit_all_penalties(self, judge_id: int, cluster_id: int) -> Any:
        """Mark a judge's cached penalty sheets in a cluster as submitted."""
        store = self.store(c.SCORESHEET_BY_KEY)
        cluster_teams = self.store(c.TEAMS_BY_CLUSTER).peek(cluster_id)
        team_ids = (
            {team.get("id") for team in cluster_teams} if cluster_teams is not None else None
        )

        keys = [
            key for key, entry in store.items()
            if key.is_composite
            and len(key.parts) == 3
            and key.parts[1] == judge_id
            and key.parts[2] in PENALTY_SHEET_TYPES
            and (team_ids is None or key.parts[0] in team_ids)
            and entry
            and entry.get("scoresheet")
        ]

        def apply() -> None:
            store.put_many(
                {
                    key: {
                        **store.peek(key),
                        "scoresheet": {**store.peek(key)["scoresheet"], "isSubmitted": True},
                    }
                    for key in keys
                }
            )

        return await self._run_or_call(
            store,
            keys,
            apply,
            lambda: self.api.post(
                "/api/mapping/scoreSheet/submitAllPenalties/", {"judge_id": judge_id}
            ),
            label="submit_all_penalties",
        )
