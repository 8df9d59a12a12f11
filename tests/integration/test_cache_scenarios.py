"""
End-to-end cache scenarios across stores, the event bus and two tabs.

Each tab gets its own CacheManager sharing one StorageHub, the way two
browser tabs share session storage.
"""

import pytest

from scorekeeper import constants as c
from scorekeeper.infrastructure.exceptions import NetworkFailure
from scorekeeper.services.cache.cache_manager import CacheManager

pytestmark = pytest.mark.integration

JUDGES_PATH = "/api/mapping/clusterToJudge/getAllJudgesByCluster/5/"
REMOVE_J2_PATH = "/api/mapping/clusterToJudge/remove/2/5/"


@pytest.fixture
def manager_a(remote_api, tab_a):
    return CacheManager(remote_api, tab_a)


@pytest.fixture
def manager_b(remote_api, tab_b):
    return CacheManager(remote_api, tab_b)


class TestCacheScenarios:
    """Read-through, rollback, invalidation and cross-tab convergence."""

    @pytest.mark.asyncio
    async def test_second_read_does_not_fetch(
        self, manager_a, remote_api, judge_one, judge_two
    ):
        remote_api.on("GET", JUDGES_PATH, {"Judges": [judge_one, judge_two]})
        await manager_a.initialize()

        first = await manager_a.judges_by_cluster(5)
        second = await manager_a.judges_by_cluster(5)

        assert first == second == [judge_one, judge_two]
        assert remote_api.count("GET", JUDGES_PATH) == 1
        await manager_a.close()

    @pytest.mark.asyncio
    async def test_failed_removal_rolls_back_and_refetches(
        self, manager_a, remote_api, judge_one, judge_two
    ):
        remote_api.on("GET", JUDGES_PATH, {"Judges": [judge_one, judge_two]})
        remote_api.on("DELETE", REMOVE_J2_PATH, NetworkFailure("Remote call timed out"))
        await manager_a.initialize()
        await manager_a.judges_by_cluster(5)

        observed = []
        manager_a.store(c.JUDGES_BY_CLUSTER).subscribe(
            lambda store, keys: observed.append(list(store.peek(5) or []))
        )

        with pytest.raises(NetworkFailure):
            await manager_a.remove_judge_from_cluster(2, 5)

        # Optimistic value first, then the restored snapshot
        assert observed[0] == [judge_one]
        assert observed[1] == [judge_one, judge_two]
        assert manager_a.executor.pending_refetches == 1

        await manager_a.close()
        assert remote_api.count("GET", JUDGES_PATH) == 2

    @pytest.mark.asyncio
    async def test_team_update_purges_team_caches(self, manager_a, remote_api):
        await manager_a.initialize()
        manager_a.store(c.TEAMS_BY_CLUSTER).put(5, [{"id": 9}])
        manager_a.store(c.COACH_BY_TEAM).put(9, {"username": "coach"})
        manager_a.store(c.AWARD_BY_TEAM).put(9, [{"award": "Best Design"}])
        manager_a.store(c.JUDGES_BY_CLUSTER).put(5, [])

        manager_a.publish({"type": "team", "action": "update", "teamId": 9, "contestId": 3})

        assert not manager_a.store(c.TEAMS_BY_CLUSTER).contains(5)
        assert not manager_a.store(c.COACH_BY_TEAM).contains(9)
        assert not manager_a.store(c.AWARD_BY_TEAM).contains(9)
        assert manager_a.store(c.JUDGES_BY_CLUSTER).contains(5)

        remote_api.on("GET", "/api/awards/getAwardsByTeam/9/", {"awards": []})
        assert await manager_a.awards_by_team(9) == []
        await manager_a.close()

    @pytest.mark.asyncio
    async def test_other_tab_converges_on_successful_removal(
        self, manager_a, manager_b, remote_api, judge_one, judge_two
    ):
        remote_api.on("GET", JUDGES_PATH, {"Judges": [judge_one, judge_two]})
        remote_api.on("DELETE", REMOVE_J2_PATH, None)
        await manager_a.initialize()
        await manager_b.initialize()
        await manager_a.judges_by_cluster(5)
        await manager_b.judges_by_cluster(5)

        await manager_a.remove_judge_from_cluster(2, 5)

        assert manager_a.store(c.JUDGES_BY_CLUSTER).peek(5) == [judge_one]
        assert manager_b.store(c.JUDGES_BY_CLUSTER).peek(5) == [judge_one]
        assert manager_b.replicator.applied_count >= 1
        assert remote_api.count("DELETE") == 1

        await manager_a.close()
        await manager_b.close()

    @pytest.mark.asyncio
    async def test_other_tab_sees_rollback(
        self, manager_a, manager_b, remote_api, judge_one, judge_two
    ):
        remote_api.on("GET", JUDGES_PATH, {"Judges": [judge_one, judge_two]})
        remote_api.on("DELETE", REMOVE_J2_PATH, NetworkFailure())
        await manager_a.initialize()
        await manager_b.initialize()
        await manager_a.judges_by_cluster(5)

        with pytest.raises(NetworkFailure):
            await manager_a.remove_judge_from_cluster(2, 5)
        await manager_a.executor.drain()

        assert manager_b.store(c.JUDGES_BY_CLUSTER).peek(5) == [judge_one, judge_two]

        await manager_a.close()
        await manager_b.close()

    @pytest.mark.asyncio
    async def test_replicated_snapshot_does_not_invalidate(
        self, manager_a, manager_b, remote_api
    ):
        await manager_a.initialize()
        await manager_b.initialize()
        manager_b.store(c.COACH_BY_TEAM).put(9, {"username": "coach"})

        manager_a.store(c.TEAMS_BY_CLUSTER).put(5, [{"id": 9, "team_name": "New"}])

        assert manager_b.store(c.TEAMS_BY_CLUSTER).peek(5) == [
            {"id": 9, "team_name": "New"}
        ]
        # Only a published event purges dependents
        assert manager_b.store(c.COACH_BY_TEAM).contains(9)

        await manager_a.close()
        await manager_b.close()

    @pytest.mark.asyncio
    async def test_scoresheet_drafts_stay_in_their_tab(
        self, manager_a, manager_b, remote_api
    ):
        await manager_a.initialize()
        await manager_b.initialize()

        manager_a.store(c.SCORESHEET).put(3, {"id": 3, "field1": 4})

        assert not manager_b.store(c.SCORESHEET).contains(3)

        await manager_a.close()
        await manager_b.close()
