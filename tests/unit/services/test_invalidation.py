"""
Unit tests for rule-driven cache invalidation.
"""

from unittest.mock import AsyncMock

import pytest

from scorekeeper import constants as c
from scorekeeper.domain.cache.events import make_event
from scorekeeper.domain.cache.invalidation_rules import INVALIDATION_RULES
from scorekeeper.services.cache.entity_store import EntityCacheStore
from scorekeeper.services.events.event_bus import DomainEventBus
from scorekeeper.services.events.invalidation import InvalidationSubscriber

ALL_STORES = [identifier for identifier in c.STORAGE_KEYS]


@pytest.fixture
def stores():
    registry = {}
    for identifier in ALL_STORES:
        store = EntityCacheStore(identifier, AsyncMock())
        store.put(1, [{"id": 1}])
        registry[identifier] = store
    return registry


@pytest.fixture
def bus():
    return DomainEventBus()


@pytest.fixture
def subscriber(stores, bus):
    subscriber = InvalidationSubscriber(stores)
    subscriber.attach(bus)
    return subscriber


def _populated(stores):
    return {identifier for identifier, store in stores.items() if len(store)}


class TestInvalidationSubscriber:
    """Test purging stores on published events."""

    @pytest.mark.parametrize(
        "rule", INVALIDATION_RULES, ids=lambda rule: rule.entity_type.value
    )
    def test_every_rule_purges_its_stores(self, rule, stores, bus, subscriber):
        keys = {"contest_id": 1} if rule.predicate is not None else {}
        bus.publish(make_event(rule.entity_type, "update", id=1, **keys))

        for identifier in rule.cache_identifiers:
            assert len(stores[identifier]) == 0, identifier

    def test_team_update_purges_team_caches_only(self, stores, bus, subscriber):
        bus.publish(make_event("team", "update", id=7))

        remaining = _populated(stores)
        assert c.TEAMS_BY_CLUSTER not in remaining
        assert c.COACH_BY_TEAM not in remaining
        assert c.AWARD_BY_TEAM not in remaining
        assert c.JUDGES_BY_CLUSTER in remaining
        assert c.SCORESHEET_BY_KEY in remaining

    def test_purge_is_type_level(self, stores, bus, subscriber):
        stores[c.TEAMS_BY_CLUSTER].put(2, [{"id": 9}])

        bus.publish(make_event("team", "update", id=7, cluster_id=1))

        # Keys for unrelated clusters go too
        assert len(stores[c.TEAMS_BY_CLUSTER]) == 0

    def test_championship_without_contest_skips_predicate_rule(
        self, stores, bus, subscriber
    ):
        bus.publish(make_event("championship", "create"))

        remaining = _populated(stores)
        assert c.RANKINGS_BY_CONTEST not in remaining
        assert c.CLUSTERS_BY_CONTEST in remaining

    def test_handle_returns_purged_identifiers(self, subscriber):
        purged = subscriber.handle(make_event("organizer", "delete", contest_id=2))
        assert purged == [c.ORGANIZERS_BY_CONTEST]

    def test_unregistered_stores_are_skipped(self, bus):
        judges = EntityCacheStore(c.JUDGES_BY_CLUSTER, AsyncMock())
        judges.put(1, [])
        subscriber = InvalidationSubscriber({c.JUDGES_BY_CLUSTER: judges})

        purged = subscriber.handle(make_event("judge", "update", id=1))

        assert purged == [c.JUDGES_BY_CLUSTER]
        assert len(judges) == 0

    def test_stores_registered_later_are_covered(self, bus):
        registry = {}
        subscriber = InvalidationSubscriber(registry)
        subscriber.attach(bus)
        coaches = EntityCacheStore(c.COACH_BY_TEAM, AsyncMock())
        coaches.put(1, {"username": "coach"})
        registry[c.COACH_BY_TEAM] = coaches

        bus.publish(make_event("coach", "update", team_id=1))

        assert len(coaches) == 0

    def test_matching_rules(self, subscriber):
        rules = subscriber.matching_rules(make_event("championship", "update", contest_id=4))
        assert len(rules) == 2
        assert subscriber.matching_rules(make_event("contest", "create")) == [
            INVALIDATION_RULES[3]
        ]

    def test_purged_store_persists_empty_state(self, tab_a, bus):
        store = EntityCacheStore(c.CLUSTER, AsyncMock(), storage=tab_a.session)
        store.put(1, {"id": 1})
        subscriber = InvalidationSubscriber({c.CLUSTER: store})
        subscriber.attach(bus)

        bus.publish(make_event("cluster", "delete", id=1))

        assert '"state":{}' in tab_a.session.get_item(c.CLUSTER)

    def test_attach_twice_is_rejected(self, subscriber, bus):
        with pytest.raises(RuntimeError):
            subscriber.attach(bus)

    def test_detach(self, stores, bus, subscriber):
        subscriber.detach()
        assert not subscriber.is_attached

        bus.publish(make_event("team", "update"))

        assert c.TEAMS_BY_CLUSTER in _populated(stores)
