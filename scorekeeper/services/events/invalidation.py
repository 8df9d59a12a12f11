"""
Invalidation Subscriber

Listens on the domain event bus and purges every cache store named by a
matching invalidation rule. Purges are whole-store: over-invalidation is
acceptable, a missed purge is not.
"""

from typing import Iterable, List, Mapping, Optional, Sequence

import structlog

from ...domain.cache.events import DomainEvent
from ...domain.cache.invalidation_rules import (
    INVALIDATION_RULES,
    InvalidationRule,
    identifiers_for,
)
from ...domain.cache.invalidation_rules import matching_rules as _matching_rules
from ..cache.entity_store import EntityCacheStore
from .event_bus import DomainEventBus, Subscription

logger = structlog.get_logger(__name__)


class InvalidationSubscriber:
    """
    Apply a static invalidation rule table to published domain events.

    Args:
        stores: Store registry keyed by identifier; looked up on every
            event, so stores registered later are covered too
        rules: Rule table
    """

    def __init__(
        self,
        stores: Mapping[str, EntityCacheStore],
        rules: Sequence[InvalidationRule] = INVALIDATION_RULES,
    ):
        self.stores = stores
        self.rules = tuple(rules)
        self._subscription: Optional[Subscription] = None

    @property
    def is_attached(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def attach(self, bus: DomainEventBus) -> Subscription:
        """Start handling events published on ``bus``."""
        if self.is_attached:
            raise RuntimeError("Invalidation subscriber is already attached")
        self._subscription = bus.subscribe(self.handle, name="invalidation")
        logger.info("Invalidation subscriber attached", rules=len(self.rules))
        return self._subscription

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def matching_rules(self, event: DomainEvent) -> List[InvalidationRule]:
        """Rules that fire for ``event``."""
        return _matching_rules(event, self.rules)

    def handle(self, event: DomainEvent) -> List[str]:
        """Purge every store named by a rule matching ``event``."""
        identifiers = identifiers_for(event, self.rules)
        if not identifiers:
            logger.debug("No invalidation rule matched", domain_event=event.describe())
            return []

        purged = self.invalidate(identifiers)
        logger.info(
            "Caches purged by rule",
            domain_event=event.describe(),
            event_id=event.id,
            purged=purged,
        )
        return purged

    def invalidate(self, identifiers: Iterable[str]) -> List[str]:
        """Purge the named stores; returns the identifiers actually purged."""
        purged = []
        for identifier in identifiers:
            store = self.stores.get(identifier)
            if store is None:
                logger.debug("Skipping unregistered cache", cache=identifier)
                continue
            try:
                store.purge_all()
            except Exception as e:
                logger.error(
                    "Cache purge failed",
                    cache=identifier,
                    error=str(e),
                    exc_info=True,
                )
                continue
            purged.append(identifier)
        return purged
