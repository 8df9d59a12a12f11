"""
Domain Event Bus

In-process publish/subscribe of domain change events. Fan-out is
synchronous and in subscription order; there is no queue, no retry and no
replay for late subscribers.
"""

from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from ...domain.cache.events import DomainEvent, parse_event

EventCallback = Callable[[DomainEvent], None]

logger = structlog.get_logger(__name__)


class Subscription:
    """Handle returned by ``DomainEventBus.subscribe``.

    Calling the handle, or ``unsubscribe()``, removes the callback.
    Unsubscribing twice is a no-op.
    """

    def __init__(self, bus: "DomainEventBus", callback: EventCallback, name: str):
        self._bus = bus
        self.callback = callback
        self.name = name
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._bus._remove(self)

    def __call__(self) -> None:
        self.unsubscribe()

    def __repr__(self) -> str:
        return f"Subscription(name={self.name!r}, active={self.active})"


class DomainEventBus:
    """Typed pub/sub channel for domain change events."""

    def __init__(self):
        self._subscriptions: List[Subscription] = []
        self.published_count = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self, callback: EventCallback, name: Optional[str] = None
    ) -> Subscription:
        """Register ``callback`` for every event published from now on."""
        subscription = Subscription(
            self, callback, name or getattr(callback, "__qualname__", repr(callback))
        )
        self._subscriptions.append(subscription)
        logger.debug("Event bus: subscribed", subscriber=subscription.name)
        return subscription

    def publish(self, event: Union[DomainEvent, Dict[str, Any]]) -> int:
        """
        Deliver ``event`` to every current subscriber, in subscription order.

        A raw payload dict is validated into its event variant first. A
        subscriber that raises is logged and skipped; the rest still run.

        Returns:
            Number of subscribers that handled the event without error
        """
        if isinstance(event, dict):
            event = parse_event(event)

        self.published_count += 1
        delivered = 0
        # Changes to the subscriber list made during fan-out apply next publish
        for subscription in list(self._subscriptions):
            try:
                subscription.callback(event)
                delivered += 1
            except Exception as e:
                logger.error(
                    "Event bus: subscriber failed",
                    subscriber=subscription.name,
                    domain_event=event.describe(),
                    error=str(e),
                    exc_info=True,
                )

        logger.debug(
            "Event bus: published",
            domain_event=event.describe(),
            subscribers=len(self._subscriptions),
            delivered=delivered,
        )
        return delivered

    def clear(self) -> None:
        """Drop every subscription."""
        for subscription in list(self._subscriptions):
            subscription.active = False
        self._subscriptions.clear()

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
            logger.debug("Event bus: unsubscribed", subscriber=subscription.name)
