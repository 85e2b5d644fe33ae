"""
Expenseflow Notification Bus

Stand-in for the real-time transport. The approval engine returns
notification directives; callers publish them here and subscribers (socket
gateways, email/SMS senders, dashboards) pick up the event types they care
about.

Delivery is fire-and-forget: a failing handler is logged and never reaches
the code that committed the transition.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid

from expenseflow.core.models import NotificationDirective

logger = logging.getLogger(__name__)

ALL_EVENTS = "*"


@dataclass
class Delivery:
    """A directive as it went through the bus."""
    directive: NotificationDirective
    delivery_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    failed_handlers: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "delivery_id": self.delivery_id,
            "timestamp": self.timestamp,
            "failed_handlers": self.failed_handlers,
            **self.directive.to_dict(),
        }


class NotificationBus:
    """
    Pub/Sub bus for notification directives.

    Handlers subscribe to an event type (or ``"*"`` for everything), or to a
    room with ``subscribe_room``, and receive each matching directive once.
    """

    _instance: Optional["NotificationBus"] = None

    def __init__(self, max_history: int = 1000):
        self._subscribers: Dict[str, List[Callable]] = {}
        self._room_subscribers: Dict[str, List[Callable]] = {}
        self._history: List[Delivery] = []
        self._max_history = max_history

    @classmethod
    def get_instance(cls) -> "NotificationBus":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def subscribe(self, event_type: str, handler: Callable):
        """Subscribe to an event type."""
        self._subscribers.setdefault(event_type, []).append(handler)
        logger.debug(f"Subscribed {handler.__name__} to {event_type}")

    def unsubscribe(self, event_type: str, handler: Callable):
        """Unsubscribe from an event type."""
        if event_type in self._subscribers:
            self._subscribers[event_type] = [
                h for h in self._subscribers[event_type] if h != handler
            ]

    def subscribe_room(self, audience: str, handler: Callable):
        """Subscribe to every directive addressed to ``audience`` (e.g. ``user-42``)."""
        self._room_subscribers.setdefault(audience, []).append(handler)
        logger.debug(f"Subscribed {handler.__name__} to room {audience}")

    def unsubscribe_room(self, audience: str, handler: Callable):
        if audience in self._room_subscribers:
            self._room_subscribers[audience] = [
                h for h in self._room_subscribers[audience] if h != handler
            ]

    async def publish(self, directive: NotificationDirective) -> Delivery:
        """Deliver one directive to every matching handler."""
        logger.info(f"Notify: {directive.event_type} -> {directive.audience}")

        delivery = Delivery(directive=directive)
        self._history.append(delivery)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        handlers = []
        for handler in (
            self._subscribers.get(directive.event_type, [])
            + self._subscribers.get(ALL_EVENTS, [])
            + self._room_subscribers.get(directive.audience, [])
        ):
            if handler not in handlers:
                handlers.append(handler)
        if not handlers:
            logger.debug(f"No handlers for {directive.event_type}")
            return delivery

        tasks = []
        for handler in handlers:
            if asyncio.iscoroutinefunction(handler):
                tasks.append(asyncio.create_task(handler(directive)))
            else:
                tasks.append(asyncio.create_task(asyncio.to_thread(handler, directive)))

        results = await asyncio.gather(*tasks, return_exceptions=True)

        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                delivery.failed_handlers.append(handler.__name__)
                logger.error(
                    f"Handler {handler.__name__} failed for {directive.event_type}: {result}",
                    exc_info=result,
                )
        return delivery

    async def publish_all(self, directives: Iterable[NotificationDirective]) -> List[Delivery]:
        return [await self.publish(d) for d in directives]

    def get_history(
        self,
        audience: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[Delivery]:
        """Get delivery history."""
        deliveries = self._history

        if audience:
            deliveries = [d for d in deliveries if d.directive.audience == audience]

        if event_type:
            deliveries = [d for d in deliveries if d.directive.event_type == event_type]

        return deliveries[-limit:]

    def clear_history(self):
        self._history = []


def get_notification_bus() -> NotificationBus:
    return NotificationBus.get_instance()
