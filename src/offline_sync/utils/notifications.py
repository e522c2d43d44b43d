"""
Notification bus for the offline sync engine.

Components report through their own observer lists; the engine republishes
the user-visible subset here so a status display needs a single subscription.
Each engine owns its own EventBus; there is no process-wide instance.

Delivery is immediate: ``emit`` returns once every matching handler has run.
"""

from collections import deque
from typing import Optional, Dict, Any, Deque, Iterable, List, Callable, FrozenSet, Union
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import asyncio

from .logging import get_logger


logger = get_logger("offline-sync.notifications")

Handler = Callable[["Event"], Any]


class EventPriority(Enum):
    """Ordering of notifications by how loudly a display should show them."""
    LOW = 1
    NORMAL = 2
    HIGH = 3
    CRITICAL = 4


class EventCategory(Enum):
    """Which part of the engine a notification comes from."""
    CONNECTIVITY = "connectivity"
    SYNC = "sync"
    OPERATIONS = "operations"
    DRAFTS = "drafts"
    SYSTEM = "system"


@dataclass
class Event:
    """One published notification."""
    name: str
    category: EventCategory
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    priority: EventPriority = EventPriority.NORMAL
    source: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "category": self.category.value,
            "priority": self.priority.value,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
            "data": self.data,
            "metadata": self.metadata,
        }


def _as_set(value, single_type) -> Optional[FrozenSet]:
    if value is None:
        return None
    if isinstance(value, single_type):
        return frozenset([value])
    return frozenset(value)


@dataclass(eq=False)
class Subscription:
    """A handler plus the filters an event has to pass to reach it."""
    handler: Handler
    categories: Optional[FrozenSet[EventCategory]] = None
    event_names: Optional[FrozenSet[str]] = None
    priority_min: EventPriority = EventPriority.LOW
    is_async: bool = True
    filter_func: Optional[Callable[[Event], bool]] = None

    def matches(self, event: Event) -> bool:
        return (
            event.priority.value >= self.priority_min.value
            and (not self.categories or event.category in self.categories)
            and (not self.event_names or event.name in self.event_names)
            and (self.filter_func is None or bool(self.filter_func(event)))
        )


class EventBus:
    """Per-engine publish/subscribe with a bounded history."""

    def __init__(self, max_history: int = 500):
        self._subscriptions: List[Subscription] = []
        self._history: Deque[Event] = deque(maxlen=max_history)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        handler: Handler,
        categories: Optional[Union[EventCategory, Iterable[EventCategory]]] = None,
        event_names: Optional[Union[str, Iterable[str]]] = None,
        priority_min: EventPriority = EventPriority.LOW,
        is_async: Optional[bool] = None,
        filter_func: Optional[Callable[[Event], bool]] = None,
    ) -> Subscription:
        """
        Register ``handler`` for events passing every given filter.

        Args:
            handler: Called with the Event; plain or coroutine function
            categories: Restrict to these categories
            event_names: Restrict to these event names
            priority_min: Drop events below this priority
            is_async: Override coroutine detection for wrapped callables
            filter_func: Extra predicate on the Event

        Returns:
            The Subscription, which is the token for unsubscribe()
        """
        subscription = Subscription(
            handler=handler,
            categories=_as_set(categories, EventCategory),
            event_names=_as_set(event_names, str),
            priority_min=priority_min,
            is_async=asyncio.iscoroutinefunction(handler) if is_async is None else is_async,
            filter_func=filter_func,
        )
        self._subscriptions.append(subscription)
        logger.debug(
            "subscription_added",
            handler=getattr(handler, '__name__', repr(handler)),
            event_names=sorted(subscription.event_names) if subscription.event_names else None,
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Remove a subscription; False if it was not registered."""
        if subscription not in self._subscriptions:
            return False
        self._subscriptions.remove(subscription)
        logger.debug("subscription_removed")
        return True

    async def emit(
        self,
        name: str,
        category: EventCategory,
        data: Dict[str, Any],
        priority: EventPriority = EventPriority.NORMAL,
        source: Optional[str] = None,
        **metadata
    ) -> Event:
        """
        Publish an event and deliver it to every matching subscriber.

        Handler failures are logged and never reach the emitter.
        """
        event = Event(
            name=name,
            category=category,
            data=data,
            priority=priority,
            source=source,
            metadata=metadata,
        )
        self._history.append(event)
        logger.debug("event_emitted", event_name=name, category=category.value)

        # Louder subscribers first
        targets = sorted(
            (sub for sub in self._subscriptions if sub.matches(event)),
            key=lambda sub: sub.priority_min.value,
            reverse=True,
        )
        waiting = [self._deliver(sub, event) for sub in targets if sub.is_async]
        for sub in targets:
            if not sub.is_async:
                self._call(sub.handler, event)
        if waiting:
            await asyncio.gather(*waiting)
        return event

    def _call(self, handler: Handler, event: Event) -> None:
        try:
            handler(event)
        except Exception as e:
            self._log_failure(handler, event, e)

    async def _deliver(self, subscription: Subscription, event: Event) -> None:
        try:
            await subscription.handler(event)
        except Exception as e:
            self._log_failure(subscription.handler, event, e)

    @staticmethod
    def _log_failure(handler: Handler, event: Event, error: Exception) -> None:
        logger.error(
            "notification_handler_failed",
            handler=getattr(handler, '__name__', repr(handler)),
            event_name=event.name,
            error=str(error),
            exc_info=True,
        )

    def get_history(
        self,
        category: Optional[EventCategory] = None,
        event_name: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[Event]:
        """Past events, oldest first, optionally filtered; ``limit`` keeps the newest."""
        events = [
            event for event in self._history
            if (category is None or event.category == category)
            and (event_name is None or event.name == event_name)
            and (since is None or event.timestamp >= since)
        ]
        return events[-limit:] if limit else events

    async def wait_for(
        self,
        event_name: str,
        category: Optional[EventCategory] = None,
        timeout: Optional[float] = None,
        filter_func: Optional[Callable[[Event], bool]] = None
    ) -> Optional[Event]:
        """Next matching event, or None once ``timeout`` seconds pass."""
        arrived: asyncio.Future = asyncio.get_running_loop().create_future()

        def capture(event: Event) -> None:
            if not arrived.done():
                arrived.set_result(event)

        subscription = self.subscribe(
            capture,
            categories=category,
            event_names=event_name,
            is_async=False,
            filter_func=filter_func,
        )
        try:
            return await asyncio.wait_for(arrived, timeout=timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            self.unsubscribe(subscription)

    async def shutdown(self) -> None:
        """Drop all subscriptions and history."""
        self._subscriptions.clear()
        self._history.clear()
        logger.info("event_bus_shutdown")


__all__ = [
    'Event',
    'EventCategory',
    'EventPriority',
    'EventBus',
    'Subscription',
]
