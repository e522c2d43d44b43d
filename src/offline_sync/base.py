"""
Base component class for the offline sync engine.

This module provides the foundation for the engine's long-lived components:
- Lifecycle management (start/close)
- Observer registration and event notification
- Tracked background tasks
- Health checking
"""

from abc import ABC
from typing import Optional, Dict, Any, List, Callable, Set, Tuple
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from .utils.logging import get_logger
from .utils.errors import LifecycleError, ValidationError


class ComponentState(Enum):
    """Component lifecycle states."""
    UNINITIALIZED = "uninitialized"
    RUNNING = "running"
    CLOSED = "closed"
    ERROR = "error"


@dataclass
class HealthStatus:
    """Health status information."""
    healthy: bool
    last_check: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class BaseComponent(ABC):
    """
    Base class for engine components.

    Subclasses list the events they publish in ``EVENTS`` and override the
    ``_start``/``_close``/``_health_check`` hooks. Event handlers receive
    ``(event, data)`` and may be plain or coroutine functions.
    """

    EVENTS: Tuple[str, ...] = ()

    def __init__(self, name: str):
        self.name = name
        self.logger = get_logger(f"offline-sync.{name}")
        self.state = ComponentState.UNINITIALIZED
        self._event_handlers: Dict[str, List[Callable]] = {}
        self._tasks: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self.state == ComponentState.RUNNING

    @property
    def is_closed(self) -> bool:
        return self.state == ComponentState.CLOSED

    async def start(self) -> None:
        """Start the component."""
        if self.state == ComponentState.RUNNING:
            raise LifecycleError(f"{self.name} already running")
        if self.state == ComponentState.CLOSED:
            raise LifecycleError(f"{self.name} is closed")

        self.logger.info("starting_component")
        try:
            await self._start()
        except Exception as e:
            self.state = ComponentState.ERROR
            self.logger.error("start_failed", error=str(e), exc_info=True)
            raise LifecycleError(f"Failed to start {self.name}: {e}", cause=e) from e

        self.state = ComponentState.RUNNING
        self.logger.info("component_started")

    async def close(self) -> None:
        """
        Close the component.

        The closed state is entered before any cleanup runs, so work that
        completes during teardown sees it and discards its result.
        """
        if self.state == ComponentState.CLOSED:
            return

        self.state = ComponentState.CLOSED
        self.logger.info("closing_component")

        try:
            await self._close()
        finally:
            for task in list(self._tasks):
                if not task.done():
                    task.cancel()
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks.clear()
            self._event_handlers.clear()

        self.logger.info("component_closed")

    async def health_check(self) -> HealthStatus:
        """Report current health of the component."""
        try:
            details = await self._health_check()
            details.setdefault("state", self.state.value)
            return HealthStatus(
                healthy=self.state == ComponentState.RUNNING,
                last_check=datetime.now(timezone.utc),
                details=details
            )
        except Exception as e:
            self.logger.error("health_check_failed", error=str(e))
            return HealthStatus(
                healthy=False,
                last_check=datetime.now(timezone.utc),
                error=str(e)
            )

    def subscribe(self, event: str, handler: Callable) -> None:
        """Register an event handler."""
        if event not in self.EVENTS:
            raise ValidationError("event", event, f"one of {', '.join(self.EVENTS)}")
        self._event_handlers.setdefault(event, []).append(handler)
        self.logger.debug("event_handler_registered", event_type=event)

    def unsubscribe(self, event: str, handler: Callable) -> None:
        """Unregister an event handler; unknown handlers are ignored."""
        handlers = self._event_handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)
            self.logger.debug("event_handler_unregistered", event_type=event)

    async def _notify_event(self, event: str, data: Dict[str, Any]) -> None:
        """Notify all handlers of an event."""
        for handler in list(self._event_handlers.get(event, [])):
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(event, data)
                else:
                    handler(event, data)
            except Exception as e:
                self.logger.error(
                    "event_handler_error",
                    event_type=event,
                    handler=getattr(handler, '__name__', repr(handler)),
                    error=str(e)
                )

    def _track(self, coro) -> asyncio.Task:
        """Run a coroutine as a task owned by this component."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _start(self) -> None:
        """Component-specific start logic."""

    async def _close(self) -> None:
        """Component-specific teardown logic."""

    async def _health_check(self) -> Dict[str, Any]:
        """Component-specific health details."""
        return {}


__all__ = [
    'BaseComponent',
    'ComponentState',
    'HealthStatus',
]
