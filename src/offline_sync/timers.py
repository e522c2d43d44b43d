"""
Clock and cancellable timers on the running asyncio loop.

Every delay handled here is expressed in time units; ``TimerService``
multiplies by its ``time_unit`` (seconds) before handing it to the loop.
"""

import asyncio
import inspect
import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol, Set

from .utils.logging import get_logger


logger = get_logger("offline-sync.timers")


class Clock(Protocol):
    """Source of the current time."""

    def now(self) -> datetime:
        """Timezone-aware UTC now."""
        ...


class SystemClock:
    """Wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    """Datetime to integer milliseconds since the epoch."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: float) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


_ids = itertools.count(1)


@dataclass(eq=False)
class TimerHandle:
    """A scheduled one-shot or periodic callback."""
    name: str
    delay: float
    callback: Callable[[], Any]
    periodic: bool = False
    timer_id: int = field(default_factory=lambda: next(_ids))
    fired: int = 0
    cancelled: bool = False
    _loop_handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return not self.cancelled and self._loop_handle is not None


class TimerService:
    """
    One cancellable-timer abstraction for debounce, settle and periodic work.

    Callbacks may be plain or coroutine functions. Coroutines run as tracked
    tasks; exceptions from either kind are logged and never reach the loop.
    """

    def __init__(self, time_unit: float = 1.0):
        if time_unit <= 0:
            raise ValueError("time_unit must be positive")
        self.time_unit = time_unit
        self._timers: Set[TimerHandle] = set()
        self._tasks: Set[asyncio.Task] = set()

    def seconds(self, units: float) -> float:
        """Convert time units to seconds."""
        return units * self.time_unit

    @property
    def pending(self) -> int:
        """Number of live timers."""
        return len(self._timers)

    def schedule(
        self,
        delay: float,
        callback: Callable[[], Any],
        name: Optional[str] = None
    ) -> TimerHandle:
        """Run ``callback`` once after ``delay`` time units."""
        handle = TimerHandle(
            name=name or getattr(callback, '__name__', 'timer'),
            delay=delay,
            callback=callback,
        )
        self._arm(handle)
        return handle

    def schedule_periodic(
        self,
        interval: float,
        callback: Callable[[], Any],
        name: Optional[str] = None
    ) -> TimerHandle:
        """Run ``callback`` every ``interval`` time units until cancelled."""
        if interval <= 0:
            raise ValueError("interval must be positive")
        handle = TimerHandle(
            name=name or getattr(callback, '__name__', 'periodic'),
            delay=interval,
            callback=callback,
            periodic=True,
        )
        self._arm(handle)
        return handle

    def cancel(self, handle: Optional[TimerHandle]) -> None:
        """Cancel a timer. Cancelling twice, or after it fired, is a no-op."""
        if handle is None or handle.cancelled:
            return
        handle.cancelled = True
        if handle._loop_handle is not None:
            handle._loop_handle.cancel()
            handle._loop_handle = None
        self._timers.discard(handle)

    def cancel_all(self) -> None:
        """Cancel every live timer."""
        for handle in list(self._timers):
            self.cancel(handle)
        logger.debug("timers_cancelled")

    async def join(self) -> None:
        """Wait for callback tasks that are already running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel all timers and any callback task still running."""
        self.cancel_all()
        for task in list(self._tasks):
            task.cancel()
        await self.join()

    def _arm(self, handle: TimerHandle) -> None:
        loop = asyncio.get_running_loop()
        handle._loop_handle = loop.call_later(self.seconds(handle.delay), self._fire, handle)
        self._timers.add(handle)

    def _fire(self, handle: TimerHandle) -> None:
        if handle.cancelled:
            return

        handle.fired += 1
        if handle.periodic:
            self._arm(handle)
        else:
            handle._loop_handle = None
            self._timers.discard(handle)

        try:
            result = handle.callback()
        except Exception as e:
            logger.error("timer_callback_failed", timer=handle.name, error=str(e), exc_info=True)
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(lambda t: self._task_done(handle, t))

    def _task_done(self, handle: TimerHandle, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "timer_task_failed",
                timer=handle.name,
                error=str(error),
                error_type=type(error).__name__,
            )


__all__ = [
    'Clock',
    'SystemClock',
    'TimerHandle',
    'TimerService',
    'to_epoch_ms',
    'from_epoch_ms',
]
