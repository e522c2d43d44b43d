"""
Sync scheduler.

Decides when reconciliation runs and guarantees at most one exchange in
flight. Triggers:

- connectivity regained, after a settle delay
- a periodic timer
- manual ``sync_now()``

A trigger that finds a reconciliation in flight is dropped; one that finds
no connectivity is refused without an attempt and without a failure report.
Closing waits up to ``sync_timeout`` for a remote call already in flight;
its result is then discarded.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional

from .base import BaseComponent
from .client import RemoteChange, ReconciliationResult, SyncClient
from .connectivity import ConnectivityMonitor
from .operations import OperationLog
from .storage import SyncStore
from .timers import Clock, SystemClock, TimerHandle, TimerService
from .utils.errors import LifecycleError, PersistenceError


SYNC_WARNING_MESSAGE = "Some changes could not be synchronized."

ChangeHandler = Callable[[RemoteChange], Any]


class SchedulerState(Enum):
    IDLE = "idle"
    SYNCING = "syncing"


class SyncOutcome(str, Enum):
    """What a trigger resulted in."""
    SYNCED = "synced"
    FAILED = "failed"
    SKIPPED_BUSY = "skipped_busy"
    SKIPPED_OFFLINE = "skipped_offline"
    SKIPPED_CLOSED = "skipped_closed"


@dataclass(frozen=True)
class SyncState:
    device_id: str
    last_sync_timestamp: Optional[datetime]
    is_syncing: bool


class SyncScheduler(BaseComponent):
    """
    Reconciliation state machine.

    Events (handlers receive ``(event, data)``):
        sync_started: an exchange is about to be made
        sync_completed: an exchange succeeded and the snapshot was acknowledged
        sync_warning: an exchange failed; the queue is untouched
        remote_changes: changes pulled from other devices were applied
    """

    EVENTS = ("sync_started", "sync_completed", "sync_warning", "remote_changes")

    def __init__(
        self,
        log: OperationLog,
        client: SyncClient,
        connectivity: ConnectivityMonitor,
        timers: TimerService,
        device_id: str,
        clock: Optional[Clock] = None,
        store: Optional[SyncStore] = None,
        change_handler: Optional[ChangeHandler] = None,
        settle_delay: float = 2.0,
        sync_interval: float = 300.0,
        sync_timeout: float = 30.0,
        last_sync_timestamp: Optional[datetime] = None,
    ):
        super().__init__("scheduler")
        self._log = log
        self._client = client
        self._connectivity = connectivity
        self._timers = timers
        self._clock = clock or SystemClock()
        self._store = store
        self._change_handler = change_handler
        self.device_id = device_id
        self.settle_delay = settle_delay
        self.sync_interval = sync_interval
        self.sync_timeout = sync_timeout

        self._state = SchedulerState.IDLE
        self._last_sync_timestamp = last_sync_timestamp
        self._settle_timer: Optional[TimerHandle] = None
        self._periodic_timer: Optional[TimerHandle] = None
        self._attempts = 0
        self._failures = 0

    @property
    def scheduler_state(self) -> SchedulerState:
        return self._state

    @property
    def is_syncing(self) -> bool:
        return self._state is SchedulerState.SYNCING

    @property
    def last_sync_timestamp(self) -> Optional[datetime]:
        return self._last_sync_timestamp

    def sync_state(self) -> SyncState:
        return SyncState(
            device_id=self.device_id,
            last_sync_timestamp=self._last_sync_timestamp,
            is_syncing=self.is_syncing,
        )

    def time_since_last_sync(self) -> Optional[timedelta]:
        """Age of the last successful sync, for display only."""
        if self._last_sync_timestamp is None:
            return None
        return max(self._clock.now() - self._last_sync_timestamp, timedelta(0))

    async def sync_now(self) -> SyncOutcome:
        """Manual trigger."""
        return await self._attempt("manual")

    async def _attempt(self, trigger: str) -> SyncOutcome:
        if self.is_closed:
            return SyncOutcome.SKIPPED_CLOSED
        if self._state is SchedulerState.SYNCING:
            self.logger.debug("sync_trigger_dropped", trigger=trigger)
            return SyncOutcome.SKIPPED_BUSY
        if not self._connectivity.has_connectivity:
            self.logger.debug("sync_refused_offline", trigger=trigger)
            return SyncOutcome.SKIPPED_OFFLINE

        # Check-and-set above has no suspension point before this line
        self._state = SchedulerState.SYNCING
        self._attempts += 1
        snapshot = self._log.pending_entries()
        since = self._last_sync_timestamp

        try:
            self.logger.info("sync_started", trigger=trigger, pending=len(snapshot))
            await self._notify_event("sync_started", {"trigger": trigger, "pending": len(snapshot)})

            result = await self._exchange(snapshot)

            if self.is_closed:
                self.logger.info("sync_result_discarded", success=result.success)
                return SyncOutcome.SKIPPED_CLOSED

            if not result.success:
                self._failures += 1
                self.logger.warning(
                    "sync_failed",
                    trigger=trigger,
                    reason=result.message,
                    status=result.status,
                    pending=len(self._log),
                )
                warning = self._warning_data(trigger, result.message)
            else:
                acknowledged = self._log.acknowledge(snapshot)
                self._last_sync_timestamp = result.last_sync_timestamp or self._clock.now()
                await self._persist_last_sync()

                pull_error = await self._pull(since)
                if self.is_closed:
                    return SyncOutcome.SKIPPED_CLOSED

                self.logger.info(
                    "sync_completed",
                    trigger=trigger,
                    acknowledged=acknowledged,
                    last_sync_timestamp=self._last_sync_timestamp.isoformat(),
                )
                await self._notify_event("sync_completed", {
                    "trigger": trigger,
                    "acknowledged": acknowledged,
                    "last_sync_timestamp": self._last_sync_timestamp,
                })

                if pull_error is None:
                    return SyncOutcome.SYNCED

                self._failures += 1
                warning = self._warning_data(trigger, pull_error)
        finally:
            self._state = SchedulerState.IDLE

        await self._notify_event("sync_warning", warning)
        return SyncOutcome.FAILED

    async def _remote(self, call: Awaitable) -> Any:
        """
        Await a client call within ``sync_timeout``.

        The call runs as a task owned by the scheduler and is shielded from
        cancellation of the trigger, so teardown can let it finish.
        """
        task = self._track(call)
        try:
            return await asyncio.wait_for(
                asyncio.shield(task),
                timeout=self._timers.seconds(self.sync_timeout)
            )
        except asyncio.TimeoutError:
            task.cancel()
            raise
        except asyncio.CancelledError:
            if self.is_closed and task.cancelled():
                raise LifecycleError("Scheduler closed before the remote call finished")
            raise

    async def _exchange(self, snapshot) -> ReconciliationResult:
        try:
            return await self._remote(self._client.push(self.device_id, snapshot))
        except asyncio.TimeoutError:
            return ReconciliationResult.failure("Reconciliation timed out")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error("sync_client_error", error=str(e), error_type=type(e).__name__)
            return ReconciliationResult.failure(str(e))

    async def _pull(self, since: Optional[datetime]) -> Optional[str]:
        """Apply remote changes. Returns an error description on failure."""
        if self._change_handler is None:
            return None

        try:
            changes = await self._remote(self._client.pull(self.device_id, since))
        except asyncio.TimeoutError:
            self.logger.warning("pull_timed_out")
            return "Pull timed out"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.warning("pull_failed", error=str(e))
            return str(e)

        if self.is_closed:
            return None

        remote = sorted(
            (change for change in changes if change.device_id != self.device_id),
            key=lambda change: change.timestamp
        )
        applied = 0
        for change in remote:
            try:
                result = self._change_handler(change)
                if asyncio.iscoroutine(result):
                    await result
                applied += 1
            except Exception as e:
                self.logger.error(
                    "remote_change_failed",
                    change_id=change.id,
                    entity_type=change.entity_type.value,
                    entity_id=change.entity_id,
                    error=str(e)
                )

        if remote:
            self.logger.info("remote_changes_applied", applied=applied, received=len(changes))
            await self._notify_event("remote_changes", {"applied": applied, "received": len(changes)})
        return None

    async def _persist_last_sync(self) -> None:
        if self._store is None:
            return
        try:
            await self._store.set_last_sync(self._last_sync_timestamp)
        except PersistenceError as e:
            self.logger.error("last_sync_persist_failed", error=str(e))

    def _warning_data(self, trigger: str, reason: Optional[str]) -> Dict[str, Any]:
        return {
            "message": SYNC_WARNING_MESSAGE,
            "reason": reason,
            "trigger": trigger,
            "pending": len(self._log),
        }

    async def _on_reconnected(self, event: str, data: Dict[str, Any]) -> None:
        self._cancel_settle()
        self._settle_timer = self._timers.schedule(
            self.settle_delay, self._settled, name="sync_settle"
        )
        self.logger.debug("sync_settle_scheduled", delay=self.settle_delay)

    async def _on_connectivity_gone(self, event: str, data: Dict[str, Any]) -> None:
        if self._settle_timer is not None:
            self.logger.debug("sync_settle_cancelled", reason=event)
        self._cancel_settle()

    async def _settled(self) -> SyncOutcome:
        self._settle_timer = None
        return await self._attempt("reconnected")

    def _cancel_settle(self) -> None:
        self._timers.cancel(self._settle_timer)
        self._settle_timer = None

    async def _start(self) -> None:
        self._connectivity.subscribe("reconnected", self._on_reconnected)
        self._connectivity.subscribe("offline", self._on_connectivity_gone)
        self._connectivity.subscribe("connectivity_lost", self._on_connectivity_gone)
        self._periodic_timer = self._timers.schedule_periodic(
            self.sync_interval, partial(self._attempt, "periodic"), name="sync_periodic"
        )

    async def _close(self) -> None:
        self._connectivity.unsubscribe("reconnected", self._on_reconnected)
        self._connectivity.unsubscribe("offline", self._on_connectivity_gone)
        self._connectivity.unsubscribe("connectivity_lost", self._on_connectivity_gone)
        self._cancel_settle()
        self._timers.cancel(self._periodic_timer)
        self._periodic_timer = None

        running = [task for task in self._tasks if not task.done()]
        if running:
            self.logger.info("waiting_for_remote_call", count=len(running))
            _, unfinished = await asyncio.wait(
                running, timeout=self._timers.seconds(self.sync_timeout)
            )
            if unfinished:
                self.logger.warning("remote_call_abandoned", count=len(unfinished))

    def reschedule(self, sync_interval: float) -> None:
        """Change the periodic sync interval; a running timer is re-armed."""
        self.sync_interval = sync_interval
        if self._periodic_timer is None:
            return
        self._timers.cancel(self._periodic_timer)
        self._periodic_timer = self._timers.schedule_periodic(
            self.sync_interval, partial(self._attempt, "periodic"), name="sync_periodic"
        )
        self.logger.debug("sync_periodic_rescheduled", interval=sync_interval)

    async def _health_check(self) -> Dict[str, Any]:
        return {
            "scheduler_state": self._state.value,
            "attempts": self._attempts,
            "failures": self._failures,
            "pending": len(self._log),
            "last_sync_timestamp": (
                self._last_sync_timestamp.isoformat() if self._last_sync_timestamp else None
            ),
        }


__all__ = [
    'SyncScheduler',
    'SchedulerState',
    'SyncOutcome',
    'SyncState',
    'SYNC_WARNING_MESSAGE',
]
