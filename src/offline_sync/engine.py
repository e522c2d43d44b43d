"""
Engine facade.

Wires the connectivity monitor, operation log, scheduler and draft store to
one local store and one event bus, and exposes the surface the UI layer
calls: recording, manual sync, drafts and status reads.
"""

import asyncio
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set, Union

from .client import HttpSyncClient, SyncClient
from .connectivity import (
    ConnectivityMonitor,
    ConnectivityState,
    HttpReachabilityProbe,
    PlatformNetwork,
    PlatformNetworkSignal,
    ReachabilityProbe,
)
from .drafts import DraftStore
from .operations import EntityType, OperationKind, OperationLog, SyncOperation, SyncRecorder
from .scheduler import ChangeHandler, SyncOutcome, SyncScheduler, SyncState
from .storage import SyncStore
from .timers import Clock, SystemClock, TimerService
from .utils.config import ConfigLoader, SyncConfig, load_config
from .utils.errors import LifecycleError, error_context
from .utils.logging import get_logger, log_function_call, setup_logging
from .utils.notifications import EventBus, EventCategory, EventPriority


logger = get_logger("offline-sync.engine")


_CATEGORIES = {
    "reconnected": EventCategory.CONNECTIVITY,
    "offline": EventCategory.CONNECTIVITY,
    "connectivity_lost": EventCategory.CONNECTIVITY,
    "sync_started": EventCategory.SYNC,
    "sync_completed": EventCategory.SYNC,
    "sync_warning": EventCategory.SYNC,
    "remote_changes": EventCategory.SYNC,
    "draft_saved": EventCategory.DRAFTS,
    "draft_cleared": EventCategory.DRAFTS,
}


class OfflineSyncEngine:
    """
    Offline-first sync engine.

    Collaborators default to the HTTP implementations built from ``config``;
    pass them explicitly to replace the network, the platform source or the
    clock.
    """

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        *,
        client: Optional[SyncClient] = None,
        probe: Optional[ReachabilityProbe] = None,
        platform: Optional[PlatformNetwork] = None,
        store: Optional[SyncStore] = None,
        clock: Optional[Clock] = None,
        timers: Optional[TimerService] = None,
        event_bus: Optional[EventBus] = None,
        change_handler: Optional[ChangeHandler] = None,
    ):
        self.config = config or SyncConfig()
        self.clock = clock or SystemClock()
        self.timers = timers or TimerService(self.config.time_unit)
        self.store = store or SyncStore.open(self.config.storage.path)
        self.platform = platform or PlatformNetworkSignal(online=True)
        self.events = event_bus or EventBus()

        conn = self.config.connectivity
        sched = self.config.scheduler

        self._owns_client = client is None
        self.client = client or HttpSyncClient(
            conn.base_url,
            changes_path=sched.changes_path,
            timeout=self.timers.seconds(sched.sync_timeout),
            clock=self.clock,
        )
        probe = probe or HttpReachabilityProbe(
            conn.base_url,
            ping_path=conn.ping_path,
            timeout=self.timers.seconds(conn.probe_timeout),
            clock=self.clock,
        )

        self.operations = OperationLog(store=self.store, clock=self.clock)
        self.connectivity = ConnectivityMonitor(
            probe,
            self.platform,
            self.timers,
            clock=self.clock,
            probe_interval=conn.probe_interval,
            probe_timeout=conn.probe_timeout,
        )
        self.drafts = DraftStore(
            self.store,
            self.timers,
            clock=self.clock,
            debounce=self.config.drafts.debounce,
        )
        self.scheduler: Optional[SyncScheduler] = None

        self._change_handler = change_handler
        self._device_id: Optional[str] = None
        self._loader: Optional[ConfigLoader] = None
        self._event_tasks: Set[asyncio.Task] = set()
        self._started = False
        self._closed = False

    @classmethod
    def from_config(
        cls,
        config_paths: Optional[List[Union[str, Path]]] = None,
        extra_config: Optional[Dict[str, Any]] = None,
        configure_logging: bool = False,
        **kwargs
    ) -> "OfflineSyncEngine":
        """Build an engine from the standard config locations plus overrides."""
        loader = ConfigLoader()
        config = load_config(config_paths, extra_config, loader=loader)

        if configure_logging:
            setup_logging(
                app_name=config.app_name,
                log_level=config.logging.level,
                log_dir=config.logging.directory,
                enable_json=config.logging.format == "json",
                enable_sentry=config.logging.enable_sentry,
                sentry_dsn=config.logging.sentry_dsn,
            )

        engine = cls(config, **kwargs)
        engine._loader = loader
        loader.register_callback(engine.apply_config)
        return engine

    # Lifecycle

    @log_function_call(logger)
    async def start(self) -> None:
        if self._closed:
            raise LifecycleError("Engine is closed")
        if self._started:
            raise LifecycleError("Engine already started")

        with error_context("engine", "start", path=str(self.store.db.db_path)):
            await self.store.initialize()
            self._device_id = await self.store.get_or_create_device_id(self.clock)
            last_sync = await self.store.get_last_sync()
            await self.operations.load()

        sched = self.config.scheduler
        self.scheduler = SyncScheduler(
            self.operations,
            self.client,
            self.connectivity,
            self.timers,
            self._device_id,
            clock=self.clock,
            store=self.store,
            change_handler=self._change_handler,
            settle_delay=sched.settle_delay,
            sync_interval=sched.sync_interval,
            sync_timeout=sched.sync_timeout,
            last_sync_timestamp=last_sync,
        )

        self._forward(self.connectivity)
        self._forward(self.scheduler)
        self._forward(self.drafts)
        self.operations.add_listener(self._on_recorded)
        if self._loader is not None:
            self._loader.attach_loop(asyncio.get_running_loop())

        await self.drafts.start()
        await self.scheduler.start()
        await self.connectivity.start()

        self._started = True
        logger.info(
            "engine_started",
            device_id=self._device_id,
            pending=len(self.operations),
            last_sync_timestamp=last_sync.isoformat() if last_sync else None,
        )

    async def close(self) -> None:
        """Flush drafts and queued writes, then release every resource."""
        if self._closed:
            return
        self._closed = True

        await self.drafts.close()
        if self.scheduler is not None:
            await self.scheduler.close()
        await self.connectivity.close()
        await self.timers.aclose()
        await self.operations.flush()

        if self._event_tasks:
            await asyncio.gather(*list(self._event_tasks), return_exceptions=True)
        await self.events.shutdown()

        if self._owns_client:
            await self.client.close()
        await self.store.close()
        if self._loader is not None:
            self._loader.shutdown()

        logger.info("engine_closed")

    async def __aenter__(self) -> "OfflineSyncEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # Recording

    async def record_create(
        self,
        entity_type: Union[EntityType, str],
        entity_id: int,
        data: Mapping[str, Any],
        auto_sync: Optional[bool] = None,
    ) -> SyncOperation:
        return await self._record(entity_type, entity_id, OperationKind.CREATE, data, auto_sync)

    async def record_update(
        self,
        entity_type: Union[EntityType, str],
        entity_id: int,
        data: Mapping[str, Any],
        auto_sync: Optional[bool] = None,
    ) -> SyncOperation:
        return await self._record(entity_type, entity_id, OperationKind.UPDATE, data, auto_sync)

    async def record_delete(
        self,
        entity_type: Union[EntityType, str],
        entity_id: int,
        data: Optional[Mapping[str, Any]] = None,
        auto_sync: Optional[bool] = None,
    ) -> SyncOperation:
        payload = data if data is not None else {"id": entity_id}
        return await self._record(entity_type, entity_id, OperationKind.DELETE, payload, auto_sync)

    def recorder(
        self,
        entity_type: Union[EntityType, str],
        auto_sync: Optional[bool] = None
    ) -> SyncRecorder:
        """Recording contract bound to one entity type."""
        if auto_sync is None:
            auto_sync = self.config.scheduler.auto_sync
        return SyncRecorder(self.operations, entity_type, auto_sync=auto_sync, sync_now=self.sync_now)

    async def _record(
        self,
        entity_type: Union[EntityType, str],
        entity_id: int,
        kind: OperationKind,
        data: Mapping[str, Any],
        auto_sync: Optional[bool],
    ) -> SyncOperation:
        operation = self.operations.record(entity_type, entity_id, kind, data)
        if auto_sync is None:
            auto_sync = self.config.scheduler.auto_sync
        if auto_sync and self._started:
            await self.sync_now()
        return operation

    async def sync_now(self) -> SyncOutcome:
        if self._closed:
            return SyncOutcome.SKIPPED_CLOSED
        if self.scheduler is None:
            raise LifecycleError("Engine not started")
        return await self.scheduler.sync_now()

    # Status

    @property
    def device_id(self) -> Optional[str]:
        return self._device_id

    @property
    def is_syncing(self) -> bool:
        return self.scheduler is not None and self.scheduler.is_syncing

    @property
    def last_sync_timestamp(self) -> Optional[datetime]:
        return self.scheduler.last_sync_timestamp if self.scheduler else None

    def time_since_last_sync(self) -> Optional[timedelta]:
        return self.scheduler.time_since_last_sync() if self.scheduler else None

    @property
    def is_online(self) -> bool:
        return self.connectivity.is_online

    @property
    def has_connectivity(self) -> bool:
        return self.connectivity.has_connectivity

    @property
    def pending_count(self) -> int:
        return len(self.operations)

    def connectivity_state(self) -> ConnectivityState:
        return self.connectivity.current_state()

    def sync_state(self) -> Optional[SyncState]:
        return self.scheduler.sync_state() if self.scheduler else None

    async def health_check(self) -> Dict[str, Any]:
        components = [self.connectivity, self.drafts]
        if self.scheduler is not None:
            components.append(self.scheduler)
        report = {}
        for component in components:
            status = await component.health_check()
            report[component.name] = {
                "healthy": status.healthy,
                "details": status.details,
                "error": status.error,
            }
        report["timers"] = {"pending": self.timers.pending}
        return report

    # Configuration

    def apply_config(self, config: SyncConfig) -> None:
        """
        Apply reloaded timing settings.

        Periodic timers are re-armed with the new intervals right away; delays
        and timeouts apply from the next settle, debounce or exchange.
        """
        self.config = config
        self.connectivity.probe_timeout = config.connectivity.probe_timeout
        self.connectivity.reschedule(config.connectivity.probe_interval)
        self.drafts.debounce = config.drafts.debounce
        if self.scheduler is not None:
            self.scheduler.settle_delay = config.scheduler.settle_delay
            self.scheduler.sync_timeout = config.scheduler.sync_timeout
            self.scheduler.reschedule(config.scheduler.sync_interval)
        logger.info("configuration_applied")

    # Notifications

    def _forward(self, component) -> None:
        for event in component.EVENTS:
            component.subscribe(event, self._publish)

    async def _publish(self, event: str, data: Dict[str, Any]) -> None:
        priority = EventPriority.HIGH if event == "sync_warning" else EventPriority.NORMAL
        await self.events.emit(
            event,
            _CATEGORIES.get(event, EventCategory.SYSTEM),
            dict(data),
            priority=priority,
            source="offline-sync",
        )

    def _on_recorded(self, operation: SyncOperation) -> None:
        task = asyncio.ensure_future(self.events.emit(
            "operation_recorded",
            EventCategory.OPERATIONS,
            {
                "op_id": operation.op_id,
                "entity_type": operation.entity_type.value,
                "entity_id": operation.entity_id,
                "kind": operation.kind.value,
                "pending": len(self.operations),
            },
            source="offline-sync",
        ))
        self._event_tasks.add(task)
        task.add_done_callback(self._event_tasks.discard)


__all__ = ['OfflineSyncEngine']
