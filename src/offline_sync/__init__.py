"""
offline-sync: offline-first synchronization engine.

Tracks real connectivity, queues local mutations while disconnected,
reconciles them with a remote authority (one exchange at a time) and keeps
debounced drafts of in-progress edits.
"""

__version__ = "0.1.0"

from .client import HttpSyncClient, ReconciliationResult, RemoteChange, SyncClient
from .connectivity import (
    ConnectivityMonitor,
    ConnectivityState,
    HttpReachabilityProbe,
    PlatformNetwork,
    PlatformNetworkSignal,
)
from .drafts import Draft, DraftScope, DraftStore
from .engine import OfflineSyncEngine
from .operations import EntityType, OperationKind, OperationLog, SyncOperation, SyncRecorder
from .scheduler import SchedulerState, SyncOutcome, SyncScheduler, SyncState
from .storage import Database, SyncStore
from .timers import Clock, SystemClock, TimerService

__all__ = [
    "__version__",
    "OfflineSyncEngine",
    "HttpSyncClient",
    "ReconciliationResult",
    "RemoteChange",
    "SyncClient",
    "ConnectivityMonitor",
    "ConnectivityState",
    "HttpReachabilityProbe",
    "PlatformNetwork",
    "PlatformNetworkSignal",
    "Draft",
    "DraftScope",
    "DraftStore",
    "EntityType",
    "OperationKind",
    "OperationLog",
    "SyncOperation",
    "SyncRecorder",
    "SchedulerState",
    "SyncOutcome",
    "SyncScheduler",
    "SyncState",
    "Database",
    "SyncStore",
    "Clock",
    "SystemClock",
    "TimerService",
]
