"""
Operation log and recording contract.

Confirmed local mutations are appended to an in-memory queue in recording
order and written behind to the local store, so recording never waits on
(or fails because of) disk or network.
"""

import asyncio
import copy
import itertools
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from .timers import Clock, SystemClock, to_epoch_ms, from_epoch_ms
from .utils.logging import get_logger
from .utils.errors import ValidationError


logger = get_logger("offline-sync.operations")


class EntityType(str, Enum):
    NOTE = "note"
    JOURNAL = "journal"
    DOCUMENT = "document"
    POST = "post"


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class SyncOperation:
    """A recorded local mutation. Immutable once recorded."""
    op_id: str
    entity_type: EntityType
    entity_id: int
    kind: OperationKind
    payload: Mapping[str, Any]
    recorded_at: datetime
    sequence: int

    @property
    def order_key(self) -> Tuple[datetime, int]:
        return (self.recorded_at, self.sequence)

    def to_wire(self, device_id: str) -> Dict[str, Any]:
        """Change record as sent to the remote authority."""
        return {
            "id": self.op_id,
            "entityType": self.entity_type.value,
            "entityId": self.entity_id,
            "operation": self.kind.value,
            "timestamp": to_epoch_ms(self.recorded_at),
            "data": copy.deepcopy(dict(self.payload)),
            "deviceId": device_id,
        }

    def to_row(self) -> Dict[str, Any]:
        return {
            "op_id": self.op_id,
            "sequence": self.sequence,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "kind": self.kind.value,
            "payload": copy.deepcopy(dict(self.payload)),
            "recorded_at": to_epoch_ms(self.recorded_at),
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SyncOperation":
        return cls(
            op_id=row["op_id"],
            entity_type=EntityType(row["entity_type"]),
            entity_id=int(row["entity_id"]),
            kind=OperationKind(row["kind"]),
            payload=MappingProxyType(dict(row["payload"])),
            recorded_at=from_epoch_ms(row["recorded_at"]),
            sequence=int(row["sequence"]),
        )


def _coerce_entity_type(value: Union[EntityType, str]) -> EntityType:
    try:
        return EntityType(value)
    except ValueError:
        raise ValidationError(
            "entity_type", value, f"one of {', '.join(e.value for e in EntityType)}"
        ) from None


def _coerce_kind(value: Union[OperationKind, str]) -> OperationKind:
    try:
        return OperationKind(value)
    except ValueError:
        raise ValidationError(
            "kind", value, f"one of {', '.join(k.value for k in OperationKind)}"
        ) from None


class OperationStore:
    """Persistence used by the log; ``SyncStore`` satisfies it."""

    async def save_operation(self, row: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def delete_operations(self, op_ids: Iterable[str]) -> None:
        raise NotImplementedError

    async def load_operations(self) -> List[Dict[str, Any]]:
        raise NotImplementedError


class OperationLog:
    """
    Ordered queue of pending mutations.

    ``record`` is synchronous and only fails on invalid input. Writes to the
    store are chained so they land in the order they were issued; a failed
    write is logged and the in-memory queue stays authoritative. Writes issued
    with no running event loop are held until the next ``load`` or ``flush``.
    """

    def __init__(self, store: Optional[OperationStore] = None, clock: Optional[Clock] = None):
        self._store = store
        self._clock = clock or SystemClock()
        self._entries: List[SyncOperation] = []
        self._sequence = itertools.count(1)
        self._listeners: List[Callable[[SyncOperation], Any]] = []
        self._writes: Set[asyncio.Task] = set()
        self._last_write: Optional[asyncio.Task] = None
        self._queued: List[Tuple[str, Callable[[], Awaitable[None]]]] = []

    def __len__(self) -> int:
        return len(self._entries)

    def record(
        self,
        entity_type: Union[EntityType, str],
        entity_id: int,
        kind: Union[OperationKind, str],
        payload: Optional[Mapping[str, Any]] = None,
    ) -> SyncOperation:
        """Append a mutation to the queue and return it."""
        entity_type = _coerce_entity_type(entity_type)
        kind = _coerce_kind(kind)
        if isinstance(entity_id, bool) or not isinstance(entity_id, int):
            raise ValidationError("entity_id", entity_id, "an integer")
        if payload is not None and not isinstance(payload, Mapping):
            raise ValidationError("payload", payload, "a mapping")

        operation = SyncOperation(
            op_id=uuid.uuid4().hex,
            entity_type=entity_type,
            entity_id=entity_id,
            kind=kind,
            payload=MappingProxyType(copy.deepcopy(dict(payload or {}))),
            recorded_at=self._clock.now(),
            sequence=next(self._sequence),
        )
        self._entries.append(operation)

        logger.debug(
            "operation_recorded",
            op_id=operation.op_id,
            entity_type=entity_type.value,
            entity_id=entity_id,
            kind=kind.value,
            pending=len(self._entries),
        )

        if self._store is not None:
            row = operation.to_row()
            self._write_behind(lambda: self._store.save_operation(row), "save_operation")

        for listener in list(self._listeners):
            try:
                listener(operation)
            except Exception as e:
                logger.error(
                    "record_listener_failed",
                    listener=getattr(listener, '__name__', repr(listener)),
                    error=str(e)
                )

        return operation

    def pending_entries(self) -> Tuple[SyncOperation, ...]:
        """Pending operations, oldest first."""
        return tuple(self._entries)

    def acknowledge(self, entries: Iterable[SyncOperation]) -> int:
        """Remove exactly ``entries``; anything recorded since stays queued."""
        acked = {entry.op_id for entry in entries}
        if not acked:
            return 0

        before = len(self._entries)
        self._entries = [entry for entry in self._entries if entry.op_id not in acked]
        removed = before - len(self._entries)

        if self._store is not None and removed:
            ids = sorted(acked)
            self._write_behind(lambda: self._store.delete_operations(ids), "delete_operations")

        logger.debug("operations_acknowledged", removed=removed, pending=len(self._entries))
        return removed

    async def load(self) -> int:
        """Restore the durable queue. Returns the number of entries loaded."""
        if self._store is None:
            return 0

        await self.flush()
        rows = await self._store.load_operations()
        loaded = sorted((SyncOperation.from_row(row) for row in rows), key=lambda op: op.order_key)

        known = {entry.op_id for entry in self._entries}
        restored = [op for op in loaded if op.op_id not in known]
        self._entries = sorted(restored + self._entries, key=lambda op: op.order_key)

        highest = max((op.sequence for op in self._entries), default=0)
        self._sequence = itertools.count(highest + 1)

        logger.info("operations_loaded", count=len(restored))
        return len(restored)

    async def flush(self) -> None:
        """Write anything held back, then wait for outstanding persistence."""
        self._schedule_queued(asyncio.get_running_loop())
        while self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)

    def add_listener(self, listener: Callable[[SyncOperation], Any]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[SyncOperation], Any]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _write_behind(self, write: Callable[[], Awaitable[None]], action: str) -> None:
        self._queued.append((action, write))
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Written by the next load() or flush()
            logger.warning("persistence_deferred_no_event_loop", action=action, queued=len(self._queued))
            return
        self._schedule_queued(loop)

    def _schedule_queued(self, loop: asyncio.AbstractEventLoop) -> None:
        batch, self._queued = self._queued, []
        if not batch:
            return

        previous = self._last_write

        async def run() -> None:
            if previous is not None and not previous.done():
                await asyncio.wait([previous])
            for action, write in batch:
                try:
                    await write()
                except Exception as e:
                    logger.error("operation_persistence_failed", action=action, error=str(e))

        task = loop.create_task(run())
        self._last_write = task
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)


class SyncRecorder:
    """
    Recording contract for one entity type.

    Each call records locally first; with ``auto_sync`` it then asks for an
    immediate reconciliation.
    """

    def __init__(
        self,
        log: OperationLog,
        entity_type: Union[EntityType, str],
        auto_sync: bool = True,
        sync_now: Optional[Callable[[], Awaitable[Any]]] = None,
    ):
        self.log = log
        self.entity_type = _coerce_entity_type(entity_type)
        self.auto_sync = auto_sync
        self._sync_now = sync_now

    async def record_create(self, entity_id: int, data: Mapping[str, Any]) -> SyncOperation:
        return await self._record(entity_id, OperationKind.CREATE, data)

    async def record_update(self, entity_id: int, data: Mapping[str, Any]) -> SyncOperation:
        return await self._record(entity_id, OperationKind.UPDATE, data)

    async def record_delete(self, entity_id: int) -> SyncOperation:
        return await self._record(entity_id, OperationKind.DELETE, {"id": entity_id})

    async def _record(
        self,
        entity_id: int,
        kind: OperationKind,
        data: Mapping[str, Any]
    ) -> SyncOperation:
        operation = self.log.record(self.entity_type, entity_id, kind, data)
        if self.auto_sync and self._sync_now is not None:
            await self._sync_now()
        return operation


__all__ = [
    'EntityType',
    'OperationKind',
    'SyncOperation',
    'OperationStore',
    'OperationLog',
    'SyncRecorder',
]
