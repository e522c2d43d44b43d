"""
Debounced drafts of in-progress edits.

Drafts live beside confirmed data but are never transmitted. Each scope
keeps at most one draft; saving is debounced so only the last edit in a
quiet window reaches the store.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Any, Dict, Optional, Union

from .base import BaseComponent
from .storage import SyncStore
from .timers import Clock, SystemClock, TimerHandle, TimerService
from .utils.errors import ErrorSeverity, PersistenceError, ValidationError, handle_errors


NEW = "new"


@dataclass(frozen=True)
class DraftScope:
    """Where a draft belongs: an entity type (or editor scope) and an id."""
    scope_type: str
    entity_id: Union[int, str] = NEW

    def __post_init__(self):
        scope_type = getattr(self.scope_type, "value", self.scope_type)
        if not isinstance(scope_type, str) or not scope_type:
            raise ValidationError("scope_type", self.scope_type, "a non-empty string")
        object.__setattr__(self, "scope_type", scope_type)

    @property
    def key(self) -> str:
        return SyncStore.draft_key(self.scope_type, self.entity_id)


@dataclass(frozen=True)
class Draft:
    scope: DraftScope
    content: str
    saved_at: datetime


class DraftStore(BaseComponent):
    """
    Per-scope debounced draft persistence.

    ``save`` is synchronous and schedules the write; ``flush`` writes pending
    content immediately. Persistence failures are logged, not raised.
    """

    EVENTS = ("draft_saved", "draft_cleared")

    def __init__(
        self,
        store: SyncStore,
        timers: TimerService,
        clock: Optional[Clock] = None,
        debounce: float = 2.0,
    ):
        super().__init__("drafts")
        self._store = store
        self._timers = timers
        self._clock = clock or SystemClock()
        self.debounce = debounce
        self._pending: Dict[str, tuple] = {}
        self._timers_by_key: Dict[str, TimerHandle] = {}
        self._lock = asyncio.Lock()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def save(self, scope: DraftScope, content: str) -> None:
        """Schedule ``content`` as the draft for ``scope``. Empty content is ignored."""
        if not content:
            return
        if self.is_closed:
            self.logger.warning("draft_save_after_close", scope=scope.key)
            return

        key = scope.key
        self._timers.cancel(self._timers_by_key.pop(key, None))
        self._pending[key] = (scope, content)
        self._timers_by_key[key] = self._timers.schedule(
            self.debounce, partial(self._persist, key), name=f"draft:{key}"
        )

    @handle_errors(PersistenceError, reraise=False, log_level=ErrorSeverity.WARNING)
    async def load(self, scope: DraftScope) -> Optional[str]:
        """
        Content to restore for ``scope``.

        Unwritten content from a pending save wins over the stored draft.
        """
        pending = self._pending.get(scope.key)
        if pending is not None:
            return pending[1]

        stored = await self._store.load_draft(scope.key)
        return stored[0] if stored else None

    @handle_errors(PersistenceError, reraise=False, log_level=ErrorSeverity.WARNING)
    async def load_draft(self, scope: DraftScope) -> Optional[Draft]:
        """The stored draft with its save time."""
        stored = await self._store.load_draft(scope.key)
        if stored is None:
            return None
        return Draft(scope=scope, content=stored[0], saved_at=stored[1])

    async def clear(self, scope: DraftScope) -> None:
        """Discard the draft for ``scope``, including any pending save."""
        key = scope.key
        self._timers.cancel(self._timers_by_key.pop(key, None))
        self._pending.pop(key, None)

        async with self._lock:
            try:
                await self._store.delete_draft(key)
            except PersistenceError as e:
                self.logger.error("draft_clear_failed", scope=key, error=str(e))
                return

        self.logger.debug("draft_cleared", scope=key)
        await self._notify_event("draft_cleared", {"scope": key})

    async def clear_all(self) -> int:
        """Discard every draft. Returns the number of stored drafts removed."""
        for handle in self._timers_by_key.values():
            self._timers.cancel(handle)
        self._timers_by_key.clear()
        self._pending.clear()

        async with self._lock:
            try:
                removed = await self._store.delete_all_drafts()
            except PersistenceError as e:
                self.logger.error("draft_clear_all_failed", error=str(e))
                return 0

        self.logger.info("drafts_cleared", removed=removed)
        await self._notify_event("draft_cleared", {"scope": None, "removed": removed})
        return removed

    async def flush(self) -> None:
        """Persist every pending save now."""
        for key in list(self._pending):
            self._timers.cancel(self._timers_by_key.pop(key, None))
            await self._persist(key)

    async def _persist(self, key: str) -> None:
        async with self._lock:
            pending = self._pending.pop(key, None)
            self._timers_by_key.pop(key, None)
            if pending is None:
                return

            scope, content = pending
            saved_at = self._clock.now()
            try:
                await self._store.save_draft(key, content, saved_at)
            except PersistenceError as e:
                self.logger.error("draft_save_failed", scope=key, error=str(e))
                return

        self.logger.debug("draft_saved", scope=key, length=len(content))
        await self._notify_event("draft_saved", {"scope": key, "saved_at": saved_at.isoformat()})

    async def close(self) -> None:
        # Pending saves are written before the base class cancels anything
        if not self.is_closed:
            await self.flush()
        await super().close()

    async def _close(self) -> None:
        for handle in self._timers_by_key.values():
            self._timers.cancel(handle)
        self._timers_by_key.clear()

    async def _health_check(self) -> Dict[str, Any]:
        return {"pending_saves": len(self._pending)}


__all__ = [
    'Draft',
    'DraftScope',
    'DraftStore',
    'NEW',
]
