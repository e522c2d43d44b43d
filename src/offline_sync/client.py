"""
Reconciliation exchange with the remote authority.

``SyncClient`` is the seam the scheduler talks to; ``HttpSyncClient``
implements it over aiohttp against the ``/api/sync`` routes.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

import aiohttp

from .operations import EntityType, OperationKind, SyncOperation
from .timers import Clock, SystemClock, from_epoch_ms, to_epoch_ms
from .utils.errors import ReconciliationError
from .utils.logging import get_logger


logger = get_logger("offline-sync.client")


@dataclass
class ReconciliationResult:
    """Outcome of one push."""
    success: bool
    last_sync_timestamp: Optional[datetime] = None
    message: Optional[str] = None
    status: Optional[int] = None
    record_count: int = 0

    @classmethod
    def failure(cls, message: str, status: Optional[int] = None) -> "ReconciliationResult":
        return cls(success=False, message=message, status=status)


@dataclass(frozen=True)
class RemoteChange:
    """A change record from another device."""
    id: str
    entity_type: EntityType
    entity_id: int
    kind: OperationKind
    timestamp: datetime
    device_id: str
    data: Optional[Dict[str, Any]] = field(default=None, compare=False)

    @classmethod
    def from_wire(cls, record: Mapping[str, Any]) -> "RemoteChange":
        try:
            return cls(
                id=str(record.get("id", "")),
                entity_type=EntityType(record["entityType"]),
                entity_id=int(record["entityId"]),
                kind=OperationKind(record["operation"]),
                timestamp=parse_timestamp(record["timestamp"]),
                device_id=str(record.get("deviceId", "")),
                data=record.get("data"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ReconciliationError(f"Malformed change record: {e}", cause=e) from e


def parse_timestamp(value: Any) -> datetime:
    """Epoch milliseconds (number or numeric string) or ISO-8601."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return from_epoch_ms(value)
    if isinstance(value, str):
        if value.isdigit():
            return from_epoch_ms(int(value))
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            raise ValueError(f"Timestamp without timezone: {value!r}")
        return parsed
    raise ValueError(f"Invalid timestamp: {value!r}")


class SyncClient(Protocol):
    """Network exchange used by the scheduler."""

    async def push(
        self,
        device_id: str,
        operations: Sequence[SyncOperation]
    ) -> ReconciliationResult:
        """Send pending operations. Must not raise for transport failures."""
        ...

    async def pull(self, device_id: str, since: Optional[datetime]) -> List[RemoteChange]:
        """Fetch changes from other devices; raise ``ReconciliationError`` on failure."""
        ...


class HttpSyncClient:
    """
    aiohttp implementation of ``SyncClient``.

    Pushing an empty batch asks the status route for the server time
    instead of posting nothing.
    """

    def __init__(
        self,
        base_url: str,
        changes_path: str = "/api/sync/changes",
        status_path: str = "/api/sync/status",
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
        headers: Optional[Dict[str, str]] = None,
        clock: Optional[Clock] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.changes_url = self.base_url + changes_path
        self.status_url = self.base_url + status_path
        self.timeout = timeout
        self.headers = headers or {}
        self.clock = clock or SystemClock()
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers=self.headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def push(
        self,
        device_id: str,
        operations: Sequence[SyncOperation]
    ) -> ReconciliationResult:
        if not operations:
            return await self._status_result(device_id)

        body = {
            "changes": [op.to_wire(device_id) for op in operations],
            "deviceId": device_id,
        }

        try:
            async with self._get_session().post(self.changes_url, json=body) as response:
                if response.status >= 400:
                    text = await response.text()
                    logger.warning("push_rejected", status=response.status, body=text[:200])
                    return ReconciliationResult.failure(
                        f"HTTP {response.status}", status=response.status
                    )
                payload = await response.json()
        except asyncio.TimeoutError:
            return ReconciliationResult.failure("Push timed out")
        except (aiohttp.ClientError, ValueError) as e:
            return ReconciliationResult.failure(f"Push failed: {e}")

        if not isinstance(payload, dict) or not payload.get("success", False):
            message = payload.get("message") if isinstance(payload, dict) else None
            return ReconciliationResult.failure(message or "Server reported failure")

        return ReconciliationResult(
            success=True,
            last_sync_timestamp=self._server_timestamp(payload),
            message=payload.get("message"),
            status=response.status,
            record_count=int(payload.get("recordCount", len(operations))),
        )

    async def pull(self, device_id: str, since: Optional[datetime]) -> List[RemoteChange]:
        params = {
            "since": str(to_epoch_ms(since)) if since else "0",
            "deviceId": device_id,
        }
        try:
            async with self._get_session().get(self.changes_url, params=params) as response:
                if response.status >= 400:
                    raise ReconciliationError(
                        f"Pull returned HTTP {response.status}", status=response.status
                    )
                records = await response.json()
        except asyncio.TimeoutError as e:
            raise ReconciliationError("Pull timed out", cause=e) from e
        except (aiohttp.ClientError, ValueError) as e:
            raise ReconciliationError(f"Pull failed: {e}", cause=e) from e

        if not isinstance(records, list):
            raise ReconciliationError("Pull response is not a list")
        return [RemoteChange.from_wire(record) for record in records]

    async def status(self, device_id: str) -> Dict[str, Any]:
        """Server-side sync stats, including ``serverTime``."""
        try:
            async with self._get_session().get(
                self.status_url, params={"deviceId": device_id}
            ) as response:
                if response.status >= 400:
                    raise ReconciliationError(
                        f"Status returned HTTP {response.status}", status=response.status
                    )
                return await response.json()
        except asyncio.TimeoutError as e:
            raise ReconciliationError("Status timed out", cause=e) from e
        except (aiohttp.ClientError, ValueError) as e:
            raise ReconciliationError(f"Status failed: {e}", cause=e) from e

    async def _status_result(self, device_id: str) -> ReconciliationResult:
        try:
            payload = await self.status(device_id)
        except ReconciliationError as e:
            return ReconciliationResult.failure(e.message, status=e.status)
        return ReconciliationResult(
            success=True,
            last_sync_timestamp=self._server_timestamp(payload),
        )

    def _server_timestamp(self, payload: Mapping[str, Any]) -> datetime:
        # lastSyncTimestamp, then serverTime, then the local clock
        for key in ("lastSyncTimestamp", "serverTime"):
            value = payload.get(key)
            if value is None:
                continue
            try:
                return parse_timestamp(value)
            except ValueError:
                logger.warning("invalid_server_timestamp", key=key, value=repr(value))
        return self.clock.now()

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None


__all__ = [
    'SyncClient',
    'HttpSyncClient',
    'ReconciliationResult',
    'RemoteChange',
    'parse_timestamp',
]
