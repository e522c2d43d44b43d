"""
Connectivity monitoring.

Platform online/offline reports are necessary but not sufficient: the
monitor only reports real connectivity after a reachability probe against
the remote authority succeeds.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

import aiohttp

from .base import BaseComponent
from .timers import Clock, SystemClock, TimerHandle, TimerService, to_epoch_ms
from .utils.errors import ProbeError


PlatformListener = Callable[[bool], Any]


@dataclass(frozen=True)
class ConnectivityState:
    """Snapshot of what the monitor currently believes."""
    platform_online: bool
    has_connectivity: bool
    last_online_at: Optional[datetime] = None


class PlatformNetwork(Protocol):
    """Source of platform-reported online/offline transitions."""

    def is_online(self) -> bool:
        ...

    def add_listener(self, listener: PlatformListener) -> None:
        ...

    def remove_listener(self, listener: PlatformListener) -> None:
        ...


class PlatformNetworkSignal:
    """
    Platform source driven by the host application.

    The host calls ``set_online`` when its network stack reports a change;
    listeners are awaited in registration order.
    """

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: List[PlatformListener] = []

    def is_online(self) -> bool:
        return self._online

    def add_listener(self, listener: PlatformListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: PlatformListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def set_online(self, online: bool) -> None:
        self._online = online
        for listener in list(self._listeners):
            result = listener(online)
            if asyncio.iscoroutine(result):
                await result


class ReachabilityProbe(Protocol):
    async def ping(self) -> None:
        """Return normally when the authority answered, raise otherwise."""
        ...


class HttpReachabilityProbe:
    """``HEAD {base_url}{ping_path}?_=<epoch-ms>`` with caching disabled."""

    def __init__(
        self,
        base_url: str,
        ping_path: str = "/api/ping",
        timeout: float = 5.0,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Optional[Clock] = None,
    ):
        self.url = base_url.rstrip("/") + ping_path
        self.timeout = timeout
        self.clock = clock or SystemClock()
        self._session = session
        self._owns_session = session is None

    async def ping(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()

        try:
            async with self._session.head(
                self.url,
                params={"_": str(to_epoch_ms(self.clock.now()))},
                headers={"Cache-Control": "no-cache", "Pragma": "no-cache"},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if not 200 <= response.status < 300:
                    raise ProbeError(f"Ping returned {response.status}")
        except aiohttp.ClientError as e:
            raise ProbeError(f"Ping failed: {e}", cause=e) from e

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None


class ConnectivityMonitor(BaseComponent):
    """
    Tracks platform transitions and verifies them with active probes.

    Events (handlers receive ``(event, data)``):
        reconnected: a probe succeeded after connectivity was absent
        offline: the platform reported loss of link
        connectivity_lost: a probe failed while connectivity was believed present
    """

    EVENTS = ("reconnected", "offline", "connectivity_lost")

    def __init__(
        self,
        probe: ReachabilityProbe,
        platform: PlatformNetwork,
        timers: TimerService,
        clock: Optional[Clock] = None,
        probe_interval: float = 30.0,
        probe_timeout: float = 5.0,
    ):
        super().__init__("connectivity")
        self._probe = probe
        self._platform = platform
        self._timers = timers
        self._clock = clock or SystemClock()
        self.probe_interval = probe_interval
        self.probe_timeout = probe_timeout

        self._platform_online = False
        self._has_connectivity = False
        self._last_online_at: Optional[datetime] = None
        # Bumped on every offline report; probes started earlier are stale
        self._generation = 0
        self._periodic: Optional[TimerHandle] = None

    def current_state(self) -> ConnectivityState:
        return ConnectivityState(
            platform_online=self._platform_online,
            has_connectivity=self._has_connectivity,
            last_online_at=self._last_online_at,
        )

    @property
    def is_online(self) -> bool:
        return self._platform_online

    @property
    def has_connectivity(self) -> bool:
        return self._has_connectivity

    async def probe(self) -> bool:
        """
        Check that the remote authority is reachable.

        Never raises. A probe that was overtaken by an offline report is
        discarded and returns False.
        """
        if self.is_closed:
            return False

        generation = self._generation
        try:
            await asyncio.wait_for(
                self._probe.ping(),
                timeout=self._timers.seconds(self.probe_timeout)
            )
            reachable = True
        except asyncio.TimeoutError:
            self.logger.debug("probe_timed_out")
            reachable = False
        except Exception as e:
            self.logger.debug("probe_failed", error=str(e), error_type=type(e).__name__)
            reachable = False

        if self.is_closed or generation != self._generation:
            self.logger.debug("stale_probe_discarded", reachable=reachable)
            return False

        was_connected = self._has_connectivity
        self._has_connectivity = reachable

        if reachable and not was_connected:
            self.logger.info("connectivity_restored")
            await self._notify_event("reconnected", self._event_data())
        elif not reachable and was_connected:
            self.logger.info("connectivity_lost")
            await self._notify_event("connectivity_lost", self._event_data())

        return reachable

    def reschedule(self, probe_interval: float) -> None:
        """Change the probe period; an armed periodic probe is re-armed."""
        self.probe_interval = probe_interval
        if self._periodic is not None:
            self._stop_periodic()
            self._start_periodic()
            self.logger.debug("probe_rescheduled", interval=probe_interval)

    async def _on_platform_change(self, online: bool) -> None:
        if self.is_closed:
            return

        if online:
            self._platform_online = True
            self._last_online_at = self._clock.now()
            self.logger.debug("platform_online")
            self._start_periodic()
            await self.probe()
            return

        was_online = self._platform_online or self._has_connectivity
        self._generation += 1
        self._platform_online = False
        self._has_connectivity = False
        self._stop_periodic()
        self.logger.info("platform_offline")
        if was_online:
            await self._notify_event("offline", self._event_data())

    def _start_periodic(self) -> None:
        if self._periodic is None:
            self._periodic = self._timers.schedule_periodic(
                self.probe_interval, self.probe, name="connectivity_probe"
            )

    def _stop_periodic(self) -> None:
        self._timers.cancel(self._periodic)
        self._periodic = None

    def _event_data(self) -> Dict[str, Any]:
        return {
            "platform_online": self._platform_online,
            "has_connectivity": self._has_connectivity,
            "last_online_at": self._last_online_at.isoformat() if self._last_online_at else None,
        }

    async def _start(self) -> None:
        self._platform.add_listener(self._on_platform_change)
        if self._platform.is_online():
            self._platform_online = True
            self._last_online_at = self._clock.now()
            self._start_periodic()
            await self.probe()

    async def _close(self) -> None:
        self._platform.remove_listener(self._on_platform_change)
        self._stop_periodic()
        close = getattr(self._probe, "close", None)
        if close is not None:
            await close()

    async def _health_check(self) -> Dict[str, Any]:
        return {
            "platform_online": self._platform_online,
            "has_connectivity": self._has_connectivity,
            "periodic_probe": self._periodic is not None,
        }


__all__ = [
    'ConnectivityMonitor',
    'ConnectivityState',
    'PlatformNetwork',
    'PlatformNetworkSignal',
    'ReachabilityProbe',
    'HttpReachabilityProbe',
]
