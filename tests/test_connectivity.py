"""
Tests for connectivity monitoring.
"""

import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from offline_sync.connectivity import (
    ConnectivityMonitor,
    ConnectivityState,
    HttpReachabilityProbe,
    PlatformNetworkSignal,
)
from offline_sync.utils.errors import ProbeError, ValidationError
from tests.fixtures import EPOCH
from tests.utils import settle, wait_for_condition


class Recorder:
    """Collects (event, data) notifications."""

    def __init__(self):
        self.events = []

    def __call__(self, event, data):
        self.events.append(event)


def watch(monitor: ConnectivityMonitor) -> Recorder:
    recorder = Recorder()
    for event in ConnectivityMonitor.EVENTS:
        monitor.subscribe(event, recorder)
    return recorder


def base_url(server: TestServer) -> str:
    return f"http://{server.host}:{server.port}"


class TestProbe:

    @pytest.mark.asyncio
    async def test_initial_state_has_no_connectivity(self, monitor):
        state = monitor.current_state()
        assert state == ConnectivityState(platform_online=False, has_connectivity=False)

    @pytest.mark.asyncio
    async def test_successful_probe_sets_connectivity_and_emits_reconnected(self, monitor):
        recorder = watch(monitor)

        assert await monitor.probe() is True
        assert monitor.has_connectivity
        assert recorder.events == ["reconnected"]

        # Already connected: no second transition
        assert await monitor.probe() is True
        assert recorder.events == ["reconnected"]

    @pytest.mark.asyncio
    async def test_failed_probe_clears_connectivity(self, monitor, probe):
        recorder = watch(monitor)
        await monitor.probe()

        probe.reachable = False
        assert await monitor.probe() is False
        assert not monitor.has_connectivity
        assert recorder.events == ["reconnected", "connectivity_lost"]

    @pytest.mark.asyncio
    async def test_failed_probe_while_disconnected_is_silent(self, monitor, probe):
        recorder = watch(monitor)
        probe.reachable = False

        assert await monitor.probe() is False
        assert recorder.events == []

    @pytest.mark.asyncio
    async def test_probe_timeout_counts_as_failure(self, monitor, probe):
        probe.hold()
        monitor.probe_timeout = 1

        assert await monitor.probe() is False
        assert not monitor.has_connectivity

    @pytest.mark.asyncio
    async def test_probe_that_raises_unexpectedly_is_not_fatal(self, platform, timers, clock):
        class Broken:
            async def ping(self):
                raise RuntimeError("resolver exploded")

        monitor = ConnectivityMonitor(Broken(), platform, timers, clock=clock)
        assert await monitor.probe() is False
        await monitor.close()


class TestPlatformEvents:

    @pytest.mark.asyncio
    async def test_start_probes_when_platform_reports_online(self, monitor, probe, clock):
        await monitor.start()

        state = monitor.current_state()
        assert state.platform_online
        assert state.has_connectivity
        assert state.last_online_at == EPOCH
        assert probe.calls == 1

    @pytest.mark.asyncio
    async def test_start_offline_does_not_probe(self, probe, timers, clock):
        platform = PlatformNetworkSignal(online=False)
        monitor = ConnectivityMonitor(probe, platform, timers, clock=clock)
        await monitor.start()

        assert probe.calls == 0
        assert not monitor.is_online
        assert not monitor.has_connectivity
        await monitor.close()

    @pytest.mark.asyncio
    async def test_platform_online_alone_is_not_connectivity(self, probe, timers, clock):
        platform = PlatformNetworkSignal(online=False)
        probe.reachable = False
        monitor = ConnectivityMonitor(probe, platform, timers, clock=clock)
        await monitor.start()

        await platform.set_online(True)

        assert monitor.is_online
        assert not monitor.has_connectivity
        assert probe.calls == 1
        await monitor.close()

    @pytest.mark.asyncio
    async def test_offline_forces_connectivity_false_without_probe(self, monitor, platform, probe):
        recorder = watch(monitor)
        await monitor.start()
        calls = probe.calls

        await platform.set_online(False)

        assert not monitor.is_online
        assert not monitor.has_connectivity
        assert probe.calls == calls
        assert recorder.events == ["reconnected", "offline"]

    @pytest.mark.asyncio
    async def test_online_event_records_time_and_reprobes(self, monitor, platform, probe, clock):
        await monitor.start()
        await platform.set_online(False)

        clock.advance(60)
        await platform.set_online(True)

        assert monitor.has_connectivity
        assert monitor.current_state().last_online_at == clock.now()

    @pytest.mark.asyncio
    async def test_probe_overtaken_by_offline_is_discarded(self, monitor, platform, probe):
        recorder = watch(monitor)
        probe.reachable = False
        await monitor.start()
        assert not monitor.has_connectivity

        probe.reachable = True
        monitor.probe_timeout = 100
        gate = probe.hold()
        in_flight = asyncio.ensure_future(monitor.probe())
        await settle()
        await platform.set_online(False)
        gate.set()

        assert await in_flight is False
        assert not monitor.has_connectivity
        assert recorder.events == ["offline"]

    @pytest.mark.asyncio
    async def test_periodic_probe_detects_silent_loss(self, monitor, probe):
        recorder = watch(monitor)
        monitor.probe_interval = 2
        await monitor.start()

        probe.reachable = False
        await wait_for_condition(lambda: not monitor.has_connectivity)

        assert recorder.events == ["reconnected", "connectivity_lost"]

    @pytest.mark.asyncio
    async def test_periodic_probe_stops_while_offline(self, monitor, platform, probe):
        monitor.probe_interval = 1
        await monitor.start()
        await platform.set_online(False)
        calls = probe.calls

        await settle(0.05)
        assert probe.calls == calls


class TestObservers:

    @pytest.mark.asyncio
    async def test_unknown_event_is_rejected(self, monitor):
        with pytest.raises(ValidationError):
            monitor.subscribe("teleported", lambda event, data: None)

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_affect_others(self, monitor):
        seen = []

        def broken(event, data):
            raise RuntimeError("handler bug")

        async def healthy(event, data):
            seen.append(data["has_connectivity"])

        monitor.subscribe("reconnected", broken)
        monitor.subscribe("reconnected", healthy)

        assert await monitor.probe() is True
        assert seen == [True]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, monitor):
        recorder = Recorder()
        monitor.subscribe("reconnected", recorder)
        monitor.unsubscribe("reconnected", recorder)
        monitor.unsubscribe("reconnected", recorder)

        await monitor.probe()
        assert recorder.events == []


class TestTeardown:

    @pytest.mark.asyncio
    async def test_close_cancels_timers_and_platform_subscription(self, monitor, platform, timers, probe):
        await monitor.start()
        assert timers.pending == 1

        await monitor.close()

        assert timers.pending == 0
        assert probe.closed
        await platform.set_online(False)
        assert monitor.has_connectivity

    @pytest.mark.asyncio
    async def test_probe_after_close_returns_false(self, monitor):
        await monitor.close()
        assert await monitor.probe() is False


@pytest.mark.integration
class TestHttpReachabilityProbe:

    @pytest.fixture
    async def ping_server(self):
        requests = []
        state = {"status": 200}

        async def ping(request):
            requests.append(request)
            return web.Response(status=state["status"])

        app = web.Application()
        app.router.add_route("HEAD", "/api/ping", ping)
        server = TestServer(app)
        await server.start_server()
        yield server, requests, state
        await server.close()

    @pytest.mark.asyncio
    async def test_ping_sends_cache_busting_head(self, ping_server, clock):
        server, requests, _ = ping_server
        probe = HttpReachabilityProbe(base_url(server), clock=clock)
        try:
            await probe.ping()
        finally:
            await probe.close()

        request = requests[0]
        assert request.method == "HEAD"
        assert request.query["_"] == "1709294400000"
        assert request.headers["Cache-Control"] == "no-cache"
        assert request.headers["Pragma"] == "no-cache"

    @pytest.mark.asyncio
    async def test_non_success_status_raises(self, ping_server):
        server, _, state = ping_server
        state["status"] = 503
        probe = HttpReachabilityProbe(base_url(server))
        try:
            with pytest.raises(ProbeError):
                await probe.ping()
        finally:
            await probe.close()

    @pytest.mark.asyncio
    async def test_unreachable_host_raises(self, ping_server):
        server, _, _ = ping_server
        url = base_url(server)
        await server.close()

        probe = HttpReachabilityProbe(url, timeout=1.0)
        try:
            with pytest.raises(ProbeError):
                await probe.ping()
        finally:
            await probe.close()

    @pytest.mark.asyncio
    async def test_monitor_over_http_probe(self, ping_server, timers):
        server, _, state = ping_server
        platform = PlatformNetworkSignal(online=True)
        monitor = ConnectivityMonitor(
            HttpReachabilityProbe(base_url(server)),
            platform,
            timers,
            probe_timeout=100,
        )
        await monitor.start()
        assert monitor.has_connectivity

        state["status"] = 500
        assert await monitor.probe() is False
        await monitor.close()
