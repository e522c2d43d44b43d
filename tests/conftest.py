"""
Pytest configuration and shared fixtures for offline-sync tests.
"""

import pytest
import tempfile
import shutil
from pathlib import Path
from typing import AsyncGenerator, Generator

from offline_sync.connectivity import ConnectivityMonitor, PlatformNetworkSignal
from offline_sync.engine import OfflineSyncEngine
from offline_sync.operations import OperationLog
from offline_sync.storage import Database, SyncStore
from offline_sync.timers import TimerService
from offline_sync.utils.config import SyncConfig

from tests.fixtures.fakes import FakeClock, FakeProbe, FakeSyncClient


# One time unit is 10ms in tests: settle 2 -> 20ms, probe period 30 -> 300ms
TIME_UNIT = 0.01

TEST_CONFIG = {
    "time_unit": TIME_UNIT,
    "connectivity": {
        "base_url": "http://sync.test",
        "probe_interval": 30,
        "probe_timeout": 5,
    },
    "scheduler": {
        "settle_delay": 2,
        "sync_interval": 300,
        "sync_timeout": 10,
        "auto_sync": False,
    },
    "drafts": {
        "debounce": 2,
    },
}


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def timers() -> AsyncGenerator[TimerService, None]:
    service = TimerService(time_unit=TIME_UNIT)
    yield service
    await service.aclose()


@pytest.fixture
async def store(temp_dir: Path) -> AsyncGenerator[SyncStore, None]:
    """Initialized store on a temporary database."""
    sync_store = SyncStore(Database(temp_dir / "sync.db"))
    await sync_store.initialize()
    yield sync_store
    await sync_store.close()


@pytest.fixture
def platform() -> PlatformNetworkSignal:
    return PlatformNetworkSignal(online=True)


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe(reachable=True)


@pytest.fixture
def sync_client(clock: FakeClock) -> FakeSyncClient:
    return FakeSyncClient(clock=clock)


@pytest.fixture
def operation_log(clock: FakeClock) -> OperationLog:
    return OperationLog(clock=clock)


@pytest.fixture
async def monitor(probe, platform, timers, clock) -> AsyncGenerator[ConnectivityMonitor, None]:
    """Connectivity monitor over the fake probe; not started."""
    connectivity = ConnectivityMonitor(probe, platform, timers, clock=clock)
    yield connectivity
    await connectivity.close()


@pytest.fixture
def test_config(temp_dir: Path) -> SyncConfig:
    return SyncConfig(**TEST_CONFIG, storage={"path": temp_dir / "engine.db"})


@pytest.fixture
async def make_engine(test_config, probe, platform, sync_client, clock):
    """Factory for engines over the fakes; every engine is closed afterwards."""
    engines = []

    def factory(config: SyncConfig = None, **kwargs) -> OfflineSyncEngine:
        options = {
            "client": sync_client,
            "probe": probe,
            "platform": platform,
            "clock": clock,
        }
        options.update(kwargs)
        engine = OfflineSyncEngine(config or test_config, **options)
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        await engine.close()


@pytest.fixture
async def engine(make_engine) -> AsyncGenerator[OfflineSyncEngine, None]:
    """Started engine over the fakes."""
    sync_engine = make_engine()
    await sync_engine.start()
    yield sync_engine
    await sync_engine.close()
