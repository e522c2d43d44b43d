"""
Tests for configuration loading.
"""

import asyncio
import json
import os

import pytest
import toml
import yaml
from watchdog.events import FileModifiedEvent

from offline_sync.utils.config import ConfigFileHandler, ConfigLoader, SyncConfig, load_config
from offline_sync.utils.errors import ConfigurationError
from tests.utils import wait_for_condition


@pytest.fixture
def loader(monkeypatch):
    for key in list(os.environ):
        if key.startswith("OFFLINE_SYNC_"):
            monkeypatch.delenv(key)
    config_loader = ConfigLoader()
    yield config_loader
    config_loader.shutdown()


class TestDefaults:

    def test_defaults(self):
        config = SyncConfig()

        assert config.time_unit == 1.0
        assert config.connectivity.base_url == "http://localhost:5000"
        assert config.connectivity.probe_interval == 30
        assert config.connectivity.probe_timeout == 5
        assert config.scheduler.settle_delay == 2
        assert config.scheduler.sync_interval == 300
        assert config.scheduler.auto_sync is True
        assert config.drafts.debounce == 2

    def test_trailing_slash_is_stripped(self):
        config = SyncConfig(connectivity={"base_url": "https://sync.example.com/"})
        assert config.connectivity.base_url == "https://sync.example.com"


class TestSources:

    def test_yaml_source(self, loader, temp_dir):
        path = temp_dir / "config.yaml"
        path.write_text(yaml.safe_dump({"scheduler": {"sync_interval": 60}}))
        loader.add_source(path)

        assert loader.load().scheduler.sync_interval == 60

    def test_toml_source(self, loader, temp_dir):
        path = temp_dir / "config.toml"
        path.write_text(toml.dumps({"drafts": {"debounce": 0.5}}))
        loader.add_source(path)

        assert loader.load().drafts.debounce == 0.5

    def test_json_source(self, loader, temp_dir):
        path = temp_dir / "config.json"
        path.write_text(json.dumps({"connectivity": {"probe_timeout": 2}}))
        loader.add_source(path)

        assert loader.load().connectivity.probe_timeout == 2

    def test_dotenv_source(self, loader, temp_dir):
        path = temp_dir / ".env"
        path.write_text(
            "# comment\n"
            "OFFLINE_SYNC_SCHEDULER__AUTO_SYNC=false\n"
            "CONNECTIVITY__BASE_URL='https://sync.example.com'\n"
        )
        loader.add_source(path)

        config = loader.load()
        assert config.scheduler.auto_sync is False
        assert config.connectivity.base_url == "https://sync.example.com"

    def test_higher_priority_wins_and_merges_deeply(self, loader):
        loader.add_source({"scheduler": {"sync_interval": 10, "settle_delay": 1}}, priority=50)
        loader.add_source({"scheduler": {"sync_interval": 20}}, priority=10)

        config = loader.load()
        assert config.scheduler.sync_interval == 10
        assert config.scheduler.settle_delay == 1

    def test_missing_file_is_skipped(self, loader, temp_dir):
        loader.add_source(temp_dir / "absent.yaml")
        assert loader.load() == SyncConfig()

    def test_unknown_suffix_is_rejected(self, loader, temp_dir):
        with pytest.raises(ConfigurationError):
            loader.add_source(temp_dir / "config.ini")

    def test_broken_low_priority_file_is_skipped(self, loader, temp_dir):
        path = temp_dir / "broken.json"
        path.write_text("{not json")
        loader.add_source(path)

        assert loader.load().time_unit == 1.0

    def test_broken_high_priority_file_raises(self, loader, temp_dir):
        path = temp_dir / "broken.json"
        path.write_text("{not json")
        loader.add_source(path, priority=200)

        with pytest.raises(ConfigurationError):
            loader.load()


class TestEnvironment:

    def test_nested_env_override(self, loader, monkeypatch):
        loader.add_source({"scheduler": {"sync_interval": 10}})
        monkeypatch.setenv("OFFLINE_SYNC_SCHEDULER__SYNC_INTERVAL", "45")
        monkeypatch.setenv("OFFLINE_SYNC_TIME_UNIT", "0.5")

        config = loader.load()
        assert config.scheduler.sync_interval == 45
        assert config.time_unit == 0.5

    def test_value_conversion(self, loader):
        assert loader._convert_value("yes") is True
        assert loader._convert_value("off") is False
        assert loader._convert_value("12") == 12
        assert loader._convert_value("1.5") == 1.5
        assert loader._convert_value("http://x") == "http://x"


class TestValidation:

    @pytest.mark.parametrize("override", [
        {"time_unit": 0},
        {"scheduler": {"sync_interval": -1}},
        {"scheduler": {"settle_delay": -1}},
        {"connectivity": {"probe_timeout": 0}},
        {"logging": {"level": "LOUD"}},
    ])
    def test_invalid_values_raise_configuration_error(self, loader, override):
        loader.add_source(override)
        with pytest.raises(ConfigurationError) as exc_info:
            loader.load()
        assert "Configuration validation failed" in str(exc_info.value)

    def test_get_config_before_load(self, loader):
        with pytest.raises(ConfigurationError):
            loader.get_config()


class TestReload:

    @pytest.mark.asyncio
    async def test_reload_notifies_on_change(self, loader, temp_dir):
        path = temp_dir / "config.yaml"
        path.write_text(yaml.safe_dump({"scheduler": {"sync_interval": 60}}))
        loader.add_source(path)
        loader.load()

        seen = []

        async def on_change(config):
            seen.append(config.scheduler.sync_interval)

        loader.register_callback(on_change)

        assert (await loader.reload()).scheduler.sync_interval == 60
        assert seen == []

        path.write_text(yaml.safe_dump({"scheduler": {"sync_interval": 90}}))
        await loader.reload()

        assert seen == [90]
        assert loader.get_config().scheduler.sync_interval == 90

    @pytest.mark.asyncio
    async def test_invalid_reload_keeps_previous_config(self, loader, temp_dir):
        path = temp_dir / "config.json"
        path.write_text(json.dumps({"drafts": {"debounce": 1}}))
        loader.add_source(path)
        loader.load()

        path.write_text(json.dumps({"drafts": {"debounce": -1}}))

        assert await loader.reload() is None
        assert loader.get_config().drafts.debounce == 1


class TestHotReload:

    @pytest.fixture
    def watched(self, loader, temp_dir):
        path = temp_dir / "config.yaml"
        path.write_text(yaml.safe_dump({"enable_hot_reload": True, "drafts": {"debounce": 1}}))
        loader.add_source(path)
        return path

    def test_load_outside_event_loop_defers_reloads(self, loader, watched):
        loader.load()
        seen = []
        loader.register_callback(seen.append)

        watched.write_text(yaml.safe_dump({"enable_hot_reload": True, "drafts": {"debounce": 4}}))
        ConfigFileHandler(loader, watched).on_modified(FileModifiedEvent(str(watched)))

        assert seen == []
        assert loader.get_config().drafts.debounce == 1

    @pytest.mark.asyncio
    async def test_attached_loop_receives_file_changes(self, loader, watched):
        await asyncio.to_thread(loader.load)
        seen = []
        loader.register_callback(lambda config: seen.append(config.drafts.debounce))
        loader.attach_loop(asyncio.get_running_loop())

        watched.write_text(yaml.safe_dump({"enable_hot_reload": True, "drafts": {"debounce": 4}}))
        await asyncio.to_thread(
            ConfigFileHandler(loader, watched).on_modified, FileModifiedEvent(str(watched))
        )

        await wait_for_condition(lambda: 4 in seen)
        assert loader.get_config().drafts.debounce == 4


def test_load_config_extra_config_has_highest_priority(temp_dir, loader):
    path = temp_dir / "config.yaml"
    path.write_text(yaml.safe_dump({"app_name": "from-file", "time_unit": 2}))

    config = load_config([path], extra_config={"app_name": "from-code"}, loader=loader)

    assert config.app_name == "from-code"
    assert config.time_unit == 2
