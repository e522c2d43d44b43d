"""
Configuration loader for the offline sync engine.

This module provides:
- Multiple configuration sources (JSON, YAML, TOML, .env files and dicts)
- OFFLINE_SYNC_* environment variable overrides
- Schema validation and type coercion via pydantic
- Priority-ordered deep merging
- Optional hot reloading through watchdog

Durations in the engine sections are expressed in time units; the root
``time_unit`` gives the length of one unit in seconds.
"""

import os
import json
import yaml
import toml
from pathlib import Path
from typing import Optional, Dict, Any, List, Union, Callable
from pydantic import BaseModel, Field, field_validator, ValidationError, ConfigDict
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler, FileSystemEvent
import asyncio

from .logging import get_logger
from .errors import ConfigurationError


logger = get_logger("offline-sync.config")

ENV_PREFIX = "OFFLINE_SYNC_"
ENV_NESTING = "__"


class ConfigSource(BaseModel):
    """Configuration source definition."""
    path: Optional[Path] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    source_type: str = "dict"


class ConnectivityConfig(BaseModel):
    """Reachability probe settings."""
    base_url: str = "http://localhost:5000"
    ping_path: str = "/api/ping"
    probe_interval: float = 30.0
    probe_timeout: float = 5.0

    @field_validator('base_url')
    @classmethod
    def strip_trailing_slash(cls, v):
        return v.rstrip("/")

    @field_validator('probe_interval', 'probe_timeout')
    @classmethod
    def positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v


class SchedulerConfig(BaseModel):
    """Reconciliation scheduling."""
    settle_delay: float = 2.0
    sync_interval: float = 300.0
    sync_timeout: float = 30.0
    auto_sync: bool = True
    changes_path: str = "/api/sync/changes"

    @field_validator('sync_interval', 'sync_timeout')
    @classmethod
    def positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator('settle_delay')
    @classmethod
    def not_negative(cls, v):
        if v < 0:
            raise ValueError("must not be negative")
        return v


class DraftConfig(BaseModel):
    """Draft autosave."""
    debounce: float = 2.0

    @field_validator('debounce')
    @classmethod
    def not_negative(cls, v):
        if v < 0:
            raise ValueError("must not be negative")
        return v


class StorageConfig(BaseModel):
    """Local persistence."""
    path: Path = Field(default_factory=lambda: Path.home() / ".offline-sync" / "offline-sync.db")

    @field_validator('path')
    @classmethod
    def expand(cls, v):
        return Path(v).expanduser()


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    format: str = "json"
    directory: Path = Field(default_factory=lambda: Path.home() / ".offline-sync" / "logs")
    enable_sentry: bool = False
    sentry_dsn: Optional[str] = None

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class SyncConfig(BaseModel):
    """Root engine configuration."""
    app_name: str = "offline-sync"
    time_unit: float = 1.0

    connectivity: ConnectivityConfig = Field(default_factory=ConnectivityConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    drafts: DraftConfig = Field(default_factory=DraftConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    enable_hot_reload: bool = False

    model_config = ConfigDict(validate_assignment=True)

    @field_validator('time_unit')
    @classmethod
    def positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v


class ConfigLoader:
    """Configuration loader with multiple source support."""

    def __init__(self, env_prefix: str = ENV_PREFIX):
        self.env_prefix = env_prefix
        self._sources: List[ConfigSource] = []
        self._config: Optional[SyncConfig] = None
        self._observers: List[Observer] = []
        self._callbacks: List[Callable[[SyncConfig], Any]] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def add_source(
        self,
        source: Union[str, Path, Dict[str, Any]],
        priority: int = 0,
        source_type: Optional[str] = None
    ) -> None:
        """
        Add configuration source.

        Args:
            source: File path or dict
            priority: Source priority (higher wins)
            source_type: Source type (detected from the suffix if None)
        """
        if isinstance(source, (str, Path)):
            path = Path(source)
            self._sources.append(ConfigSource(
                path=path,
                priority=priority,
                source_type=source_type or self._detect_source_type(path)
            ))
        else:
            self._sources.append(ConfigSource(
                data=source,
                priority=priority,
                source_type="dict"
            ))

        self._sources.sort(key=lambda s: s.priority)

    def _detect_source_type(self, path: Path) -> str:
        suffix = path.suffix.lower()
        if suffix == ".json":
            return "json"
        elif suffix in (".yaml", ".yml"):
            return "yaml"
        elif suffix == ".toml":
            return "toml"
        elif suffix == ".env" or path.name == ".env":
            return "env"
        raise ConfigurationError(f"Unknown config file type: {suffix}")

    def load(self) -> SyncConfig:
        """
        Load configuration from all sources.

        Sources are merged lowest priority first, so higher priorities win;
        environment variables are applied last.
        """
        merged_data: Dict[str, Any] = {}

        for source in self._sources:
            try:
                data = self._load_source(source)
            except (OSError, ValueError, yaml.YAMLError, toml.TomlDecodeError) as e:
                logger.error(
                    "failed_to_load_source",
                    source=str(source.path or "dict"),
                    error=str(e)
                )
                if source.priority > 100:
                    raise ConfigurationError(f"Failed to load {source.path}: {e}", cause=e) from e
                continue
            merged_data = self._deep_merge(merged_data, data)

        merged_data = self._deep_merge(merged_data, self._load_env_vars())

        try:
            self._config = SyncConfig(**merged_data)
        except ValidationError as e:
            errors = []
            for error in e.errors():
                field = ".".join(str(x) for x in error["loc"])
                errors.append(f"{field}: {error['msg']}")
            raise ConfigurationError(
                f"Configuration validation failed: {'; '.join(errors)}"
            ) from e

        logger.info("configuration_loaded", sources=len(self._sources))

        if self._config.enable_hot_reload and not self._observers:
            self._setup_hot_reload()

        return self._config

    def _load_source(self, source: ConfigSource) -> Dict[str, Any]:
        if source.path is None:
            return source.data

        if not source.path.exists():
            logger.warning("config_file_not_found", path=str(source.path))
            return {}

        content = source.path.read_text()

        if source.source_type == "json":
            return json.loads(content)
        elif source.source_type == "yaml":
            return yaml.safe_load(content) or {}
        elif source.source_type == "toml":
            return toml.loads(content)
        elif source.source_type == "env":
            return self._parse_env_lines(content.splitlines())
        raise ConfigurationError(f"Unknown source type: {source.source_type}")

    def _parse_env_lines(self, lines: List[str]) -> Dict[str, Any]:
        """Parse KEY=value lines; keys may carry the env prefix."""
        pairs = {}
        for line in lines:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            key = key.strip()
            if key.startswith(self.env_prefix):
                key = key[len(self.env_prefix):]
            pairs[key] = value.strip().strip('"').strip("'")
        return self._nest(pairs)

    def _load_env_vars(self) -> Dict[str, Any]:
        """Load OFFLINE_SYNC_* environment variables.

        ``__`` separates nesting levels, e.g.
        ``OFFLINE_SYNC_SCHEDULER__SYNC_INTERVAL=60``.
        """
        pairs = {
            key[len(self.env_prefix):]: value
            for key, value in os.environ.items()
            if key.startswith(self.env_prefix)
        }
        return self._nest(pairs)

    def _nest(self, pairs: Dict[str, str]) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for key, value in pairs.items():
            parts = [p for p in key.lower().split(ENV_NESTING) if p]
            if not parts:
                continue
            current = result
            for part in parts[:-1]:
                current = current.setdefault(part, {})
            current[parts[-1]] = self._convert_value(value)
        return result

    def _convert_value(self, value: str) -> Any:
        """Convert string value to appropriate type."""
        if value.lower() in ("true", "yes", "on"):
            return True
        elif value.lower() in ("false", "no", "off"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        if value.startswith("~"):
            return str(Path(value).expanduser())

        return value

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        result = base.copy()
        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    def _setup_hot_reload(self) -> None:
        """Watch file sources and reload on modification."""
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
            logger.warning("hot_reload_waiting_for_loop")

        for source in self._sources:
            if source.path and source.path.exists():
                observer = Observer()
                handler = ConfigFileHandler(self, source.path)
                observer.schedule(handler, str(source.path.parent), recursive=False)
                observer.start()
                self._observers.append(observer)
                logger.info("hot_reload_enabled", path=str(source.path))

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Set the event loop that reloads triggered by file changes run on."""
        self._loop = loop

    def register_callback(self, callback: Callable[[SyncConfig], Any]) -> None:
        """Register configuration change callback."""
        self._callbacks.append(callback)

    async def reload(self) -> Optional[SyncConfig]:
        """Reload configuration and notify callbacks when it changed."""
        logger.info("reloading_configuration")

        old_config = self._config
        try:
            new_config = self.load()
        except ConfigurationError as e:
            logger.error("reload_failed", error=str(e))
            return None

        if old_config != new_config:
            for callback in self._callbacks:
                try:
                    if asyncio.iscoroutinefunction(callback):
                        await callback(new_config)
                    else:
                        callback(new_config)
                except Exception as e:
                    logger.error(
                        "callback_error",
                        callback=getattr(callback, '__name__', repr(callback)),
                        error=str(e)
                    )
        return new_config

    def get_config(self) -> SyncConfig:
        """Get current configuration."""
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config

    def shutdown(self) -> None:
        """Stop file watchers."""
        for observer in self._observers:
            observer.stop()
            observer.join()
        self._observers.clear()


class ConfigFileHandler(FileSystemEventHandler):
    """File system event handler for configuration files."""

    def __init__(self, loader: ConfigLoader, path: Path):
        self.loader = loader
        self.path = path

    def on_modified(self, event: FileSystemEvent) -> None:
        # Runs on the watchdog thread
        if event.is_directory or Path(event.src_path) != self.path:
            return
        logger.info("config_file_modified", path=event.src_path)
        loop = self.loader._loop
        if loop is None or loop.is_closed():
            logger.warning("config_reload_skipped_no_loop", path=event.src_path)
            return
        asyncio.run_coroutine_threadsafe(self.loader.reload(), loop)


def load_config(
    config_paths: Optional[List[Union[str, Path]]] = None,
    extra_config: Optional[Dict[str, Any]] = None,
    loader: Optional[ConfigLoader] = None,
) -> SyncConfig:
    """
    Load configuration from standard locations.

    Args:
        config_paths: Additional configuration paths
        extra_config: Extra configuration to merge (highest priority)
        loader: Loader to populate (a fresh one by default)
    """
    loader = loader or ConfigLoader()

    default_paths = [
        Path.home() / ".offline-sync" / "config.yaml",
        Path.home() / ".offline-sync" / "config.json",
        Path("./offline-sync.yaml"),
        Path("./offline-sync.toml"),
    ]

    for path in default_paths:
        if path.exists():
            loader.add_source(path, priority=10)

    if config_paths:
        for i, path in enumerate(config_paths):
            loader.add_source(path, priority=20 + i)

    if extra_config:
        loader.add_source(extra_config, priority=100)

    return loader.load()


__all__ = [
    'SyncConfig',
    'ConnectivityConfig',
    'SchedulerConfig',
    'DraftConfig',
    'StorageConfig',
    'LoggingConfig',
    'ConfigLoader',
    'load_config',
]
