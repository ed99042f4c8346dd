"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


ENGINE_ETCD = "etcd"
ENGINE_LOCAL = "local"
DATABASE_ENGINES = (ENGINE_ETCD, ENGINE_LOCAL)

LOG_LEVELS = ("debug", "info", "warning", "error")

ENV_PREFIX = "SYNTHETICS_API_"


@dataclass(frozen=True)
class ServerConfig:
    """Configuration for the HTTP API server."""

    host: str = "0.0.0.0"
    port: int = 8080
    read_timeout: float = 5.0  # seconds to wait on the client socket while reading
    write_timeout: float = 10.0  # seconds to wait on the client socket while writing
    graceful_timeout: float = 15.0  # seconds to wait for the server loop on shutdown

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"Server port must be between 1 and 65535, got {self.port}")
        for name in ("read_timeout", "write_timeout", "graceful_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"Server {name} must be positive, got {getattr(self, name)}")


@dataclass(frozen=True)
class StorageConfig:
    """Configuration for the probe store backend.

    The "etcd" engine stores probes as ConfigMaps through the Kubernetes API
    (which is backed by etcd); "local" stores JSON files under data_dir.
    """

    engine: str = ENGINE_ETCD
    data_dir: str = "data"
    namespace: str = "default"
    kubeconfig: str | None = None

    def __post_init__(self) -> None:
        if self.engine not in DATABASE_ENGINES:
            raise ConfigError(
                f"Unsupported database engine '{self.engine}', must be one of: {', '.join(DATABASE_ENGINES)}"
            )
        if not self.data_dir:
            raise ConfigError("Storage data_dir cannot be empty")
        if not self.namespace:
            raise ConfigError("Storage namespace cannot be empty")


@dataclass(frozen=True)
class MonitorConfig:
    """Configuration for the probe metrics loop."""

    enabled: bool = True
    interval: int = 30  # seconds between counting cycles

    def __post_init__(self) -> None:
        if self.interval < 1:
            raise ConfigError(f"Monitor interval must be at least 1 second (got {self.interval})")


@dataclass(frozen=True)
class LoggingConfig:
    """Configuration for log output."""

    level: str = "info"

    def __post_init__(self) -> None:
        if self.level not in LOG_LEVELS:
            raise ConfigError(f"Invalid log level '{self.level}', must be one of: {', '.join(LOG_LEVELS)}")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    server: ServerConfig = field(default_factory=ServerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _section(data: dict, name: str) -> dict:
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' section must be a dictionary")
    return value


def _number(value: Any, name: str, kind: type = int) -> Any:
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{name}' must be a number, got {value!r}")


def _parse_server_config(data: dict) -> ServerConfig:
    """Parse server configuration section."""
    return ServerConfig(
        host=str(data.get("host", "0.0.0.0")),
        port=_number(data.get("port", 8080), "server.port"),
        read_timeout=_number(data.get("read_timeout", 5.0), "server.read_timeout", float),
        write_timeout=_number(data.get("write_timeout", 10.0), "server.write_timeout", float),
        graceful_timeout=_number(data.get("graceful_timeout", 15.0), "server.graceful_timeout", float),
    )


def _parse_storage_config(data: dict) -> StorageConfig:
    """Parse storage configuration section."""
    kubeconfig = data.get("kubeconfig")
    if kubeconfig is not None:
        kubeconfig = str(kubeconfig)

    return StorageConfig(
        engine=str(data.get("engine", ENGINE_ETCD)),
        data_dir=str(data.get("data_dir", "data")),
        namespace=str(data.get("namespace", "default")),
        kubeconfig=kubeconfig or None,
    )


def _parse_monitor_config(data: dict) -> MonitorConfig:
    """Parse monitor configuration section."""
    enabled = data.get("enabled", True)
    if isinstance(enabled, str):
        enabled = enabled.lower() in ("true", "1", "yes")

    return MonitorConfig(
        enabled=bool(enabled),
        interval=_number(data.get("interval", 30), "monitor.interval"),
    )


def _parse_logging_config(data: dict) -> LoggingConfig:
    """Parse logging configuration section."""
    return LoggingConfig(level=str(data.get("level", "info")).lower())


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - SYNTHETICS_API_HOST: Override server.host
    - SYNTHETICS_API_PORT: Override server.port
    - SYNTHETICS_API_DATABASE_ENGINE: Override storage.engine
    - SYNTHETICS_API_DATA_DIR: Override storage.data_dir
    - SYNTHETICS_API_NAMESPACE: Override storage.namespace
    - SYNTHETICS_API_KUBECONFIG: Override storage.kubeconfig
    - SYNTHETICS_API_MONITOR_INTERVAL: Override monitor.interval
    - SYNTHETICS_API_LOG_LEVEL: Override logging.level
    """
    overrides = (
        ("HOST", "server", "host"),
        ("PORT", "server", "port"),
        ("DATABASE_ENGINE", "storage", "engine"),
        ("DATA_DIR", "storage", "data_dir"),
        ("NAMESPACE", "storage", "namespace"),
        ("KUBECONFIG", "storage", "kubeconfig"),
        ("MONITOR_INTERVAL", "monitor", "interval"),
        ("LOG_LEVEL", "logging", "level"),
    )

    for env_name, section, key in overrides:
        value = os.environ.get(ENV_PREFIX + env_name)
        if value is None:
            continue
        if not isinstance(config_data.get(section), dict):
            config_data[section] = {}
        config_data[section][key] = value

    return config_data


def _read_config_file(config_path: str) -> dict:
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    return data


def load_config(config_path: str | None = None) -> Config:
    """Load and validate configuration.

    Defaults are used for anything the file leaves out, and environment
    variables override both.

    Args:
        config_path: Optional path to a YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    data = _read_config_file(config_path) if config_path else {}
    data = _apply_env_overrides(data)

    return Config(
        server=_parse_server_config(_section(data, "server")),
        storage=_parse_storage_config(_section(data, "storage")),
        monitor=_parse_monitor_config(_section(data, "monitor")),
        logging=_parse_logging_config(_section(data, "logging")),
    )


def apply_cli_overrides(
    config: Config,
    host: str | None = None,
    port: int | None = None,
    database_engine: str | None = None,
    data_dir: str | None = None,
    namespace: str | None = None,
    kubeconfig: str | None = None,
    log_level: str | None = None,
) -> Config:
    """Return a copy of config with explicitly given command-line values applied.

    Raises:
        ConfigError: If an override is invalid.
    """
    server_changes: dict[str, Any] = {}
    if host is not None:
        server_changes["host"] = host
    if port is not None:
        server_changes["port"] = port

    storage_changes: dict[str, Any] = {}
    if database_engine is not None:
        storage_changes["engine"] = database_engine
    if data_dir is not None:
        storage_changes["data_dir"] = data_dir
    if namespace is not None:
        storage_changes["namespace"] = namespace
    if kubeconfig is not None:
        storage_changes["kubeconfig"] = kubeconfig

    logging_config = config.logging
    if log_level is not None:
        logging_config = LoggingConfig(level=log_level.lower())

    return replace(
        config,
        server=replace(config.server, **server_changes),
        storage=replace(config.storage, **storage_changes),
        logging=logging_config,
    )
