"""
Parley - Configuration Management

This module handles loading, merging, and managing configuration from
TOML files and environment variables. The engine itself never reads the
environment: ``AgentConfig.from_config()`` turns the loaded values into a
frozen, validated struct that is passed to the synchronizer, the stream
router and the agent.

Author: orpheus497
Version: 1.0.0
"""

import copy
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .constants import (
    CONFIG_FILENAME,
    DEFAULT_CONTENT_TYPES,
    DEFAULT_DATA_DIR,
    LOG_LEVELS,
    MATRIX_DEFAULT_HOMESERVER,
    MATRIX_DEVICE_NAME,
    MATRIX_SYNC_TIMEOUT,
    NETWORK_RETRY_ATTEMPTS,
    NETWORK_TIMEOUT,
    STREAM_BACKOFF_BASE,
    STREAM_BATCH_SIZE,
    STREAM_DEDUP_WINDOW,
    STREAM_MAX_BACKOFF,
    STREAM_MAX_RECONNECT_ATTEMPTS,
    STREAM_REORDER_WINDOW,
    SYNC_ALL_EVERY,
    SYNC_INTERVAL,
    SYNC_TIMEOUT,
)
from .errors import ConfigError, ErrorCode

ENV_PREFIX = "PARLEY"

# Default configuration dictionary
DEFAULT_CONFIG: Dict[str, Any] = {
    "agent": {
        "data_dir": DEFAULT_DATA_DIR,
        "content_types": ",".join(DEFAULT_CONTENT_TYPES),
    },
    "sync": {
        "interval": SYNC_INTERVAL,
        "timeout": SYNC_TIMEOUT,
        "full_every": SYNC_ALL_EVERY,
    },
    "stream": {
        "dedup_window": STREAM_DEDUP_WINDOW,
        "reorder_window": STREAM_REORDER_WINDOW,
        "batch_size": STREAM_BATCH_SIZE,
        "backoff_base": STREAM_BACKOFF_BASE,
        "max_backoff": STREAM_MAX_BACKOFF,
        "max_reconnect_attempts": STREAM_MAX_RECONNECT_ATTEMPTS,
    },
    "network": {
        "timeout": NETWORK_TIMEOUT,
        "retry_attempts": NETWORK_RETRY_ATTEMPTS,
    },
    "matrix": {
        "homeserver": MATRIX_DEFAULT_HOMESERVER,
        "user_id": "",
        "device_name": MATRIX_DEVICE_NAME,
        "password": "",
        "access_token": "",
        "sync_timeout": MATRIX_SYNC_TIMEOUT,
    },
    "logging": {
        "level": "INFO",
        "file_logging": True,
        "console_logging": True,
    },
}


class Config:
    """Configuration manager for Parley.

    Loads configuration from TOML files, merges with defaults,
    and applies environment variable overrides.

    Attributes:
        config_path: Path to the configuration file
        data: Configuration dictionary
    """

    def __init__(self, config_path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration file (optional)
                If not provided, uses default location
            environ: Environment mapping for overrides (defaults to os.environ)
        """
        if config_path is None:
            config_path = Path(DEFAULT_DATA_DIR).expanduser() / CONFIG_FILENAME

        self.config_path = Path(config_path)
        self._environ = os.environ if environ is None else environ
        self.data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file and merge with defaults.

        Raises:
            ConfigError: If configuration loading or parsing fails
        """
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, "rb") as f:
                    file_config = tomllib.load(f)
            except (OSError, tomllib.TOMLDecodeError) as e:
                raise ConfigError(
                    ErrorCode.E704_CONFIG_PARSE_ERROR,
                    f"Failed to parse configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                ) from e
            config = self._merge_config(config, file_config)

        return self._apply_env_overrides(config)

    def _merge_config(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge override config into base config."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration.

        Environment variables follow the pattern: PARLEY_SECTION_KEY
        For example: PARLEY_STREAM_MAX_BACKOFF=60

        Raises:
            ConfigError: If an override cannot be converted to the key's type
        """
        result = copy.deepcopy(config)

        for section, settings in config.items():
            if not isinstance(settings, dict):
                continue

            for key, current in settings.items():
                env_var = f"{ENV_PREFIX}_{section.upper()}_{key.upper()}"
                env_value = self._environ.get(env_var)
                if env_value is None:
                    continue

                try:
                    if isinstance(current, bool):
                        result[section][key] = env_value.lower() in ("true", "1", "yes")
                    elif isinstance(current, int):
                        result[section][key] = int(env_value)
                    elif isinstance(current, float):
                        result[section][key] = float(env_value)
                    else:
                        result[section][key] = env_value
                except ValueError as e:
                    raise ConfigError(
                        ErrorCode.E703_INVALID_CONFIG,
                        f"Invalid value for {env_var}: {env_value!r}",
                        {"variable": env_var, "error": str(e)},
                    ) from e

        return result

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        return self.data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        """Set a configuration value."""
        if section not in self.data:
            self.data[section] = {}

        self.data[section][key] = value

    def save(self) -> None:
        """Save current configuration to file.

        Raises:
            ConfigError: If saving fails
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w", encoding="utf-8") as f:
                self._write_toml(f, self.data)
        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to save configuration: {e}",
                {"path": str(self.config_path), "error": str(e)},
            ) from e

    @staticmethod
    def _write_toml(file, data: Dict[str, Any]) -> None:
        """Write configuration data as TOML format."""
        for section, settings in data.items():
            if isinstance(settings, dict):
                file.write(f"[{section}]\n")
                for key, value in settings.items():
                    if isinstance(value, bool):
                        file.write(f"{key} = {str(value).lower()}\n")
                    elif isinstance(value, (int, float)):
                        file.write(f"{key} = {value}\n")
                    elif isinstance(value, str):
                        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
                        file.write(f'{key} = "{escaped}"\n')
                file.write("\n")

    def to_dict(self) -> Dict[str, Any]:
        """Get configuration as dictionary."""
        return copy.deepcopy(self.data)

    @classmethod
    def create_example(cls, path: Path) -> None:
        """Create an example configuration file.

        Raises:
            ConfigError: If file creation fails
        """
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                f.write("# Parley Configuration File\n")
                f.write("# Generated example configuration\n\n")
                cls._write_toml(f, DEFAULT_CONFIG)
        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to create example configuration: {e}",
                {"path": str(path), "error": str(e)},
            ) from e


@dataclass(frozen=True)
class StreamSettings:
    dedup_window: int = STREAM_DEDUP_WINDOW
    reorder_window: float = STREAM_REORDER_WINDOW
    batch_size: int = STREAM_BATCH_SIZE
    backoff_base: float = STREAM_BACKOFF_BASE
    max_backoff: float = STREAM_MAX_BACKOFF
    max_reconnect_attempts: int = STREAM_MAX_RECONNECT_ATTEMPTS


@dataclass(frozen=True)
class AgentConfig:
    """Validated settings for one agent instance.

    Built once, validated at construction, and passed by reference to the
    synchronizer, router and group state machine.
    """

    data_dir: Optional[Path] = None
    content_types: Tuple[str, ...] = DEFAULT_CONTENT_TYPES
    sync_interval: float = SYNC_INTERVAL
    sync_timeout: float = SYNC_TIMEOUT
    full_sync_every: int = SYNC_ALL_EVERY
    network_timeout: float = NETWORK_TIMEOUT
    retry_attempts: int = NETWORK_RETRY_ATTEMPTS
    stream: StreamSettings = field(default_factory=StreamSettings)
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Check every setting.

        Raises:
            ConfigError: On the first invalid setting
        """
        problems = []
        if not self.content_types:
            problems.append("content_types must not be empty")
        if self.sync_interval <= 0:
            problems.append("sync_interval must be positive")
        if self.sync_timeout <= 0 or self.network_timeout <= 0:
            problems.append("timeouts must be positive")
        if self.full_sync_every < 1:
            problems.append("full_sync_every must be at least 1")
        if self.retry_attempts < 1:
            problems.append("retry_attempts must be at least 1")
        if self.stream.dedup_window < 1:
            problems.append("stream.dedup_window must be at least 1")
        if self.stream.reorder_window < 0:
            problems.append("stream.reorder_window must not be negative")
        if self.stream.batch_size < 1:
            problems.append("stream.batch_size must be at least 1")
        if self.stream.backoff_base <= 0:
            problems.append("stream.backoff_base must be positive")
        if self.stream.max_backoff < self.stream.backoff_base:
            problems.append("stream.max_backoff must be at least stream.backoff_base")
        if self.stream.max_reconnect_attempts < 1:
            problems.append("stream.max_reconnect_attempts must be at least 1")
        if self.log_level.upper() not in LOG_LEVELS:
            problems.append(f"unknown log level {self.log_level!r}")

        if problems:
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG,
                f"Invalid agent configuration: {problems[0]}",
                {"problems": problems},
            )

    @classmethod
    def from_config(cls, config: Config) -> "AgentConfig":
        """Build and validate an AgentConfig from loaded configuration.

        Raises:
            ConfigError: If a value has the wrong type or fails validation
        """
        try:
            content_types = config.get("agent", "content_types", "")
            if isinstance(content_types, str):
                content_types = [t.strip() for t in content_types.split(",")]
            data_dir = config.get("agent", "data_dir")

            return cls(
                data_dir=Path(data_dir).expanduser() if data_dir else None,
                content_types=tuple(t for t in content_types if t),
                sync_interval=float(config.get("sync", "interval")),
                sync_timeout=float(config.get("sync", "timeout")),
                full_sync_every=int(config.get("sync", "full_every")),
                network_timeout=float(config.get("network", "timeout")),
                retry_attempts=int(config.get("network", "retry_attempts")),
                stream=StreamSettings(
                    dedup_window=int(config.get("stream", "dedup_window")),
                    reorder_window=float(config.get("stream", "reorder_window")),
                    batch_size=int(config.get("stream", "batch_size")),
                    backoff_base=float(config.get("stream", "backoff_base")),
                    max_backoff=float(config.get("stream", "max_backoff")),
                    max_reconnect_attempts=int(config.get("stream", "max_reconnect_attempts")),
                ),
                log_level=str(config.get("logging", "level", "INFO")).upper(),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG,
                f"Invalid configuration value: {e}",
                {"path": str(config.config_path), "error": str(e)},
            ) from e
