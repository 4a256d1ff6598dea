"""
SparkChat - Configuration.

Settings come from three layers, later ones winning: built-in defaults,
the TOML file and SPARKCHAT_<SECTION>_<KEY> environment variables.
ServerConfig and SessionSettings are the typed views the session uses.
"""

import copy
import io
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, TextIO
from urllib.parse import urlsplit

import aiofiles

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .constants import (
    CONFIG_FILENAME,
    DEFAULT_BROKER_URL,
    DEFAULT_DATA_DIR,
    DEFAULT_PORT,
    DEFAULT_TOPIC_PREFIX,
    RECONNECT_INTERVAL,
    TYPING_EXPIRY_MS,
    TYPING_SWEEP_INTERVAL,
    TYPING_THROTTLE_MS,
    TYPING_TIMEOUT_MS,
)
from .errors import ConfigError, ErrorCode
from .utils import validate_broker_url, validate_port

logger = logging.getLogger(__name__)

# Every key that may appear in the file, with its default
DEFAULT_CONFIG: Dict[str, Any] = {
    "broker": {
        "broker_url": DEFAULT_BROKER_URL,
        "port": DEFAULT_PORT,
        "topic_prefix": DEFAULT_TOPIC_PREFIX,
        "reconnect_interval": RECONNECT_INTERVAL,
    },
    "user": {
        "username": "",
    },
    "typing": {
        "throttle_ms": TYPING_THROTTLE_MS,
        "timeout_ms": TYPING_TIMEOUT_MS,
        "expiry_ms": TYPING_EXPIRY_MS,
        "sweep_interval": TYPING_SWEEP_INTERVAL,
    },
    "logging": {
        "level": "INFO",
        "file_logging": False,
    },
}


@dataclass
class ServerConfig:
    """Where to find the broker and which room to join."""

    broker_url: str = DEFAULT_BROKER_URL
    port: int = DEFAULT_PORT
    topic_prefix: str = DEFAULT_TOPIC_PREFIX

    @property
    def broker_address(self) -> str:
        """Full broker address with the port applied, e.g. "wss://host:8081"."""
        parts = urlsplit(self.broker_url)
        return f"{parts.scheme}://{parts.hostname}:{self.port}{parts.path}"

    def validate(self) -> None:
        """
        Raises:
            ConfigError: If any field is unusable
        """
        if not validate_broker_url(self.broker_url):
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG,
                f"Invalid broker URL: {self.broker_url}",
                {"broker_url": self.broker_url},
            )
        if not validate_port(self.port):
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG, f"Invalid port: {self.port}", {"port": self.port}
            )
        if not isinstance(self.topic_prefix, str) or not self.topic_prefix.strip():
            raise ConfigError(ErrorCode.E703_INVALID_CONFIG, "Topic prefix cannot be empty")
        if any(c in self.topic_prefix for c in "+#"):
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG,
                f"Topic prefix cannot contain wildcards: {self.topic_prefix}",
                {"topic_prefix": self.topic_prefix},
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "broker_url": self.broker_url,
            "port": self.port,
            "topic_prefix": self.topic_prefix,
        }


@dataclass
class SessionSettings:
    """Timing knobs of a chat session."""

    typing_throttle_ms: int = TYPING_THROTTLE_MS
    typing_timeout_ms: int = TYPING_TIMEOUT_MS
    typing_expiry_ms: int = TYPING_EXPIRY_MS
    typing_sweep_interval: float = TYPING_SWEEP_INTERVAL
    reconnect_interval: int = RECONNECT_INTERVAL

    def validate(self) -> None:
        """
        Raises:
            ConfigError: If a window is not positive, or the idle timeout
                does not exceed the throttle interval
        """
        for name in (
            "typing_throttle_ms",
            "typing_timeout_ms",
            "typing_expiry_ms",
            "typing_sweep_interval",
            "reconnect_interval",
        ):
            if getattr(self, name) <= 0:
                raise ConfigError(
                    ErrorCode.E703_INVALID_CONFIG,
                    f"{name} must be positive",
                    {name: getattr(self, name)},
                )

        # Otherwise the stop signal fires between two start signals
        if self.typing_timeout_ms <= self.typing_throttle_ms:
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG,
                "Typing idle timeout must be longer than the throttle interval",
                {
                    "typing_timeout_ms": self.typing_timeout_ms,
                    "typing_throttle_ms": self.typing_throttle_ms,
                },
            )


class Config:
    """Layered SparkChat settings backed by a TOML file.

    Attributes:
        config_path: File the settings are read from and saved to
        data: Merged settings, section -> key -> value
    """

    def __init__(self, config_path: Optional[Path] = None):
        """
        Args:
            config_path: Settings file; defaults to ~/.sparkchat/config.toml
        """
        if config_path is None:
            data_dir = Path(DEFAULT_DATA_DIR).expanduser()
            config_path = data_dir / CONFIG_FILENAME

        self.config_path = Path(config_path)
        self.data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Build the settings dict: defaults, then the file, then the environment.

        Returns:
            Settings dict

        Raises:
            ConfigError: If the file exists but cannot be read or parsed
        """
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, "rb") as f:
                    file_config = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigError(
                    ErrorCode.E704_CONFIG_PARSE_ERROR,
                    f"Failed to parse configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                ) from e
            except OSError as e:
                raise ConfigError(
                    ErrorCode.E701_CONFIG_LOAD_FAILED,
                    f"Failed to read configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                ) from e

            config = self._merge_config(config, file_config)
            logger.debug(f"Loaded configuration from {self.config_path}")

        return self._apply_env_overrides(config)

    def _merge_config(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep-merge override into a copy of base."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Override known keys from SPARKCHAT_<SECTION>_<KEY> variables.

        Values are coerced to the type of the value they replace, e.g.
        SPARKCHAT_BROKER_PORT=8883 becomes the int 8883.
        """
        for section, settings in config.items():
            if not isinstance(settings, dict):
                continue

            for key, current in settings.items():
                env_var = f"SPARKCHAT_{section.upper()}_{key.upper()}"
                env_value = os.environ.get(env_var)
                if env_value is None:
                    continue

                original_type = type(current)
                try:
                    if original_type == bool:
                        settings[key] = env_value.lower() in ("true", "1", "yes")
                    elif original_type == int:
                        settings[key] = int(env_value)
                    elif original_type == float:
                        settings[key] = float(env_value)
                    else:
                        settings[key] = env_value
                except ValueError:
                    logger.warning(f"Ignoring {env_var}={env_value!r}: expected {original_type.__name__}")

        return config

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Look up section.key, falling back to default."""
        return self.data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        """Set section.key in memory; call save() to persist."""
        if section not in self.data:
            self.data[section] = {}

        self.data[section][key] = value

    def server_config(self) -> ServerConfig:
        """Typed view of the [broker] section."""
        return ServerConfig(
            broker_url=self.get("broker", "broker_url", DEFAULT_BROKER_URL),
            port=self.get("broker", "port", DEFAULT_PORT),
            topic_prefix=self.get("broker", "topic_prefix", DEFAULT_TOPIC_PREFIX),
        )

    def session_settings(self) -> SessionSettings:
        """Typed view of the [typing] section plus the reconnect interval."""
        return SessionSettings(
            typing_throttle_ms=self.get("typing", "throttle_ms", TYPING_THROTTLE_MS),
            typing_timeout_ms=self.get("typing", "timeout_ms", TYPING_TIMEOUT_MS),
            typing_expiry_ms=self.get("typing", "expiry_ms", TYPING_EXPIRY_MS),
            typing_sweep_interval=self.get("typing", "sweep_interval", TYPING_SWEEP_INTERVAL),
            reconnect_interval=self.get("broker", "reconnect_interval", RECONNECT_INTERVAL),
        )

    def save(self) -> None:
        """Write the settings back to config_path atomically.

        Raises:
            ConfigError: If saving fails
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)

            temp_file = f"{self.config_path}.tmp"
            with open(temp_file, "w", encoding="utf-8") as f:
                self._write_toml(f, self.data)
            os.replace(temp_file, self.config_path)

        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to save configuration: {e}",
                {"path": str(self.config_path), "error": str(e)},
            ) from e

    async def save_async(self) -> None:
        """Async variant of save() for use on the event loop.

        Raises:
            ConfigError: If saving fails
        """
        buffer = io.StringIO()
        self._write_toml(buffer, self.data)

        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)

            # Write to temporary file first
            temp_file = f"{self.config_path}.tmp"
            async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
                await f.write(buffer.getvalue())

            # Atomic rename
            os.replace(temp_file, self.config_path)
            logger.debug(f"Saved configuration to {self.config_path}")

        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to save configuration: {e}",
                {"path": str(self.config_path), "error": str(e)},
            ) from e

    @staticmethod
    def _write_toml(file: TextIO, data: Dict[str, Any]) -> None:
        """Serialize flat section/key settings as TOML."""
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
        """Deep copy of the merged settings."""
        return copy.deepcopy(self.data)

    @classmethod
    def create_example(cls, path: Path) -> None:
        """Write the defaults to path as a starting point for editing.

        Raises:
            ConfigError: If the file cannot be written
        """
        try:
            path.parent.mkdir(parents=True, exist_ok=True)

            with open(path, "w", encoding="utf-8") as f:
                f.write("# SparkChat Configuration File\n")
                f.write("# Defaults; remove what you do not want to change\n\n")
                cls._write_toml(f, DEFAULT_CONFIG)

        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to create example configuration: {e}",
                {"path": str(path), "error": str(e)},
            ) from e
