"""
SparkChat - User preferences.

Persists the two things that outlive a session: the display name and the
broker settings. Both live in the [user] and [broker] sections of the
configuration file.
"""

import logging
from typing import Tuple

from .config import Config, ServerConfig
from .crypto import generate_anonymous_name
from .errors import ConfigError, ErrorCode
from .utils import validate_username

logger = logging.getLogger(__name__)


class PreferencesStore:
    """Load/save contract for the display name and server configuration."""

    def __init__(self, config: Config):
        self.config = config

    def load_identity(self) -> Tuple[str, ServerConfig]:
        """
        Load the stored display name and server configuration.

        A first run has no display name yet; an "Anonymous-xxxxx" name is
        generated and saved so the user keeps it across restarts.

        Returns:
            (display_name, server_config)
        """
        name = str(self.config.get("user", "username", "") or "").strip()
        if not name:
            name = generate_anonymous_name()
            self.config.set("user", "username", name)
            try:
                self.config.save()
            except ConfigError as e:
                logger.warning(f"Could not persist generated display name: {e}")
            logger.info(f"Assigned display name {name}")

        return name, self.config.server_config()

    def _apply_display_name(self, name: str) -> bool:
        name = name.strip()
        if not name:
            return False
        if not validate_username(name):
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG, "Display name is too long", {"length": len(name)}
            )
        self.config.set("user", "username", name)
        return True

    def _apply_server_config(self, server: ServerConfig) -> None:
        server.validate()
        for key, value in server.to_dict().items():
            self.config.set("broker", key, value)

    def save_display_name(self, name: str) -> None:
        """Store a new display name; blank names are ignored."""
        if self._apply_display_name(name):
            self.config.save()

    def save_server_config(self, server: ServerConfig) -> None:
        """
        Store new broker settings.

        Raises:
            ConfigError: If the settings are invalid or cannot be saved
        """
        self._apply_server_config(server)
        self.config.save()

    async def save_display_name_async(self, name: str) -> None:
        if self._apply_display_name(name):
            await self.config.save_async()

    async def save_server_config_async(self, server: ServerConfig) -> None:
        self._apply_server_config(server)
        await self.config.save_async()
