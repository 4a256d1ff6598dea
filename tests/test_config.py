"""
SparkChat - Configuration tests.
"""

import pytest

from sparkchat.config import DEFAULT_CONFIG, Config, ServerConfig, SessionSettings
from sparkchat.constants import DEFAULT_BROKER_URL, DEFAULT_TOPIC_PREFIX
from sparkchat.errors import ConfigError, ErrorCode


class TestConfig:
    """Loading, merging and saving."""

    def test_defaults_without_file(self, temp_dir):
        config = Config(temp_dir / "config.toml")

        assert config.get("broker", "broker_url") == DEFAULT_BROKER_URL
        assert config.get("broker", "topic_prefix") == DEFAULT_TOPIC_PREFIX
        assert config.get("user", "username") == ""
        assert config.get("missing", "key", "fallback") == "fallback"

    def test_file_merged_over_defaults(self, temp_dir):
        path = temp_dir / "config.toml"
        path.write_text('[broker]\ntopic_prefix = "my-room"\n\n[user]\nusername = "alice"\n')

        config = Config(path)

        assert config.get("broker", "topic_prefix") == "my-room"
        assert config.get("broker", "broker_url") == DEFAULT_BROKER_URL
        assert config.get("user", "username") == "alice"

    def test_defaults_not_mutated(self, temp_dir):
        config = Config(temp_dir / "config.toml")
        config.set("broker", "port", 1)
        assert DEFAULT_CONFIG["broker"]["port"] != 1

    def test_parse_error(self, temp_dir):
        path = temp_dir / "config.toml"
        path.write_text("[broker\nport = ")

        with pytest.raises(ConfigError) as exc_info:
            Config(path)
        assert exc_info.value.code == ErrorCode.E704_CONFIG_PARSE_ERROR

    def test_env_overrides(self, temp_dir, monkeypatch):
        monkeypatch.setenv("SPARKCHAT_BROKER_PORT", "8883")
        monkeypatch.setenv("SPARKCHAT_LOGGING_FILE_LOGGING", "yes")
        monkeypatch.setenv("SPARKCHAT_BROKER_TOPIC_PREFIX", "env-room")

        config = Config(temp_dir / "config.toml")

        assert config.get("broker", "port") == 8883
        assert config.get("logging", "file_logging") is True
        assert config.get("broker", "topic_prefix") == "env-room"

    def test_invalid_env_override_ignored(self, temp_dir, monkeypatch):
        monkeypatch.setenv("SPARKCHAT_BROKER_PORT", "not-a-number")
        config = Config(temp_dir / "config.toml")
        assert config.get("broker", "port") == DEFAULT_CONFIG["broker"]["port"]

    def test_save_and_reload(self, temp_dir):
        path = temp_dir / "nested" / "config.toml"
        config = Config(path)
        config.set("user", "username", 'say "hi"')
        config.set("typing", "sweep_interval", 0.5)

        config.save()
        reloaded = Config(path)

        assert reloaded.get("user", "username") == 'say "hi"'
        assert reloaded.get("typing", "sweep_interval") == 0.5
        assert reloaded.get("logging", "file_logging") is False
        assert not (temp_dir / "nested" / "config.toml.tmp").exists()

    @pytest.mark.asyncio
    async def test_save_async(self, temp_dir):
        path = temp_dir / "config.toml"
        config = Config(path)
        config.set("broker", "topic_prefix", "async-room")

        await config.save_async()

        assert Config(path).get("broker", "topic_prefix") == "async-room"

    def test_save_failure(self, temp_dir):
        blocker = temp_dir / "file"
        blocker.write_text("")
        config = Config(blocker / "config.toml")

        with pytest.raises(ConfigError) as exc_info:
            config.save()
        assert exc_info.value.code == ErrorCode.E702_CONFIG_SAVE_FAILED

    def test_create_example(self, temp_dir):
        path = temp_dir / "example.toml"

        Config.create_example(path)

        assert path.read_text().startswith("# SparkChat Configuration File")
        assert Config(path).to_dict() == DEFAULT_CONFIG

    def test_typed_views(self, temp_dir):
        config = Config(temp_dir / "config.toml")
        config.set("typing", "throttle_ms", 500)

        assert config.server_config() == ServerConfig()
        settings = config.session_settings()
        assert settings.typing_throttle_ms == 500
        assert settings.typing_timeout_ms == SessionSettings().typing_timeout_ms


class TestServerConfig:
    """Broker settings validation."""

    def test_broker_address(self):
        server = ServerConfig(broker_url="wss://test.mosquitto.org", port=8081)
        assert server.broker_address == "wss://test.mosquitto.org:8081"

    def test_broker_address_keeps_path(self):
        server = ServerConfig(broker_url="ws://broker.example/mqtt", port=9001)
        assert server.broker_address == "ws://broker.example:9001/mqtt"

    def test_defaults_valid(self):
        ServerConfig().validate()

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"broker_url": "http://broker.example"},
            {"port": 0},
            {"port": 70000},
            {"topic_prefix": "   "},
            {"topic_prefix": "room/#"},
            {"topic_prefix": "room/+/x"},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigError) as exc_info:
            ServerConfig(**kwargs).validate()
        assert exc_info.value.code == ErrorCode.E703_INVALID_CONFIG


class TestSessionSettings:
    """Typing and reconnect timing validation."""

    def test_defaults_valid(self):
        SessionSettings().validate()

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"typing_expiry_ms": 0},
            {"typing_sweep_interval": -1},
            {"reconnect_interval": 0},
            {"typing_throttle_ms": 3000, "typing_timeout_ms": 3000},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigError):
            SessionSettings(**kwargs).validate()
