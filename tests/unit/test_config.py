"""
Unit tests for parley.config.

Created by orpheus497
"""

from pathlib import Path

import pytest

from parley.config import AgentConfig, Config, StreamSettings
from parley.constants import DEFAULT_CONTENT_TYPES, STREAM_MAX_RECONNECT_ATTEMPTS
from parley.errors import ConfigError, ErrorCode


class TestConfig:
    """Test loading and merging configuration."""

    def test_defaults_without_file(self, temp_dir):
        config = Config(temp_dir / "missing.toml", environ={})
        assert config.get("stream", "max_reconnect_attempts") == STREAM_MAX_RECONNECT_ATTEMPTS
        assert config.get("nope", "key", "fallback") == "fallback"

    def test_file_overrides_defaults(self, temp_dir):
        path = temp_dir / "config.toml"
        path.write_text('[stream]\nmax_backoff = 60.0\n\n[matrix]\nuser_id = "@bot:example.org"\n')

        config = Config(path, environ={})

        assert config.get("stream", "max_backoff") == 60.0
        assert config.get("stream", "batch_size") == 100
        assert config.get("matrix", "user_id") == "@bot:example.org"

    def test_environment_overrides(self, temp_dir):
        environ = {
            "PARLEY_STREAM_MAX_RECONNECT_ATTEMPTS": "9",
            "PARLEY_LOGGING_FILE_LOGGING": "false",
            "PARLEY_AGENT_CONTENT_TYPES": "text,reaction",
        }
        config = Config(temp_dir / "config.toml", environ=environ)

        assert config.get("stream", "max_reconnect_attempts") == 9
        assert config.get("logging", "file_logging") is False
        assert config.get("agent", "content_types") == "text,reaction"

    def test_invalid_environment_value(self, temp_dir):
        with pytest.raises(ConfigError) as exc_info:
            Config(temp_dir / "config.toml", environ={"PARLEY_SYNC_INTERVAL": "soon"})
        assert exc_info.value.code is ErrorCode.E703_INVALID_CONFIG

    def test_parse_error(self, temp_dir):
        path = temp_dir / "config.toml"
        path.write_text("[stream\n")
        with pytest.raises(ConfigError) as exc_info:
            Config(path, environ={})
        assert exc_info.value.code is ErrorCode.E704_CONFIG_PARSE_ERROR

    def test_save_and_reload(self, temp_dir):
        path = temp_dir / "nested" / "config.toml"
        config = Config(path, environ={})
        config.set("matrix", "user_id", '@bot:"quoted"')
        config.save()

        reloaded = Config(path, environ={})
        assert reloaded.get("matrix", "user_id") == '@bot:"quoted"'

    def test_create_example(self, temp_dir):
        path = temp_dir / "example.toml"
        Config.create_example(path)
        text = path.read_text()
        assert "[stream]" in text
        assert Config(path, environ={}).get("sync", "interval") == 60


class TestAgentConfig:
    """Test the validated agent settings."""

    def test_from_config(self, temp_dir):
        config = Config(
            temp_dir / "config.toml",
            environ={"PARLEY_AGENT_DATA_DIR": str(temp_dir), "PARLEY_LOGGING_LEVEL": "debug"},
        )

        agent_config = AgentConfig.from_config(config)

        assert agent_config.data_dir == Path(temp_dir)
        assert agent_config.content_types == DEFAULT_CONTENT_TYPES
        assert agent_config.log_level == "DEBUG"
        assert agent_config.stream.max_reconnect_attempts == STREAM_MAX_RECONNECT_ATTEMPTS

    def test_content_types_parsed(self, temp_dir):
        config = Config(temp_dir / "c.toml", environ={"PARLEY_AGENT_CONTENT_TYPES": " text , ,reaction"})
        assert AgentConfig.from_config(config).content_types == ("text", "reaction")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"content_types": ()},
            {"sync_interval": 0},
            {"retry_attempts": 0},
            {"log_level": "LOUD"},
            {"stream": StreamSettings(max_reconnect_attempts=0)},
            {"stream": StreamSettings(backoff_base=10, max_backoff=1)},
            {"stream": StreamSettings(reorder_window=-1)},
        ],
    )
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ConfigError) as exc_info:
            AgentConfig(**kwargs)
        assert exc_info.value.details["problems"]

    def test_wrong_type_in_file(self, temp_dir):
        path = temp_dir / "config.toml"
        path.write_text('[sync]\ninterval = "often"\n')
        with pytest.raises(ConfigError):
            AgentConfig.from_config(Config(path, environ={}))
