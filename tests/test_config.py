"""Tests for environment-driven configuration."""

import pytest

from preview_runtime.config import Config, ConfigError


@pytest.fixture
def no_env_file(tmp_path):
    return tmp_path / "absent.env"


def test_defaults(no_env_file, monkeypatch):
    for name in ("PREVIEW_PORT_RANGE_START", "PREVIEW_PORT_RANGE_END", "PREVIEW_BUILD_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)

    config = Config(env_file=no_env_file)

    assert config.port_range_start == 10000
    assert config.port_range_end == 20000
    assert config.build_timeout == 300
    assert config.install_command == "npm install --ignore-scripts --omit=dev --loglevel=error"


def test_environment_overrides(no_env_file, monkeypatch):
    monkeypatch.setenv("PREVIEW_PORT_RANGE_START", "30000")
    monkeypatch.setenv("PREVIEW_PORT_RANGE_END", "30010")
    monkeypatch.setenv("PREVIEW_START_TIMEOUT", "2.5")
    monkeypatch.setenv("PREVIEW_LOG_JSON", "true")
    monkeypatch.setenv("PREVIEW_LOG_LEVEL", "debug")

    config = Config(env_file=no_env_file)

    assert (config.port_range_start, config.port_range_end) == (30000, 30010)
    assert config.start_timeout == 2.5
    assert config.log_json is True
    assert config.log_level == "DEBUG"


def test_env_file_is_loaded(tmp_path, monkeypatch):
    monkeypatch.delenv("PREVIEW_BUILD_COMMAND", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("PREVIEW_BUILD_COMMAND=pnpm build\n")

    config = Config(env_file=env_file)

    assert config.build_command == "pnpm build"
    monkeypatch.delenv("PREVIEW_BUILD_COMMAND", raising=False)


def test_inverted_port_range(no_env_file, monkeypatch):
    monkeypatch.setenv("PREVIEW_PORT_RANGE_START", "20000")
    monkeypatch.setenv("PREVIEW_PORT_RANGE_END", "10000")

    with pytest.raises(ConfigError, match="PORT_RANGE"):
        Config(env_file=no_env_file)


def test_problems_reported_together(no_env_file, monkeypatch):
    monkeypatch.setenv("PREVIEW_INSTALL_TIMEOUT", "0")
    monkeypatch.setenv("PREVIEW_SESSION_TTL", "-1")

    with pytest.raises(ConfigError) as exc_info:
        Config(env_file=no_env_file)

    message = str(exc_info.value)
    assert "PREVIEW_INSTALL_TIMEOUT" in message
    assert "PREVIEW_SESSION_TTL" in message


def test_non_numeric_value(no_env_file, monkeypatch):
    monkeypatch.setenv("PREVIEW_MAX_OUTPUT_LINES", "lots")
    with pytest.raises(ConfigError, match="integer"):
        Config(env_file=no_env_file)
