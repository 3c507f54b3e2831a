"""Tests for config.yaml / .env handling and the server layout helpers."""
import os

import pytest
import yaml

from arsm.errors import IOFailure
from arsm.config import (
    DATA_DIR_ENV,
    DEFAULTS,
    JWT_SECRET_KEY,
    ConfigManager,
    server_config_path,
    server_launch,
    server_log_dir,
)


@pytest.fixture
def manager(tmp_path, monkeypatch):
    monkeypatch.delenv(DATA_DIR_ENV, raising=False)
    monkeypatch.delenv(JWT_SECRET_KEY, raising=False)
    return ConfigManager(str(tmp_path))


def test_defaults_without_file(manager):
    config = manager.load()
    assert config["web"] == DEFAULTS["web"]
    assert config["logs"]["buffer_size"] == 500
    assert "_config_error" not in config


def test_partial_file_is_merged(manager, tmp_path):
    (tmp_path / "config.yaml").write_text("web:\n  port: 9000\n")
    config = manager.load()
    assert config["web"]["port"] == 9000
    assert config["web"]["host"] == DEFAULTS["web"]["host"]


def test_corrupt_file_falls_back_to_defaults(manager, tmp_path):
    (tmp_path / "config.yaml").write_text("web: [unclosed\n")
    config = manager.load()
    assert "_config_error" in config
    assert config["web"]["port"] == DEFAULTS["web"]["port"]


def test_load_does_not_mutate_defaults(manager):
    manager.load()["paths"]["server_path"] = "/changed"
    assert DEFAULTS["paths"]["server_path"] != "/changed"


def test_settings_round_trip(manager, tmp_path):
    manager.save_settings({"server_path": "/srv/reforger", "bogus": "ignored"})
    settings = manager.get_settings()
    assert settings["server_path"] == "/srv/reforger"
    assert "bogus" not in settings

    with open(tmp_path / "config.yaml", encoding="utf-8") as f:
        saved = yaml.safe_load(f)
    assert saved["paths"]["server_path"] == "/srv/reforger"
    assert "web" in saved


def test_data_dir_override(manager, tmp_path, monkeypatch):
    assert manager.data_dir() == os.path.join(str(tmp_path), "data")
    monkeypatch.setenv(DATA_DIR_ENV, str(tmp_path / "elsewhere"))
    assert manager.data_dir() == str(tmp_path / "elsewhere")


def test_jwt_secret_is_generated_once(manager, tmp_path):
    (tmp_path / ".env").write_text("OTHER=1")
    secret = manager.ensure_jwt_secret()
    assert len(secret) >= 32
    assert manager.ensure_jwt_secret() == secret

    env = (tmp_path / ".env").read_text()
    assert "OTHER=1\n" in env
    assert f"{JWT_SECRET_KEY}={secret}" in env


def test_jwt_secret_from_environment(manager, monkeypatch):
    monkeypatch.setenv(JWT_SECRET_KEY, "from-env")
    assert manager.ensure_jwt_secret() == "from-env"


def test_server_layout(tmp_path):
    server_path = str(tmp_path / "server")
    executable, args, workdir = server_launch(server_path)

    assert os.path.dirname(executable) == server_path
    assert os.path.basename(executable).startswith("ArmaReforgerServer")
    assert args[:2] == ["-config", server_config_path(server_path)]
    assert args[2] == "-profile"
    assert server_log_dir(server_path).startswith(args[3])
    assert workdir == server_path


def test_empty_section_keeps_defaults(manager, tmp_path):
    (tmp_path / "config.yaml").write_text("paths:\nweb:\n  port: 9001\n")
    config = manager.load()
    assert config["paths"] == DEFAULTS["paths"]
    assert config["web"]["port"] == 9001
    assert "paths" in config["_config_error"]


@pytest.mark.parametrize("content, section, key", [
    ("logs:\n  buffer_size: lots\n", "logs", "buffer_size"),
    ("supervisor:\n  grace_period: soon\n", "supervisor", "grace_period"),
    ("logs:\n  poll_interval: -1\n", "logs", "poll_interval"),
    ("paths:\n  server_path: 42\n", "paths", "server_path"),
])
def test_wrongly_typed_values_keep_defaults(manager, tmp_path, content, section, key):
    (tmp_path / "config.yaml").write_text(content)
    config = manager.load()
    assert config[section][key] == DEFAULTS[section][key]
    assert f"{section}.{key}" in config["_config_error"]


def test_unreadable_env_falls_back_to_memory_secret(manager, tmp_path):
    (tmp_path / ".env").mkdir()
    secret = manager.ensure_jwt_secret()
    assert len(secret) >= 32
    # Stable for the lifetime of the manager
    assert manager.ensure_jwt_secret() == secret


def test_unwritable_config_raises_io_failure(manager, tmp_path):
    (tmp_path / "config.yaml").mkdir()
    with pytest.raises(IOFailure):
        manager.save_settings({"server_path": "/srv/reforger"})
