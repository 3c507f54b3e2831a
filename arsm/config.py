"""
ARSM - Configuration Manager
==============================
Handles loading and saving of panel configuration from two sources:

1. config.yaml  - Non-sensitive settings (web binding, SteamCMD and game
                  server paths, supervisor timings, log buffer size)
2. .env         - Secrets (the JWT signing key)

It also knows the on-disk layout of a Reforger dedicated server install
(executable name, config.json, profile directory) so the supervisor,
installer and log tailer agree on where things live.

Usage:
    config = ConfigManager(project_dir="/opt/arsm")
    settings = config.load()                       # merged with DEFAULTS
    config.update({"paths": {"server_path": "/srv/reforger"}})
    secret = config.ensure_jwt_secret()            # reads / creates .env entry
"""

import os
import sys
import logging
import secrets
from pathlib import Path

import yaml
from dotenv import dotenv_values

from arsm.errors import IOFailure

logger = logging.getLogger(__name__)


JWT_SECRET_KEY = "ARSM_JWT_SECRET"
DATA_DIR_ENV = "ARSM_DATA_DIR"

# Steam app id of the Arma Reforger dedicated server
SERVER_APP_ID = "1874900"

IS_WINDOWS = sys.platform == "win32"


def _default_paths() -> dict:
    if IS_WINDOWS:
        return {
            "steamcmd_path": "C:\\steamcmd",
            "server_path": "C:\\ArmaReforgerServer",
            "default_preset": "",
        }
    home = str(Path.home())
    return {
        "steamcmd_path": os.path.join(home, "steamcmd"),
        "server_path": os.path.join(home, "arma-reforger-server"),
        "default_preset": "",
    }


# Default configuration values used when config.yaml is missing or incomplete.
DEFAULTS = {
    "web": {
        "port": 8080,
        "host": "0.0.0.0",
    },
    "paths": _default_paths(),
    "supervisor": {
        "grace_period": 3.0,
        "restart_delay": 0.5,
    },
    "logs": {
        "buffer_size": 500,
        "poll_interval": 1.0,
    },
}

# Sections written back to config.yaml; anything else is dropped on save.
SECTIONS = ["web", "paths", "supervisor", "logs"]

# Keys exposed through GET/POST /api/settings
SETTINGS_KEYS = ["steamcmd_path", "server_path", "default_preset"]


class ConfigManager:
    """
    Unified configuration manager for ARSM.

    Attributes:
        project_dir: Root directory of the panel installation.
        config_path: Full path to config.yaml.
        env_path:    Full path to .env file.
    """

    def __init__(self, project_dir: str):
        """
        Initialize the config manager.

        Args:
            project_dir: Absolute path to the project root directory.
        """
        self.project_dir = project_dir
        self.config_path = os.path.join(project_dir, "config.yaml")
        self.env_path = os.path.join(project_dir, ".env")
        self._memory_secret: str | None = None

    def load(self) -> dict:
        """
        Load and merge configuration from config.yaml with defaults.

        Known sections must be mappings and their known keys must keep the
        default's type; offending values are ignored in favour of DEFAULTS.

        Returns:
            A dictionary containing the full configuration. If the file is
            corrupt or holds bad values, defaults are used for those parts
            and ``_config_error`` describes what was ignored.
        """
        config = _deep_copy(DEFAULTS)

        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    user_config = yaml.safe_load(f) or {}
                if not isinstance(user_config, dict):
                    raise yaml.YAMLError("config.yaml must contain a mapping")
            except (yaml.YAMLError, OSError) as e:
                config["_config_error"] = str(e)
                return config

            problems = _merge_checked(config, user_config)
            if problems:
                config["_config_error"] = "; ".join(problems)

        return config

    def save(self, config: dict) -> None:
        """
        Save configuration back to config.yaml.

        Only known sections are written; internal keys (prefixed with '_')
        are stripped.
        """
        clean = {}
        for section in SECTIONS:
            if section in config:
                clean[section] = config[section]

        try:
            with open(self.config_path, "w", encoding="utf-8") as f:
                yaml.dump(
                    clean,
                    f,
                    default_flow_style=False,
                    allow_unicode=True,
                    sort_keys=False,
                )
        except OSError as e:
            raise IOFailure(f"Failed to save config.yaml: {e}") from e

    def update(self, updates: dict) -> dict:
        """
        Partially update configuration and save.

        Args:
            updates: Dictionary of settings to update (can be partial).

        Returns:
            The full updated configuration.
        """
        config = self.load()
        config.pop("_config_error", None)
        _deep_merge(config, updates)
        self.save(config)
        return config

    # -- Panel settings (paths) -----------------------------------------------

    def get_settings(self) -> dict:
        """The user-editable path settings."""
        paths = self.load()["paths"]
        return {key: paths.get(key, "") for key in SETTINGS_KEYS}

    def save_settings(self, settings: dict) -> dict:
        """Persist path settings. Unknown keys are ignored."""
        paths = {key: settings[key] for key in SETTINGS_KEYS if key in settings}
        return self.update({"paths": paths})["paths"]

    # -- Data directory --------------------------------------------------------

    def data_dir(self) -> str:
        """ARSM_DATA_DIR if set, else <project>/data."""
        env_dir = os.environ.get(DATA_DIR_ENV)
        if env_dir:
            return os.path.abspath(env_dir)
        return os.path.join(self.project_dir, "data")

    # -- Secrets ---------------------------------------------------------------

    def get_secret(self, key_name: str) -> str | None:
        """Read one value from the process environment or .env."""
        value = os.environ.get(key_name)
        if value:
            return value
        if os.path.exists(self.env_path):
            try:
                return dotenv_values(self.env_path).get(key_name) or None
            except (OSError, UnicodeDecodeError) as e:
                logger.error("[Config] Cannot read %s: %s", self.env_path, e)
        return None

    def ensure_jwt_secret(self) -> str:
        """
        Return the JWT signing secret, generating and storing one in .env on
        first use.

        If .env cannot be written the generated secret is kept in memory for
        this process only; tokens then stop verifying after a restart.
        """
        secret = self.get_secret(JWT_SECRET_KEY)
        if secret:
            return secret
        if self._memory_secret:
            return self._memory_secret
        secret = secrets.token_urlsafe(48)
        try:
            self._write_env_key(JWT_SECRET_KEY, secret)
        except (OSError, UnicodeDecodeError) as e:
            logger.error("[Config] Cannot store %s in %s: %s", JWT_SECRET_KEY, self.env_path, e)
            logger.warning("[Config] Using a temporary JWT secret; logins end when the panel restarts")
            self._memory_secret = secret
        return secret
        secret = secrets.token_urlsafe(48)
        self._write_env_key(JWT_SECRET_KEY, secret)
        return secret

    def _write_env_key(self, key_name: str, value: str) -> None:
        """
        Write a single key=value pair to the .env file.

        If the key already exists, its value is replaced in-place.
        If it doesn't exist, it's appended to the file.
        """
        lines = []
        if os.path.exists(self.env_path):
            with open(self.env_path, "r", encoding="utf-8") as f:
                lines = f.readlines()

        found = False
        new_lines = []
        for line in lines:
            if line.strip().startswith(f"{key_name}="):
                new_lines.append(f"{key_name}={value}\n")
                found = True
            else:
                if not line.endswith("\n"):
                    line += "\n"
                new_lines.append(line)

        if not found:
            new_lines.append(f"{key_name}={value}\n")

        with open(self.env_path, "w", encoding="utf-8") as f:
            f.writelines(new_lines)
        try:
            os.chmod(self.env_path, 0o600)
        except OSError:
            pass


# -- Game server layout --------------------------------------------------------

def server_executable(server_path: str) -> str:
    name = "ArmaReforgerServer.exe" if IS_WINDOWS else "ArmaReforgerServer"
    return os.path.join(server_path, name)


def server_config_path(server_path: str) -> str:
    return os.path.join(server_path, "config.json")


def server_profile_path(server_path: str) -> str:
    return os.path.join(server_path, "profile")


def server_presets_path(server_path: str) -> str:
    return os.path.join(server_path, "presets")


def server_log_dir(server_path: str) -> str:
    """Where the server writes logs when started with -profile."""
    return os.path.join(server_profile_path(server_path), "logs")


def server_launch(server_path: str) -> tuple[str, list[str], str]:
    """
    Build the launch command for the dedicated server.

    Returns:
        (executable, args, working_directory)
    """
    args = [
        "-config", server_config_path(server_path),
        "-profile", server_profile_path(server_path),
    ]
    return server_executable(server_path), args, server_path


def steamcmd_executable(steamcmd_path: str) -> str:
    name = "steamcmd.exe" if IS_WINDOWS else "steamcmd.sh"
    return os.path.join(steamcmd_path, name)


# -- Helper Functions ---------------------------------------------------------

def _deep_copy(d: dict) -> dict:
    """Create a deep copy of a nested dictionary."""
    result = {}
    for key, value in d.items():
        if isinstance(value, dict):
            result[key] = _deep_copy(value)
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _merge_checked(config: dict, user_config: dict) -> list[str]:
    """
    Merge config.yaml over the defaults, keeping the default wherever the
    file has the wrong shape. Returns a description of every ignored value.
    """
    problems = []
    for section, values in user_config.items():
        if section not in DEFAULTS:
            config[section] = values
            continue
        if not isinstance(values, dict):
            problems.append(f"section '{section}' must be a mapping")
            continue
        for key, value in values.items():
            default = DEFAULTS[section].get(key)
            if default is None:
                config[section][key] = value
            elif isinstance(default, str) and not isinstance(value, str):
                problems.append(f"{section}.{key} must be a string")
            elif isinstance(default, (int, float)) and (
                isinstance(value, bool)
                or not isinstance(value, (int, float))
                or value < 0
            ):
                problems.append(f"{section}.{key} must be a non-negative number")
            else:
                config[section][key] = value
    return problems


def _deep_merge(base: dict, override: dict) -> None:
    """
    Recursively merge 'override' into 'base' (in-place).

    For nested dicts, values are merged recursively.
    For all other types, override replaces base.
    """
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
