"""
JSON Server - Configuration Manager
=====================================
Handles loading of server configuration from three sources, in order of
increasing precedence:

1. config.yaml           - Settings file in the project directory
2. Environment variables - JSONSERVER_* overrides (a .env file is loaded
                           by app.py before this module reads os.environ)
3. Explicit overrides    - Command-line values passed by the caller

The merged mapping is validated into an immutable ServerConfig.

Usage:
    manager = ConfigManager(project_dir="/path/to/project")
    settings = manager.load()                    # merged dict
    config = manager.build({"port": 9000})       # validated ServerConfig
"""

import os
import yaml
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# Default configuration values used when config.yaml is missing or incomplete.
DEFAULTS = {
    "port": 9981,
    "bindHost": "127.0.0.1",
    "handlerDir": None,
    "verbosity": 1,
    "factoryHandlers": False,
    "logDir": None,
    "auth": {
        "dataDir": "data",
    },
}

# Environment variable name -> (config key, converter).
# JSONSERVER_BIND_HOST set to an empty string means "all interfaces".
ENV_OVERRIDES = {
    "JSONSERVER_PORT": ("port", int),
    "JSONSERVER_BIND_HOST": ("bindHost", lambda v: v or None),
    "JSONSERVER_VERBOSITY": ("verbosity", int),
    "JSONSERVER_HANDLER_DIR": ("handlerDir", str),
}


class ServerConfig(BaseModel):
    """
    Immutable server settings.

    Field names are snake_case; the camelCase names used in config.yaml
    and by callers (bindHost, handlerDir, ...) are accepted as aliases.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    port: int = Field(9981, ge=0, le=65535, description="Listen port")
    bind_host: str | None = Field(
        "127.0.0.1", alias="bindHost",
        description="Interface to bind (None for all interfaces)",
    )
    handler_dir: str | None = Field(
        None, alias="handlerDir",
        description="Directory to load handler modules from",
    )
    verbosity: int = Field(1, description="Log threshold, larger is louder")
    factory_handlers: bool = Field(
        False, alias="factoryHandlers",
        description="Install every built-in handler (entry point only)",
    )
    log_dir: str | None = Field(None, alias="logDir", description="Per-day log file directory")


class ConfigManager:
    """
    Loads config.yaml and environment overrides for the server.

    Attributes:
        project_dir: Root directory of the project.
        config_path: Full path to config.yaml.
    """

    def __init__(self, project_dir: str, config_path: str | None = None):
        """
        Initialize the config manager.

        Args:
            project_dir: Absolute path to the project root directory.
            config_path: Alternative settings file (defaults to
                         <project_dir>/config.yaml).
        """
        self.project_dir = project_dir
        self.config_path = config_path or os.path.join(project_dir, "config.yaml")

    def load(self) -> dict:
        """
        Load and merge configuration from config.yaml, the environment and
        the defaults.

        A corrupt config file falls back to the defaults and records the
        problem under the "_config_error" key (caller should report it).

        Returns:
            A dictionary containing the full configuration.
        """
        config = _deep_copy(DEFAULTS)

        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    user_config = yaml.safe_load(f) or {}
                if not isinstance(user_config, dict):
                    raise yaml.YAMLError("top level of config file must be a mapping")
                _deep_merge(config, user_config)
            except (yaml.YAMLError, OSError) as e:
                config["_config_error"] = str(e)

        for env_name, (key, convert) in ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                config[key] = convert(value)

        return config

    def build(self, overrides: dict[str, Any] | None = None) -> ServerConfig:
        """
        Load configuration, apply explicit overrides and validate.

        Args:
            overrides: Values that win over file and environment (keys using
                       the camelCase option names). None values are ignored.

        Returns:
            The validated, immutable ServerConfig.

        Raises:
            pydantic.ValidationError: If a setting has an invalid value.
        """
        config = self.load()
        for key, value in (overrides or {}).items():
            if value is not None:
                config[key] = value
        return ServerConfig.model_validate(config)

    def auth_data_dir(self, config: dict) -> str:
        """Return the absolute directory holding auth.json."""
        data_dir = config.get("auth", {}).get("dataDir", DEFAULTS["auth"]["dataDir"])
        if not os.path.isabs(data_dir):
            data_dir = os.path.join(self.project_dir, data_dir)
        return data_dir


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
