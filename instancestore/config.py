"""Configuration loading for instance stores."""

import os
from pathlib import Path
from typing import Any

import msgspec
import yaml

from .exceptions import ValidationError


class StoreSettings(msgspec.Struct, kw_only=True):
    """Settings an InstanceStore can be built from."""

    name: str
    url: str
    classes: list[Any] = msgspec.field(default_factory=list)


class Config:
    """Configuration file handling."""

    @staticmethod
    def from_file(path: Path) -> dict[str, Any]:
        """Load configuration from a YAML file."""
        try:
            with open(path) as f:
                return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ValueError(f"Error reading config file: {e}") from e

    @staticmethod
    def get_config_paths() -> list[Path]:
        """Get the default configuration file paths, lowest precedence first."""
        paths = []

        # User config
        xdg_config_home = Path(
            os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config")
        )
        paths.append(xdg_config_home / "instancestore" / "config.yaml")

        # Project config
        paths.append(Path(".instancestore.yaml"))
        paths.append(Path("instancestore.yaml"))

        return paths

    @staticmethod
    def merge_configs(*configs: dict[str, Any]) -> dict[str, Any]:
        """Merge multiple configuration dictionaries."""
        result: dict[str, Any] = {}
        for config in configs:
            result = _deep_merge(result, config)
        return result


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Load configuration from files and environment variables.

    An explicit ``path`` is read last among files; environment variables
    win over every file.
    """
    config: dict[str, Any] = {}

    paths = Config.get_config_paths()
    if path is not None:
        paths.append(Path(path))

    for candidate in paths:
        if candidate.exists():
            config = Config.merge_configs(config, Config.from_file(candidate))

    env_overrides = {}
    if name := os.environ.get("INSTANCESTORE_NAME"):
        env_overrides["name"] = name
    if url := os.environ.get("INSTANCESTORE_URL"):
        env_overrides["url"] = url

    return Config.merge_configs(config, env_overrides)


def to_settings(config: dict[str, Any]) -> StoreSettings:
    """Validate a configuration mapping into StoreSettings."""
    for field in ("name", "url"):
        if not config.get(field):
            raise ValidationError(field, f"'{field}' is missing from the configuration")
    try:
        return msgspec.convert(config, StoreSettings, strict=False)
    except msgspec.ValidationError as e:
        raise ValidationError("config", str(e)) from e


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result
