"""Configuration loading utilities."""

import json
import re
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from autobuild.config.schema import Config
from autobuild.errors import ConfigError


def load_config(config_path: Path | str) -> Config:
    """
    Load and validate configuration from a JSON file.

    Raises:
        ConfigError: The file is missing, is not valid JSON, or fails validation.
    """
    path = Path(config_path).expanduser()
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = json.loads(path.read_text())
    except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Failed to read config from {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config in {path} must be a JSON object")

    try:
        return Config.model_validate(convert_keys(data))
    except ValidationError as e:
        raise ConfigError(f"Invalid config in {path}:\n{e}") from e


def save_config(config: Config, config_path: Path) -> None:
    """Save configuration to a JSON file using camelCase keys."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    data = convert_to_camel(config.model_dump())
    config_path.write_text(json.dumps(data, indent=2))


def convert_keys(data: Any) -> Any:
    """Convert camelCase keys to snake_case for Pydantic."""
    if isinstance(data, dict):
        return {camel_to_snake(k): convert_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def convert_to_camel(data: Any) -> Any:
    """Convert snake_case keys to camelCase."""
    if isinstance(data, dict):
        return {snake_to_camel(k): convert_to_camel(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    return re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", name).lower()


def snake_to_camel(name: str) -> str:
    components = name.split("_")
    return components[0] + "".join(x.title() for x in components[1:])
