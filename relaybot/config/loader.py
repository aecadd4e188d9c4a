"""Configuration loading utilities."""

import json
import os
import stat
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from relaybot.config.schema import Config


class ConfigError(RuntimeError):
    """Configuration is missing or invalid. Fatal at startup."""


# Mapping values whose keys are data (scope keys, trigger words), not field names.
_OPAQUE_KEYS = {"other", "trigger_keywords"}


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return Path.home() / ".relaybot" / "config.json"


def get_env_path() -> Path:
    """Get the default secrets .env file path."""
    return Path.home() / ".relaybot" / ".env"


def _lock_file(path: Path) -> None:
    """Set file permissions to 600 (owner read/write only)."""
    try:
        path.chmod(stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass  # Best-effort; Windows or restricted FS may not support this


def _load_dotenv(env_path: Path) -> dict[str, str]:
    """Parse a simple .env file into a dict (no shell expansion)."""
    values: dict[str, str] = {}
    if not env_path.exists():
        return values
    for line in env_path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]
        values[key] = value
    return values


def _inject_env(env_path: Path) -> None:
    """Load .env values into os.environ (existing vars take precedence)."""
    for key, value in _load_dotenv(env_path).items():
        os.environ.setdefault(key, value)


def load_config(config_path: Path | None = None, env_path: Path | None = None) -> Config:
    """
    Load configuration from file + .env secrets.

    Resolution order (highest priority wins):
      1. Real environment variables (e.g. export RELAYBOT_PROVIDER__API_KEY=…)
      2. ~/.relaybot/.env file
      3. config.json

    A missing config file is created with defaults and reported as a
    ConfigError so the operator edits it before the bot connects anywhere.

    Args:
        config_path: Optional path to config file. Uses default if not provided.
        env_path: Optional path to the .env file. Uses default if not provided.

    Returns:
        Loaded configuration object.

    Raises:
        ConfigError: The file is missing, unreadable or fails validation.
    """
    path = config_path or get_config_path()
    _inject_env(env_path or get_env_path())

    if not path.exists():
        save_config(Config(), path)
        raise ConfigError(f"Created default config at {path}; edit it and restart.")

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")

    try:
        return Config(**convert_keys(data))
    except ValidationError as e:
        raise ConfigError(f"Invalid config in {path}:\n{e}") from e


def save_config(config: Config, config_path: Path | None = None) -> None:
    """
    Save configuration to file in camelCase form.

    Args:
        config: Configuration to save.
        config_path: Optional path to save to. Uses default if not provided.
    """
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = convert_to_camel(config.model_dump())
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    _lock_file(path)


# ── Key conversion helpers ──


def convert_keys(data: Any) -> Any:
    """Convert camelCase keys to snake_case for Pydantic."""
    if isinstance(data, dict):
        converted = {}
        for k, v in data.items():
            key = camel_to_snake(k)
            converted[key] = v if key in _OPAQUE_KEYS else convert_keys(v)
        return converted
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def convert_to_camel(data: Any) -> Any:
    """Convert snake_case keys to camelCase."""
    if isinstance(data, dict):
        return {
            snake_to_camel(k): v if k in _OPAQUE_KEYS else convert_to_camel(v)
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    """Convert camelCase to snake_case."""
    result = []
    for i, char in enumerate(name):
        if char.isupper() and i > 0:
            result.append("_")
        result.append(char.lower())
    return "".join(result)


def snake_to_camel(name: str) -> str:
    """Convert snake_case to camelCase."""
    components = name.split("_")
    return components[0] + "".join(x.title() for x in components[1:])
