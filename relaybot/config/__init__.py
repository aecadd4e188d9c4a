"""Configuration module for relaybot."""

from relaybot.config.loader import ConfigError, get_config_path, load_config, save_config
from relaybot.config.schema import Config

__all__ = ["Config", "ConfigError", "load_config", "save_config", "get_config_path"]
