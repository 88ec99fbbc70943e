"""Startup configuration."""

from config.settings import BridgeSettings, ConfigError, load_settings

__all__ = ["BridgeSettings", "ConfigError", "load_settings"]
