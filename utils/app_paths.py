"""
Application paths

Resolves every filesystem location the bridge touches:

- data_dir: writable state (logs, optional config.yaml)
  - env LARKSUITE_BRIDGE_DATA_DIR, else ~/.clawdbot/larksuite-bridge
- paths coming from configuration may start with "~" and are expanded
  against the current user's home directory.
"""

import os
from pathlib import Path
from typing import Optional, Union

APP_NAME = "larksuite-bridge"

_DATA_DIR_ENV = "LARKSUITE_BRIDGE_DATA_DIR"

_data_dir: Optional[Path] = None


def expand_path(value: Union[str, Path]) -> Path:
    """
    Expand a leading "~" to the home directory.

    Args:
        value: configured path

    Returns:
        Path with the home directory substituted
    """
    return Path(os.path.expanduser(str(value)))


def get_data_dir() -> Path:
    """
    Writable data directory, created on first use.

    Priority:
    1. LARKSUITE_BRIDGE_DATA_DIR
    2. ~/.clawdbot/larksuite-bridge
    """
    global _data_dir
    if _data_dir is not None:
        return _data_dir

    env_dir = os.getenv(_DATA_DIR_ENV)
    if env_dir:
        _data_dir = expand_path(env_dir)
    else:
        _data_dir = expand_path("~/.clawdbot") / APP_NAME

    _data_dir.mkdir(parents=True, exist_ok=True)
    return _data_dir


def get_logs_dir() -> Path:
    """Log directory: LOG_DIR, else <data dir>/logs."""
    env_dir = os.getenv("LOG_DIR")
    d = expand_path(env_dir) if env_dir else get_data_dir() / "logs"
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_default_config_path() -> Path:
    """Optional YAML config file consumed at startup."""
    return get_data_dir() / "config.yaml"


def ensure_dir(path: Path) -> Path:
    """Create *path* (and parents) if missing and return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path
