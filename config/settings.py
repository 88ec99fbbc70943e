"""
Bridge settings

Loads every option the bridge needs at startup and validates it once.

Sources (highest priority first):
1. process environment
2. optional config.yaml (flat mapping of env names, injected into os.environ
   without overriding what is already set)
3. .env in the working directory (python-dotenv, no override)

Any missing or invalid required option raises ConfigError; the process must
not start in a partially configured state.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError

from logger import get_logger
from utils.app_paths import expand_path, get_default_config_path

logger = get_logger("config.settings")

DEFAULT_APP_SECRET_PATH = "~/.clawdbot/secrets/larksuite_app_secret"
DEFAULT_GATEWAY_CONFIG_PATH = "~/.moltbot/moltbot.json"
DEFAULT_MEDIA_DIR = "~/.clawdbot/media/larksuite"
DEFAULT_GATEWAY_PORT = 18789


class ConfigError(Exception):
    """Startup configuration is missing or invalid."""


class BridgeSettings(BaseModel):
    """Validated, immutable bridge configuration."""

    model_config = ConfigDict(frozen=True)

    app_id: str = Field(..., min_length=1, description="Platform app identity")
    app_secret: SecretStr = Field(..., description="Platform app secret")
    domain: Literal["lark", "feishu"] = "lark"

    gateway_config_path: Path
    gateway_host: str = "127.0.0.1"
    gateway_port: int = DEFAULT_GATEWAY_PORT
    gateway_token: SecretStr
    agent_id: str = "main"

    webhook_port: int = 9000
    encrypt_key: SecretStr = SecretStr("")
    verification_token: SecretStr = SecretStr("")

    media_dir: Path
    thinking_threshold_ms: int = Field(2500, ge=0)
    exchange_timeout_seconds: Optional[float] = Field(None, gt=0)

    @property
    def gateway_url(self) -> str:
        return f"ws://{self.gateway_host}:{self.gateway_port}"


def load_config_to_env(config_path: Optional[Path] = None) -> int:
    """
    Inject a flat YAML mapping into os.environ without overriding.

    Args:
        config_path: YAML file (defaults to <data dir>/config.yaml)

    Returns:
        number of variables injected
    """
    path = config_path or get_default_config_path()
    if not path.exists():
        return 0

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must be a mapping of NAME: value")

    injected = 0
    for key, value in raw.items():
        if value is None or str(key) in os.environ:
            continue
        os.environ[str(key)] = str(value)
        injected += 1

    logger.info("Config file loaded", extra={"path": str(path), "injected": injected})
    return injected


def _load_dotenv_file() -> None:
    env_path = Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(dotenv_path=env_path, override=False)
        logger.info("Environment loaded from .env", extra={"path": str(env_path)})


def _read_secret_file(path: Path) -> Optional[str]:
    """Trimmed file content, or None when the file is missing or blank."""
    if not path.exists():
        return None
    value = path.read_text(encoding="utf-8").strip()
    return value or None


def _read_gateway_config(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Gateway config not found: {path}")
    content = path.read_text(encoding="utf-8").strip()
    if not content:
        raise ConfigError(f"Gateway config is empty: {path}")
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Gateway config is not valid JSON: {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Gateway config must be a JSON object: {path}")
    return data


def _int_env(env: Dict[str, str], name: str, default: int) -> int:
    raw = env.get(name, "")
    if raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def settings_from_env(env: Dict[str, str]) -> BridgeSettings:
    """
    Build settings from an environment mapping.

    Args:
        env: environment (os.environ or a test dict)

    Returns:
        BridgeSettings

    Raises:
        ConfigError: a required option is missing or an option is invalid
    """
    app_id = env.get("LARKSUITE_APP_ID", "").strip()
    if not app_id:
        raise ConfigError("LARKSUITE_APP_ID environment variable is required")

    app_secret = env.get("LARKSUITE_APP_SECRET", "").strip() or _read_secret_file(
        expand_path(env.get("LARKSUITE_APP_SECRET_PATH") or DEFAULT_APP_SECRET_PATH)
    )
    if not app_secret:
        raise ConfigError("LARKSUITE_APP_SECRET not found (value or secret file)")

    gateway_config_path = expand_path(env.get("CLAWDBOT_CONFIG_PATH") or DEFAULT_GATEWAY_CONFIG_PATH)
    gateway_config = _read_gateway_config(gateway_config_path)
    gateway_section = gateway_config.get("gateway") or {}
    if not isinstance(gateway_section, dict):
        raise ConfigError(f"gateway section must be an object in gateway config {gateway_config_path}")
    auth_section = gateway_section.get("auth") or {}
    if not isinstance(auth_section, dict):
        raise ConfigError(f"gateway.auth must be an object in gateway config {gateway_config_path}")
    gateway_token = auth_section.get("token") or ""
    if not isinstance(gateway_token, str):
        raise ConfigError(f"gateway.auth.token must be a string in gateway config {gateway_config_path}")
    gateway_token = gateway_token.strip()
    if not gateway_token:
        raise ConfigError(f"gateway.auth.token missing in gateway config {gateway_config_path}")

    timeout_raw = env.get("CLAWDBOT_EXCHANGE_TIMEOUT_SECONDS", "").strip()
    try:
        exchange_timeout = float(timeout_raw) if timeout_raw else None
    except ValueError:
        raise ConfigError(f"CLAWDBOT_EXCHANGE_TIMEOUT_SECONDS must be a number, got {timeout_raw!r}")

    try:
        return BridgeSettings(
            app_id=app_id,
            app_secret=SecretStr(app_secret),
            domain=(env.get("LARKSUITE_DOMAIN") or "lark").lower(),
            gateway_config_path=gateway_config_path,
            gateway_host=env.get("CLAWDBOT_GATEWAY_HOST") or "127.0.0.1",
            gateway_port=int(gateway_section.get("port") or DEFAULT_GATEWAY_PORT),
            gateway_token=SecretStr(gateway_token),
            agent_id=env.get("CLAWDBOT_AGENT_ID") or "main",
            webhook_port=_int_env(env, "LARKSUITE_WEBHOOK_PORT", 9000),
            encrypt_key=SecretStr(env.get("LARKSUITE_ENCRYPT_KEY", "")),
            verification_token=SecretStr(env.get("LARKSUITE_VERIFICATION_TOKEN", "")),
            media_dir=expand_path(env.get("LARKSUITE_MEDIA_DIR") or DEFAULT_MEDIA_DIR),
            thinking_threshold_ms=_int_env(env, "LARKSUITE_THINKING_THRESHOLD_MS", 2500),
            exchange_timeout_seconds=exchange_timeout,
        )
    except (ValidationError, ValueError, TypeError) as e:
        raise ConfigError(f"Invalid bridge configuration: {e}") from e


def load_settings(config_path: Optional[Path] = None) -> BridgeSettings:
    """
    Load settings from config.yaml, .env and the process environment.

    Args:
        config_path: optional YAML file (LARKSUITE_BRIDGE_CONFIG wins when set)

    Raises:
        ConfigError: startup must abort
    """
    env_path = os.getenv("LARKSUITE_BRIDGE_CONFIG")
    load_config_to_env(expand_path(env_path) if env_path else config_path)
    _load_dotenv_file()

    settings = settings_from_env(dict(os.environ))

    logger.info(
        "Bridge settings loaded",
        extra={
            "app_id": settings.app_id,
            "gateway_url": settings.gateway_url,
            "agent_id": settings.agent_id,
            "media_dir": str(settings.media_dir),
            "encrypt_key": "SET" if settings.encrypt_key.get_secret_value() else "NOT SET",
            "verification_token": "SET" if settings.verification_token.get_secret_value() else "NOT SET",
        },
    )
    return settings
