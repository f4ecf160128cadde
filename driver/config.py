"""
Driver configuration.

Values come from, in increasing priority: dataclass defaults, an optional
YAML file, and DDP_CHAT_* environment variables.

Example ddp-chat.yaml:

    url: wss://chat.example.org/websocket
    call_timeout: 30
    keepalive_interval: 30
    keepalive_timeout: 10
    mark_as_bot: true
"""

from __future__ import annotations
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from driver.classifier import DEFAULT_USERNAME_CHARS
from shared.log import get_logger

logger = get_logger(__name__)

ENV_PREFIX = "DDP_CHAT_"
DEFAULT_CONFIG_PATH = Path.home() / ".ddp-chat" / "config.yaml"


@dataclass(frozen=True)
class DriverConfig:
    url: str = "ws://localhost:3000/websocket"
    connect_timeout: float = 10.0
    call_timeout: Optional[float] = 30.0
    keepalive_interval: float = 30.0
    keepalive_timeout: float = 10.0
    history_limit: int = 50
    mark_as_bot: bool = True
    bot_id: str = "ddp-chat-driver"
    username_chars: str = DEFAULT_USERNAME_CHARS
    # websockets' own protocol-level pings; DDP keep-alive is independent
    transport_ping_interval: Optional[float] = None
    transport_ping_timeout: Optional[float] = None
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.url.startswith(("ws://", "wss://")):
            raise ValueError(f"url must be a ws:// or wss:// URL, got {self.url!r}")
        for name in ("connect_timeout", "keepalive_interval", "keepalive_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.call_timeout is not None and self.call_timeout <= 0:
            raise ValueError("call_timeout must be positive or null")
        if self.history_limit <= 0:
            raise ValueError("history_limit must be positive")

    def with_overrides(self, **overrides: Any) -> "DriverConfig":
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def server_url(host: str, use_ssl: bool = True) -> str:
    """'chat.example.org' -> 'wss://chat.example.org/websocket'"""
    if host.startswith(("ws://", "wss://")):
        return host
    scheme = "wss" if use_ssl else "ws"
    return f"{scheme}://{host.rstrip('/')}/websocket"


def load_config(path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> DriverConfig:
    """
    Build a DriverConfig from a YAML file and the environment.

    A missing file is not an error when no explicit path was given.
    """
    values: Dict[str, Any] = {}
    config_path = path or DEFAULT_CONFIG_PATH
    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{config_path} must contain a mapping")
        values.update(data)
        logger.debug("Loaded config from %s", config_path)
    elif path is not None:
        raise FileNotFoundError(f"Config file not found: {path}")

    values.update(_from_env(os.environ if env is None else env))
    return _build(values)


def _from_env(env: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for f in fields(DriverConfig):
        raw = env.get(ENV_PREFIX + f.name.upper())
        if raw is not None:
            values[f.name] = raw
    return values


def _build(values: Dict[str, Any]) -> DriverConfig:
    known = {f.name: f for f in fields(DriverConfig)}
    unknown = set(values) - set(known)
    if unknown:
        raise ValueError(f"Unknown config keys: {sorted(unknown)}")

    defaults = DriverConfig()
    kwargs: Dict[str, Any] = {}
    for name, value in values.items():
        kwargs[name] = _coerce(name, value, getattr(defaults, name))
    return DriverConfig(**kwargs)


def _coerce(name: str, value: Any, default: Any) -> Any:
    if value is None or (isinstance(value, str) and value.lower() in ("", "none", "null")):
        if name in ("call_timeout", "transport_ping_interval", "transport_ping_timeout"):
            return None
        raise ValueError(f"{name} cannot be empty")
    try:
        if isinstance(default, bool):
            if isinstance(value, str):
                if value.lower() in ("1", "true", "yes", "on"):
                    return True
                if value.lower() in ("0", "false", "no", "off"):
                    return False
                raise ValueError(value)
            return bool(value)
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float) or default is None:
            return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid value for {name}: {value!r}") from None
    return str(value)
