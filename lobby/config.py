from __future__ import annotations
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from shared.crypto.ucan import ONE_MONTH_SECONDS
from shared.log import get_logger

logger = get_logger(__name__)

DATA_ROOT_DOMAIN = "fissionuser.net"


@dataclass(frozen=True)
class LobbyConfig:
    data_root_domain: str = DATA_ROOT_DOMAIN
    relay_url: str = "ws://127.0.0.1:8766"
    storage_path: Path = Path("~/.lobby")
    heartbeat_interval: float = 0.5
    # None keeps pinging until a PONG arrives or the channel is closed
    handshake_timeout: Optional[float] = None
    max_ping_attempts: Optional[int] = None
    ucan_lifetime: int = ONE_MONTH_SECONDS

    @property
    def home(self) -> Path:
        return Path(self.storage_path).expanduser()


def default_config_path() -> Path:
    return Path(os.getenv("LOBBY_CONFIG", "~/.lobby/lobby.yaml")).expanduser()


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name == "storage_path":
        return Path(value)
    if name in ("heartbeat_interval", "handshake_timeout"):
        return float(value)
    if name in ("max_ping_attempts", "ucan_lifetime"):
        return int(value)
    return str(value)


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.debug("No config file at %s; using defaults", path)
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping")
    return data


# environment variable -> config field
_ENV_OVERRIDES = {
    "LOBBY_RELAY": "relay_url",
    "LOBBY_HOME": "storage_path",
    "LOBBY_DOMAIN": "data_root_domain",
    "LOBBY_HANDSHAKE_TIMEOUT": "handshake_timeout",
}


def load_config(path: Optional[Path] = None, **overrides: Any) -> LobbyConfig:
    """
    Build the config from, in increasing precedence: defaults, the YAML
    file, LOBBY_* environment variables, keyword overrides (None ignored).
    """
    known = {f.name for f in fields(LobbyConfig)}
    values: Dict[str, Any] = {}

    for key, value in _read_yaml(path or default_config_path()).items():
        if key not in known:
            logger.warning("Ignoring unknown config key %r", key)
            continue
        values[key] = _coerce(key, value)

    for env_name, key in _ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw:
            values[key] = _coerce(key, raw)

    for key, value in overrides.items():
        if value is not None:
            values[key] = _coerce(key, value)

    return replace(LobbyConfig(), **values)
