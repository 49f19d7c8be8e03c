from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/stickysync/config.json").expanduser()

CONFIG_ENV_OVERRIDES = {
    "api_base_url": "STICKYSYNC_API_BASE_URL",
    "auto_sync_delay_s": "STICKYSYNC_AUTO_SYNC_DELAY_S",
    "retry_attempts": "STICKYSYNC_RETRY_ATTEMPTS",
    "retry_delay_s": "STICKYSYNC_RETRY_DELAY_S",
    "request_timeout_s": "STICKYSYNC_REQUEST_TIMEOUT_S",
    "auto_sync_interval_s": "STICKYSYNC_AUTO_SYNC_INTERVAL_S",
    "server_host": "STICKYSYNC_SERVER_HOST",
    "server_port": "STICKYSYNC_SERVER_PORT",
    "db_path": "STICKYSYNC_DB",
    "notes_path": "STICKYSYNC_NOTES_PATH",
    "state_path": "STICKYSYNC_STATE_PATH",
    "local_quota_bytes": "STICKYSYNC_LOCAL_QUOTA_BYTES",
    "tokeninfo_url": "STICKYSYNC_TOKENINFO_URL",
}

INT_FIELDS = {"retry_attempts", "auto_sync_interval_s", "server_port", "local_quota_bytes"}
FLOAT_FIELDS = {"auto_sync_delay_s", "retry_delay_s", "request_timeout_s"}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("STICKYSYNC_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def write_config_file(data: dict[str, Any], path: Path | None = None) -> Path:
    config_path = get_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n")
    return config_path


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class StickySyncConfig:
    api_base_url: str = "http://127.0.0.1:8765"
    auto_sync_delay_s: float = 2.0
    retry_attempts: int = 3
    retry_delay_s: float = 1.0
    request_timeout_s: float = 10.0
    # Periodic full sync while auto-sync is enabled.
    auto_sync_interval_s: int = 300
    server_host: str = "127.0.0.1"
    server_port: int = 8765
    db_path: str = "~/.stickysync/server.sqlite"
    notes_path: str = "~/.stickysync/notes.json"
    state_path: str = "~/.stickysync/state.json"
    # Browser sync storage quota; 0 disables the limit.
    local_quota_bytes: int = 102400
    tokeninfo_url: str = "https://www.googleapis.com/oauth2/v2/tokeninfo"


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_float(value: object, default: float, *, key: str) -> float:
    if value is None:
        return default
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _coerce(cfg: StickySyncConfig, key: str, value: object) -> None:
    if key in INT_FIELDS:
        setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
    elif key in FLOAT_FIELDS:
        setattr(cfg, key, _parse_float(value, getattr(cfg, key), key=key))
    elif value is not None:
        setattr(cfg, key, str(value))


def load_config(path: Path | None = None) -> StickySyncConfig:
    cfg = StickySyncConfig()
    config_path = get_config_path(path)
    if config_path.exists():
        try:
            data = json.loads(config_path.read_text())
        except json.JSONDecodeError:
            data = {}
        if isinstance(data, dict):
            cfg = _apply_dict(cfg, data)
    cfg = _apply_env(cfg)
    return cfg


def _apply_dict(cfg: StickySyncConfig, data: dict[str, Any]) -> StickySyncConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        _coerce(cfg, key, value)
    return cfg


def _apply_env(cfg: StickySyncConfig) -> StickySyncConfig:
    for key, value in get_env_overrides().items():
        _coerce(cfg, key, value)
    return cfg
