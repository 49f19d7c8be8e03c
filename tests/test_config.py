from __future__ import annotations

import json
from pathlib import Path

import pytest

from stickysync.config import (
    StickySyncConfig,
    get_config_path,
    load_config,
    read_config_file,
    write_config_file,
)


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("STICKYSYNC_DB", "STICKYSYNC_NOTES_PATH", "STICKYSYNC_STATE_PATH"):
        monkeypatch.delenv(name, raising=False)
    cfg = load_config()
    assert cfg == StickySyncConfig()
    assert cfg.retry_attempts == 3
    assert cfg.auto_sync_delay_s == 2.0
    assert cfg.auto_sync_interval_s == 300


def test_file_values_and_env_precedence(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps({"api_base_url": "https://sync.example", "retry_attempts": 5, "unknown": 1})
    )
    monkeypatch.setenv("STICKYSYNC_RETRY_ATTEMPTS", "7")
    monkeypatch.setenv("STICKYSYNC_AUTO_SYNC_DELAY_S", "0.5")

    cfg = load_config(config_path)

    assert cfg.api_base_url == "https://sync.example"
    assert cfg.retry_attempts == 7
    assert cfg.auto_sync_delay_s == 0.5
    assert not hasattr(cfg, "unknown")


def test_invalid_numbers_warn_and_keep_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STICKYSYNC_SERVER_PORT", "not-a-port")
    with pytest.warns(RuntimeWarning, match="server_port"):
        cfg = load_config()
    assert cfg.server_port == 8765


def test_invalid_config_file_is_ignored_on_load(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{broken")
    assert load_config(config_path).retry_delay_s == 1.0
    with pytest.raises(ValueError, match="invalid config json"):
        read_config_file(config_path)


def test_write_then_read(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "config.json"
    path = write_config_file({"server_port": 9000}, target)
    assert path == target
    assert read_config_file(target) == {"server_port": 9000}
    assert load_config(target).server_port == 9000


def test_config_path_from_env(tmp_path: Path) -> None:
    assert get_config_path() == tmp_path / "config.json"
