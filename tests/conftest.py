from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _isolate_stickysync_paths(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("STICKYSYNC_CONFIG", str(tmp_path / "config.json"))
    monkeypatch.setenv("STICKYSYNC_DB", str(tmp_path / "server.sqlite"))
    monkeypatch.setenv("STICKYSYNC_NOTES_PATH", str(tmp_path / "notes.json"))
    monkeypatch.setenv("STICKYSYNC_STATE_PATH", str(tmp_path / "state.json"))
    monkeypatch.delenv("STICKYSYNC_SERVER_LOGS", raising=False)
