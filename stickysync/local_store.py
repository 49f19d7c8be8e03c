from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import QuotaExceededError
from .notes import NoteCorpus

logger = logging.getLogger(__name__)

USER_TOKEN_KEY = "userToken"
USER_PROFILE_KEY = "userProfile"
AUTO_SYNC_KEY = "autoSyncEnabled"
LAST_SYNC_TIME_KEY = "lastSyncTime"
LAST_SYNC_HASH_KEY = "lastSyncHash"
SYNC_STATE_KEYS = (
    USER_TOKEN_KEY,
    USER_PROFILE_KEY,
    AUTO_SYNC_KEY,
    LAST_SYNC_TIME_KEY,
    LAST_SYNC_HASH_KEY,
)


def _serialize(data: Mapping[str, Any]) -> bytes:
    return json.dumps(data, ensure_ascii=False, indent=2).encode("utf-8")


class JsonKeyValueStore:
    """A key/value map persisted as one JSON object.

    Writes replace the file atomically. With ``quota_bytes`` set, a write whose
    serialized result would be larger is rejected and leaves the file as it was.
    """

    def __init__(self, path: Path | str, quota_bytes: int | None = None) -> None:
        self.path = Path(path).expanduser()
        self.quota_bytes = quota_bytes if quota_bytes and quota_bytes > 0 else None
        self._lock = threading.Lock()

    def _read(self) -> dict[str, Any]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid json in {self.path}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} must hold a json object")
        return data

    def _write(self, data: Mapping[str, Any]) -> None:
        encoded = _serialize(data)
        if self.quota_bytes is not None and len(encoded) > self.quota_bytes:
            raise QuotaExceededError(
                f"quota exceeded ({len(encoded)} > {self.quota_bytes} bytes)"
            )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(encoded)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get(self, keys: Iterable[str] | None = None) -> dict[str, Any]:
        with self._lock:
            data = self._read()
        if keys is None:
            return data
        return {key: data[key] for key in keys if key in data}

    def set(self, mapping: Mapping[str, Any]) -> None:
        with self._lock:
            data = self._read()
            data.update(mapping)
            self._write(data)

    def remove(self, keys: Iterable[str]) -> None:
        with self._lock:
            data = self._read()
            changed = False
            for key in keys:
                if key in data:
                    del data[key]
                    changed = True
            if changed:
                self._write(data)


@dataclass
class SyncSession:
    """Client-side sync state: who is signed in and what was last synced."""

    token: str | None = None
    profile: dict[str, Any] = field(default_factory=dict)
    auto_sync_enabled: bool = False
    last_sync_time: str | None = None
    last_sync_hash: str | None = None

    @property
    def signed_in(self) -> bool:
        return bool(self.token)


class ClientStateStore:
    def __init__(self, path: Path | str) -> None:
        self.kv = JsonKeyValueStore(path)

    def load(self) -> SyncSession:
        data = self.kv.get(SYNC_STATE_KEYS)
        profile = data.get(USER_PROFILE_KEY)
        return SyncSession(
            token=data.get(USER_TOKEN_KEY) or None,
            profile=profile if isinstance(profile, dict) else {},
            auto_sync_enabled=bool(data.get(AUTO_SYNC_KEY, False)),
            last_sync_time=data.get(LAST_SYNC_TIME_KEY) or None,
            last_sync_hash=data.get(LAST_SYNC_HASH_KEY) or None,
        )

    def save(self, session: SyncSession) -> None:
        values: dict[str, Any] = {
            USER_TOKEN_KEY: session.token,
            USER_PROFILE_KEY: session.profile,
            AUTO_SYNC_KEY: session.auto_sync_enabled,
            LAST_SYNC_TIME_KEY: session.last_sync_time,
            LAST_SYNC_HASH_KEY: session.last_sync_hash,
        }
        present = {key: value for key, value in values.items() if value is not None}
        absent = [key for key, value in values.items() if value is None]
        self.kv.set(present)
        if absent:
            self.kv.remove(absent)

    def clear(self) -> None:
        self.kv.remove(SYNC_STATE_KEYS)


def write_corpus_with_fallback(store: JsonKeyValueStore, corpus: NoteCorpus) -> NoteCorpus:
    """Write ``corpus`` into a possibly bounded store and return what was written.

    All keys are written at once first. If the store rejects that for size, keys
    are written one at a time, and a key that still does not fit is cut down to
    the first half of its notes and written once more.
    """

    try:
        store.set(corpus)
        return dict(corpus)
    except QuotaExceededError:
        logger.warning("local store quota exceeded, writing notes one url at a time")
    written: NoteCorpus = {}
    for url, notes in corpus.items():
        try:
            store.set({url: notes})
            written[url] = notes
            continue
        except QuotaExceededError:
            if not isinstance(notes, list):
                raise
        truncated = notes[: len(notes) // 2]
        logger.warning(
            "truncating notes for %s from %d to %d", url, len(notes), len(truncated)
        )
        store.set({url: truncated})
        written[url] = truncated
    return written
