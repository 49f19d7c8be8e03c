from __future__ import annotations

import contextlib
import json
import sqlite3
from collections.abc import Iterator
from pathlib import Path
from typing import Any

DEFAULT_DB_PATH = Path.home() / ".stickysync" / "server.sqlite"


def connect(db_path: Path | str, check_same_thread: bool = True) -> sqlite3.Connection:
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    # Autocommit mode; writes open their own transaction via ``transaction``.
    conn = sqlite3.connect(path, check_same_thread=check_same_thread, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError:
        conn.execute("PRAGMA journal_mode = DELETE")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS users (
            email TEXT PRIMARY KEY,
            name TEXT NOT NULL DEFAULT '',
            picture TEXT NOT NULL DEFAULT '',
            user_token TEXT NOT NULL UNIQUE,
            created_at TEXT NOT NULL,
            last_login TEXT NOT NULL,
            last_sync TEXT
        );

        CREATE TABLE IF NOT EXISTS note_corpora (
            email TEXT PRIMARY KEY,
            notes_json TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
    )


@contextlib.contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block under ``BEGIN IMMEDIATE``; roll back on any exception."""

    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def to_json(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False)


def from_json(text: str | None) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None
