from __future__ import annotations

import datetime as dt
import hashlib
import logging
import secrets
import sqlite3
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from . import db
from .errors import StorageError
from .merge import merge_corpora
from .notes import NoteCollection, NoteCorpus, copy_collection

logger = logging.getLogger(__name__)


@dataclass
class UserRecord:
    email: str
    name: str
    picture: str
    user_token: str
    created_at: str
    last_login: str
    last_sync: str | None = None


def _now() -> str:
    return dt.datetime.now(dt.UTC).isoformat()


def generate_user_token(email: str) -> str:
    seed = f"{email}{int(time.time())}{secrets.token_hex(16)}"
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()


def _row_to_user(row: sqlite3.Row) -> UserRecord:
    return UserRecord(
        email=row["email"],
        name=row["name"],
        picture=row["picture"],
        user_token=row["user_token"],
        created_at=row["created_at"],
        last_login=row["last_login"],
        last_sync=row["last_sync"],
    )


class NoteStore:
    """Per-user note corpora and user records backed by SQLite.

    Each user's corpus is one row, so a corpus write is atomic. Writes that
    read the stored corpus first (``replace_all``, ``replace_subset``) hold an
    immediate transaction across the read and the write.
    """

    def __init__(self, db_path: Path | str = db.DEFAULT_DB_PATH) -> None:
        self.db_path = Path(db_path).expanduser()
        self.conn = db.connect(self.db_path)
        db.initialize_schema(self.conn)

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> NoteStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # users

    def get_user(self, email: str) -> UserRecord | None:
        row = self.conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
        return _row_to_user(row) if row else None

    def resolve_token(self, token: str) -> str | None:
        if not token:
            return None
        row = self.conn.execute(
            "SELECT email FROM users WHERE user_token = ?", (token,)
        ).fetchone()
        return str(row["email"]) if row else None

    def upsert_user(self, email: str, name: str, picture: str) -> UserRecord:
        now = _now()
        try:
            with db.transaction(self.conn):
                row = self.conn.execute(
                    "SELECT email FROM users WHERE email = ?", (email,)
                ).fetchone()
                if row is None:
                    self.conn.execute(
                        """
                        INSERT INTO users(email, name, picture, user_token, created_at, last_login)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (email, name, picture, generate_user_token(email), now, now),
                    )
                    logger.info("user created email=%s", email)
                else:
                    self.conn.execute(
                        "UPDATE users SET name = ?, picture = ?, last_login = ? WHERE email = ?",
                        (name, picture, now, email),
                    )
        except sqlite3.Error as exc:
            raise StorageError("failed to save user") from exc
        user = self.get_user(email)
        if user is None:
            raise StorageError("user missing after save")
        return user

    # corpora

    def _load_corpus(self, email: str) -> NoteCorpus:
        row = self.conn.execute(
            "SELECT notes_json FROM note_corpora WHERE email = ?", (email,)
        ).fetchone()
        data = db.from_json(row["notes_json"]) if row else None
        if not isinstance(data, dict):
            return {}
        return data

    def _write_corpus(self, email: str, corpus: NoteCorpus, now: str) -> None:
        self.conn.execute(
            """
            INSERT INTO note_corpora(email, notes_json, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(email) DO UPDATE SET
                notes_json = excluded.notes_json,
                updated_at = excluded.updated_at
            """,
            (email, db.to_json(corpus), now),
        )
        self.conn.execute("UPDATE users SET last_sync = ? WHERE email = ?", (now, email))

    def get_corpus(self, email: str) -> NoteCorpus:
        try:
            return self._load_corpus(email)
        except sqlite3.Error as exc:
            raise StorageError("failed to load notes") from exc

    def replace_all(self, email: str, corpus: dict[str, Any]) -> NoteCorpus:
        """Merge an uploaded corpus with the stored one and persist the result."""

        try:
            with db.transaction(self.conn):
                stored = self._load_corpus(email)
                merged = merge_corpora(corpus, stored)
                self._write_corpus(email, merged, _now())
        except sqlite3.Error as exc:
            raise StorageError("failed to save notes") from exc
        logger.info("corpus merged email=%s urls=%d", email, len(merged))
        return merged

    def replace_subset(self, email: str, url: str, collection: Sequence[Any]) -> None:
        """Overwrite one grouping key's collection; no merge."""

        notes: NoteCollection = copy_collection(collection)
        try:
            with db.transaction(self.conn):
                stored = self._load_corpus(email)
                stored[url] = notes
                self._write_corpus(email, stored, _now())
        except sqlite3.Error as exc:
            raise StorageError("failed to save notes") from exc

    def delete_all(self, email: str) -> None:
        try:
            with db.transaction(self.conn):
                self.conn.execute("DELETE FROM note_corpora WHERE email = ?", (email,))
        except sqlite3.Error as exc:
            raise StorageError("failed to delete notes") from exc
