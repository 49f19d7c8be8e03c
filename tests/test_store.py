from __future__ import annotations

from pathlib import Path

import pytest

from stickysync import db
from stickysync.store import NoteStore


@pytest.fixture
def store(tmp_path: Path):
    note_store = NoteStore(tmp_path / "server.sqlite")
    try:
        yield note_store
    finally:
        note_store.close()


def test_schema_creates_tables(tmp_path: Path) -> None:
    conn = db.connect(tmp_path / "schema.sqlite")
    try:
        db.initialize_schema(conn)
        tables = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
    finally:
        conn.close()
    assert {"users", "note_corpora"} <= tables


def test_upsert_user_creates_then_updates(store: NoteStore) -> None:
    created = store.upsert_user("a@example.com", "Alice", "")
    assert len(created.user_token) == 64
    assert store.resolve_token(created.user_token) == "a@example.com"

    updated = store.upsert_user("a@example.com", "Alice B", "https://pic.example/a.png")
    assert updated.user_token == created.user_token
    assert updated.name == "Alice B"
    assert updated.picture == "https://pic.example/a.png"


def test_resolve_token_unknown(store: NoteStore) -> None:
    assert store.resolve_token("nope") is None
    assert store.resolve_token("") is None


def test_replace_all_merges_with_stored_corpus(store: NoteStore) -> None:
    store.upsert_user("a@example.com", "Alice", "")
    store.replace_all("a@example.com", {"https://a.example/": [{"id": "n1", "content": "one"}]})
    merged = store.replace_all(
        "a@example.com",
        {
            "https://a.example/": [{"id": "n1", "content": "edited"}, {"id": "n2"}],
            "https://b.example/": [{"id": "n3"}],
        },
    )

    assert merged == store.get_corpus("a@example.com")
    assert merged["https://a.example/"][0]["content"] == "one"
    assert [note["id"] for note in merged["https://a.example/"]] == ["n1", "n2"]
    assert "https://b.example/" in merged
    assert store.get_user("a@example.com").last_sync is not None


def test_replace_subset_overwrites_one_key(store: NoteStore) -> None:
    store.upsert_user("a@example.com", "Alice", "")
    store.replace_all(
        "a@example.com",
        {
            "https://a.example/": [{"id": "n1"}, {"id": "n2"}],
            "https://b.example/": [{"id": "n3"}],
        },
    )

    store.replace_subset("a@example.com", "https://a.example/", [{"id": "n9", "content": "only"}])

    corpus = store.get_corpus("a@example.com")
    assert corpus["https://a.example/"] == [{"id": "n9", "content": "only"}]
    assert corpus["https://b.example/"] == [{"id": "n3"}]


def test_replace_subset_with_empty_list_keeps_key(store: NoteStore) -> None:
    store.upsert_user("a@example.com", "Alice", "")
    store.replace_subset("a@example.com", "https://a.example/", [])
    assert store.get_corpus("a@example.com") == {"https://a.example/": []}


def test_delete_all_only_touches_one_user(store: NoteStore) -> None:
    store.upsert_user("a@example.com", "Alice", "")
    store.upsert_user("b@example.com", "Bob", "")
    store.replace_all("a@example.com", {"https://a.example/": [{"id": "n1"}]})
    store.replace_all("b@example.com", {"https://b.example/": [{"id": "n2"}]})

    store.delete_all("a@example.com")

    assert store.get_corpus("a@example.com") == {}
    assert store.get_corpus("b@example.com") == {"https://b.example/": [{"id": "n2"}]}


def test_failed_transaction_rolls_back(store: NoteStore) -> None:
    store.upsert_user("a@example.com", "Alice", "")
    store.replace_all("a@example.com", {"https://a.example/": [{"id": "n1"}]})

    with pytest.raises(RuntimeError):
        with db.transaction(store.conn):
            store.conn.execute("DELETE FROM note_corpora")
            raise RuntimeError("boom")

    assert store.get_corpus("a@example.com") == {"https://a.example/": [{"id": "n1"}]}
