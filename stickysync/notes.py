from __future__ import annotations

import hashlib
import json
import logging
import secrets
import time
from collections.abc import Iterable, Mapping
from typing import Any

logger = logging.getLogger(__name__)

NOTE_ID_PREFIX = "note_"
GROUPING_KEY_PREFIXES = ("http://", "https://")
CONTENT_KEY_FIELDS = ("content", "top", "left", "title", "color")


NoteCollection = list[dict[str, Any]]
NoteCorpus = dict[str, NoteCollection]


def has_note_id(note: Mapping[str, Any]) -> bool:
    """Any non-empty scalar id counts; None, "", 0 and False do not."""

    value = note.get("id")
    if isinstance(value, str):
        return value.strip() != ""
    if isinstance(value, (bool, int, float)):
        return bool(value)
    return False


def note_content_key(note: Mapping[str, Any]) -> str:
    values = [note.get(field) for field in CONTENT_KEY_FIELDS]
    return json.dumps(values, ensure_ascii=False, separators=(",", ":"))


def generate_note_id(key: str) -> str:
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]
    millis = int(time.time() * 1000)
    return f"{NOTE_ID_PREFIX}{digest}_{millis}_{secrets.token_hex(4)}"


def deduplicate(collection: Iterable[Any]) -> NoteCollection:
    """Collapse duplicate notes, keeping the first occurrence of each.

    Notes with an id are compared by id. Notes without one are compared by
    their content/position/title/color tuple and receive a fresh id when kept.
    Dropped notes are never merged into the survivor.
    """

    seen_ids: set[str] = set()
    seen_keys: set[str] = set()
    kept: NoteCollection = []
    for note in collection:
        if not isinstance(note, dict):
            continue
        if has_note_id(note):
            note_id = str(note["id"])
            if note_id in seen_ids:
                logger.debug("duplicate note dropped id=%s", note_id)
                continue
            seen_ids.add(note_id)
            kept.append(note)
            continue
        key = note_content_key(note)
        if key in seen_keys:
            logger.debug("duplicate note dropped by content key=%s", key[:50])
            continue
        seen_keys.add(key)
        note["id"] = generate_note_id(key)
        seen_ids.add(note["id"])
        kept.append(note)
    return kept


def copy_collection(collection: Iterable[Any]) -> NoteCollection:
    return [dict(note) for note in collection if isinstance(note, dict)]


def corpus_hash(corpus: Mapping[str, Any]) -> str:
    """Digest of the corpus exactly as serialized; key and list order matter."""

    canonical = json.dumps(corpus, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def is_grouping_key(key: object) -> bool:
    return isinstance(key, str) and key.startswith(GROUPING_KEY_PREFIXES)


def collect_corpus(mapping: Mapping[str, Any]) -> NoteCorpus:
    return {
        key: value
        for key, value in mapping.items()
        if is_grouping_key(key) and isinstance(value, list)
    }


def count_notes(corpus: Mapping[str, Any]) -> int:
    return sum(len(notes) for notes in corpus.values() if isinstance(notes, list))
