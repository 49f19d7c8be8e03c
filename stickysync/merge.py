from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .notes import NoteCorpus, copy_collection, deduplicate


def merge_corpora(local: Mapping[str, Any], cloud: Mapping[str, Any]) -> NoteCorpus:
    """Merge an uploaded corpus into the stored one, per grouping key.

    For every key the stored (cloud) notes come first, then the uploaded
    (local) ones, and the concatenation is deduplicated. Since deduplication
    keeps the first occurrence, the stored copy of a note wins when both sides
    carry the same id. Neither input is mutated.
    """

    urls: list[str] = list(cloud)
    urls.extend(url for url in local if url not in cloud)
    merged: NoteCorpus = {}
    for url in urls:
        combined = copy_collection(cloud.get(url) or [])
        combined.extend(copy_collection(local.get(url) or []))
        merged[url] = deduplicate(combined)
    return merged
