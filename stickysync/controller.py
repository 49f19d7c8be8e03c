from __future__ import annotations

import datetime as dt
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import AuthError, SyncCancelled, SyncError
from .http_client import SyncApiClient
from .local_store import ClientStateStore, JsonKeyValueStore, SyncSession, write_corpus_with_fallback
from .notes import (
    NoteCollection,
    NoteCorpus,
    collect_corpus,
    copy_collection,
    corpus_hash,
    count_notes,
    deduplicate,
)

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str | None, threading.Event], SyncApiClient]
TimerFactory = Callable[[float, Callable[[], None]], Any]


class SyncState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    SYNCING = "syncing"
    ERROR = "error"


@dataclass
class SyncResult:
    ok: bool
    action: str
    skipped: str | None = None
    error: str | None = None
    auth_failed: bool = False
    urls: int = 0
    notes: int = 0


@dataclass
class StorageStats:
    local_notes: int
    cloud_notes: int | None
    total_notes: int
    last_sync_time: str | None


def _now() -> str:
    return dt.datetime.now(dt.UTC).isoformat()


class SyncController:
    """Drives note synchronization for one signed-in client.

    Local changes arm a debounce timer; when it fires, a change confined to one
    page URL is pushed with a partial update, anything else runs a full
    upload/download sync. Only one sync runs at a time: manual requests made
    while one is in flight are dropped, and a debounce timer that fires during
    one is re-armed.
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        notes_store: JsonKeyValueStore,
        state_store: ClientStateStore,
        *,
        debounce_s: float = 2.0,
        auto_sync_interval_s: float = 300,
        timer_factory: TimerFactory = threading.Timer,
    ) -> None:
        self.client_factory = client_factory
        self.notes_store = notes_store
        self.state_store = state_store
        self.debounce_s = debounce_s
        self.auto_sync_interval_s = auto_sync_interval_s
        self.timer_factory = timer_factory
        self.session: SyncSession = state_store.load()
        self.state = SyncState.IDLE
        self.last_result: SyncResult | None = None
        self._lock = threading.Lock()
        self._syncing = False
        self._timer: Any = None
        self._pending_urls: set[str] = set()
        self._pending_full = False
        self._cancel = threading.Event()
        self._listeners: list[Callable[[SyncState], None]] = []
        self._auto_thread: threading.Thread | None = None
        self._auto_stop = threading.Event()

    # state

    def add_listener(self, callback: Callable[[SyncState], None]) -> None:
        self._listeners.append(callback)

    def _set_state(self, state: SyncState) -> None:
        self.state = state
        for callback in list(self._listeners):
            try:
                callback(state)
            except Exception:
                logger.exception("sync state listener failed")

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    @property
    def status_text(self) -> str:
        if self.state == SyncState.SYNCING:
            return "Syncing..."
        if self.last_result is not None and self.last_result.error:
            return "Sync Error"
        if self.session.last_sync_time:
            return "Synced"
        return "Not synced"

    def _client(self) -> SyncApiClient:
        return self.client_factory(self.session.token, self._cancel)

    def _local_corpus(self) -> NoteCorpus:
        return collect_corpus(self.notes_store.get())

    def _run(self, action: str, work: Callable[[], SyncResult]) -> SyncResult:
        if not self.session.signed_in:
            return SyncResult(ok=False, action=action, skipped="signed_out")
        with self._lock:
            if self._syncing:
                logger.info("sync already in flight, ignoring %s request", action)
                return SyncResult(ok=True, action=action, skipped="in_flight")
            self._syncing = True
        self._set_state(SyncState.SYNCING)
        try:
            result = work()
        except SyncCancelled:
            logger.info("%s sync cancelled", action)
            result = SyncResult(ok=False, action=action, skipped="cancelled")
        except SyncError as exc:
            logger.warning("%s sync failed: %s", action, exc.message)
            result = SyncResult(
                ok=False,
                action=action,
                error=exc.message,
                auth_failed=isinstance(exc, AuthError),
            )
            self._set_state(SyncState.ERROR)
        except Exception as exc:
            logger.exception("%s sync failed unexpectedly", action)
            result = SyncResult(ok=False, action=action, error=str(exc) or type(exc).__name__)
            self._set_state(SyncState.ERROR)
        finally:
            with self._lock:
                self._syncing = False
                pending = self._timer is not None
        self.last_result = result
        self._set_state(SyncState.PENDING if pending else SyncState.IDLE)
        return result

    # flows

    def has_changes(self) -> bool:
        return corpus_hash(self._local_corpus()) != self.session.last_sync_hash

    def perform_sync(self) -> SyncResult:
        return self._run("full", self._full_sync)

    def _assign_local_ids(self, corpus: NoteCorpus) -> NoteCorpus:
        """Deduplicate local collections and persist any ids assigned on the way.

        Uploads then carry only notes with ids, and a repeated upload matches
        the stored copies by id.
        """

        prepared = {url: deduplicate(copy_collection(notes)) for url, notes in corpus.items()}
        if prepared == corpus:
            return corpus
        logger.info("assigning ids to local notes before upload")
        return write_corpus_with_fallback(self.notes_store, prepared)

    def _check_current(self, session: SyncSession) -> None:
        """Raise ``SyncCancelled`` unless ``session`` is still the live one.

        Callers hold ``_lock`` across this check and the writes that follow.
        """

        if self._cancel.is_set() or session is not self.session:
            raise SyncCancelled("signed out during sync")

    def _full_sync(self) -> SyncResult:
        session = self.session
        local = self._local_corpus()
        if corpus_hash(local) == session.last_sync_hash:
            logger.info("no changes detected, skipping sync")
            return SyncResult(ok=True, action="full", skipped="unchanged")
        local = self._assign_local_ids(local)
        client = self._client()
        client.upload(local)
        cloud = client.download()
        merged: NoteCorpus = {
            url: deduplicate(copy_collection(notes))
            for url, notes in cloud.items()
            if isinstance(notes, list)
        }
        with self._lock:
            self._check_current(session)
            write_corpus_with_fallback(self.notes_store, merged)
            session.last_sync_time = _now()
            session.last_sync_hash = corpus_hash(self._local_corpus())
            self.state_store.save(session)
        logger.info("sync complete urls=%d notes=%d", len(merged), count_notes(merged))
        return SyncResult(ok=True, action="full", urls=len(merged), notes=count_notes(merged))

    def sync_url(self, url: str) -> SyncResult:
        def _partial() -> SyncResult:
            session = self.session
            notes = self.notes_store.get([url]).get(url)
            collection: NoteCollection = []
            if isinstance(notes, list):
                collection = self._assign_local_ids({url: notes}).get(url, [])
            self._client().update_notes(url, collection)
            with self._lock:
                self._check_current(session)
                session.last_sync_time = _now()
                self.state_store.save(session)
            logger.info("notes pushed for %s count=%d", url, len(collection))
            return SyncResult(ok=True, action="partial", urls=1, notes=len(collection))

        return self._run("partial", _partial)

    def delete_cloud(self) -> SyncResult:
        def _delete() -> SyncResult:
            session = self.session
            self._client().delete_all()
            with self._lock:
                self._check_current(session)
                # Local notes no longer match the cloud.
                session.last_sync_hash = None
                self.state_store.save(session)
            logger.info("cloud notes deleted")
            return SyncResult(ok=True, action="delete_all")

        return self._run("delete_all", _delete)

    # debounce

    def note_changed(self, url: str | None = None) -> None:
        """Record a local change and (re)arm the debounce timer.

        ``url`` names the page whose notes changed; None means the change is
        not confined to one page.
        """

        if not self.session.signed_in:
            logger.debug("not signed in, ignoring note change")
            return
        if self.debounce_s <= 0:
            with self._lock:
                self._add_pending(url)
            self._fire()
            return
        with self._lock:
            self._add_pending(url)
            self._arm_timer()
        if not self._syncing:
            self._set_state(SyncState.PENDING)

    def _add_pending(self, url: str | None) -> None:
        if url is None:
            self._pending_full = True
        else:
            self._pending_urls.add(url)

    def _arm_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        timer = self.timer_factory(self.debounce_s, self._fire)
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _fire(self) -> None:
        with self._lock:
            if self._syncing:
                self._arm_timer()
                return
            self._timer = None
            urls = self._pending_urls
            full = self._pending_full
            self._pending_urls = set()
            self._pending_full = False
        if not urls and not full:
            return
        try:
            if not full and len(urls) == 1:
                self.sync_url(next(iter(urls)))
            else:
                self.perform_sync()
        except Exception:
            logger.exception("scheduled sync failed")

    def cancel_pending(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            self._pending_urls = set()
            self._pending_full = False

    # session

    def sign_in(
        self,
        google_token: str,
        email: str,
        name: str | None = None,
        picture: str | None = None,
    ) -> SyncResult:
        """Exchange a verified identity token for a sync token, then sync.

        Raises ``SyncError`` when the server rejects the sign-in.
        """

        self._cancel = threading.Event()
        client = self.client_factory(None, self._cancel)
        payload = client.authenticate(google_token, email, name=name, picture=picture)
        profile: dict[str, Any] = {"email": payload.get("email") or email}
        profile["name"] = payload.get("name") or name or ""
        if picture:
            profile["picture"] = picture
        self.session = SyncSession(
            token=str(payload["user_token"]),
            profile=profile,
            auto_sync_enabled=False,
        )
        self.state_store.save(self.session)
        logger.info("signed in as %s", profile["email"])
        return self.perform_sync()

    def sign_out(self) -> None:
        self.cancel_pending()
        with self._lock:
            self._cancel.set()
            self.state_store.clear()
            self.session = SyncSession()
        self.stop_auto_sync()
        self.last_result = None
        self._set_state(SyncState.IDLE)
        logger.info("signed out")

    # auto sync

    def set_auto_sync(self, enabled: bool, *, start: bool = True) -> None:
        self.session.auto_sync_enabled = enabled
        self.state_store.save(self.session)
        if enabled and start:
            self.start_auto_sync()
        else:
            self.stop_auto_sync()

    def start_auto_sync(self) -> None:
        if not self.session.signed_in or not self.session.auto_sync_enabled:
            return
        if self._auto_thread is not None:
            return
        self._auto_stop = threading.Event()
        self._auto_thread = threading.Thread(target=self._auto_sync_loop, daemon=True)
        self._auto_thread.start()

    def stop_auto_sync(self) -> None:
        self._auto_stop.set()
        thread = self._auto_thread
        self._auto_thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)

    def _auto_sync_loop(self) -> None:
        stop = self._auto_stop
        interval_s = max(1.0, float(self.auto_sync_interval_s))
        while not stop.wait(interval_s):
            try:
                self.perform_sync()
            except Exception:
                logger.exception("auto sync failed")

    # stats

    def storage_stats(self) -> StorageStats:
        local_notes = count_notes(self._local_corpus())
        cloud_notes: int | None = None
        if self.session.signed_in:
            try:
                cloud_notes = count_notes(self._client().get_notes())
            except SyncError as exc:
                logger.warning("cloud note count unavailable: %s", exc.message)
        total = local_notes if cloud_notes is None else max(local_notes, cloud_notes)
        return StorageStats(
            local_notes=local_notes,
            cloud_notes=cloud_notes,
            total_notes=total,
            last_sync_time=self.session.last_sync_time,
        )
