from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import typer
from rich import print

from ..config import StickySyncConfig
from ..controller import SyncController, SyncResult, SyncState
from ..errors import SyncError
from ..http_client import SyncApiClient
from ..local_store import ClientStateStore, JsonKeyValueStore
from ..notes import collect_corpus


def build_controller(config: StickySyncConfig) -> SyncController:
    def _client(token: str | None, cancel_event: threading.Event) -> SyncApiClient:
        return SyncApiClient(
            config.api_base_url,
            token,
            retry_attempts=config.retry_attempts,
            retry_delay_s=config.retry_delay_s,
            timeout_s=config.request_timeout_s,
            cancel_event=cancel_event,
        )

    return SyncController(
        _client,
        JsonKeyValueStore(Path(config.notes_path), quota_bytes=config.local_quota_bytes),
        ClientStateStore(Path(config.state_path)),
        debounce_s=config.auto_sync_delay_s,
        auto_sync_interval_s=config.auto_sync_interval_s,
    )


def _require_signed_in(controller: SyncController) -> None:
    if not controller.session.signed_in:
        print("[red]Not signed in. Run: stickysync sign-in[/red]")
        raise typer.Exit(code=1)


def _report(result: SyncResult) -> None:
    if result.skipped == "unchanged":
        print("[green]No changes to sync[/green]")
        return
    if result.skipped == "in_flight":
        print("[yellow]A sync is already running[/yellow]")
        return
    if result.skipped:
        print(f"[yellow]Sync skipped ({result.skipped})[/yellow]")
        return
    if not result.ok:
        hint = " (sign in again)" if result.auth_failed else ""
        print(f"[red]Sync Error: {result.error}{hint}[/red]")
        raise typer.Exit(code=1)
    if result.action == "delete_all":
        print("[green]Cloud notes deleted[/green]")
        return
    print(f"[green]Synced[/green] {result.notes} notes across {result.urls} pages")


def sign_in_cmd(
    controller: SyncController,
    *,
    google_token: str,
    email: str,
    name: str | None,
    picture: str | None,
) -> None:
    """Sign in with an identity-provider token and run the first sync."""

    try:
        result = controller.sign_in(google_token, email, name=name, picture=picture)
    except SyncError as exc:
        print(f"[red]Failed to sign in: {exc}[/red]")
        raise typer.Exit(code=1) from exc
    print(f"[green]Signed in as {controller.session.profile.get('email')}[/green]")
    _report(result)


def sign_out_cmd(controller: SyncController) -> None:
    controller.sign_out()
    print("Signed out. Local notes were kept.")


def sync_cmd(controller: SyncController) -> None:
    _require_signed_in(controller)
    _report(controller.perform_sync())


def push_cmd(controller: SyncController, url: str) -> None:
    _require_signed_in(controller)
    _report(controller.sync_url(url))


def delete_cloud_cmd(controller: SyncController, *, yes: bool) -> None:
    _require_signed_in(controller)
    if not yes:
        typer.confirm(
            "Delete all notes stored in the cloud? Local notes will remain.",
            abort=True,
        )
    _report(controller.delete_cloud())


def auto_sync_cmd(controller: SyncController, *, enabled: bool) -> None:
    _require_signed_in(controller)
    controller.set_auto_sync(enabled, start=False)
    state = "enabled" if enabled else "disabled"
    print(f"Auto-sync {state}")


def status_cmd(controller: SyncController) -> None:
    session = controller.session
    if not session.signed_in:
        print("- Account: not signed in")
    else:
        profile = session.profile
        print(f"- Account: {profile.get('name') or ''} <{profile.get('email') or ''}>")
        print(f"- Auto-sync: {'on' if session.auto_sync_enabled else 'off'}")
    stats = controller.storage_stats()
    cloud = "n/a" if stats.cloud_notes is None else str(stats.cloud_notes)
    print(f"- Status: {controller.status_text}")
    print(f"- Local notes: {stats.local_notes}")
    print(f"- Cloud notes: {cloud}")
    print(f"- Total notes: {stats.total_notes}")
    print(f"- Last synced: {stats.last_sync_time or 'Never'}")
    if session.signed_in:
        print(f"- Changes to sync: {'yes' if controller.has_changes() else 'no'}")


def _snapshot(controller: SyncController) -> dict[str, Any]:
    try:
        return collect_corpus(controller.notes_store.get())
    except ValueError:
        return {}


def watch_cmd(
    controller: SyncController,
    *,
    poll_s: float,
    stop_event: threading.Event | None = None,
) -> None:
    """Poll the local notes file and feed changed pages into the controller."""

    _require_signed_in(controller)
    baseline = _snapshot(controller)
    lock = threading.Lock()

    def _on_state(state: SyncState) -> None:
        nonlocal baseline
        if state in {SyncState.IDLE, SyncState.PENDING}:
            with lock:
                baseline = _snapshot(controller)

    controller.add_listener(_on_state)
    controller.start_auto_sync()
    print(f"[green]Watching {controller.notes_store.path}[/green] (Ctrl+C to stop)")
    stop = stop_event or threading.Event()
    try:
        while not stop.wait(poll_s):
            if controller.is_syncing:
                continue
            current = _snapshot(controller)
            with lock:
                previous = baseline
                baseline = current
            changed = [
                url
                for url in set(previous) | set(current)
                if previous.get(url) != current.get(url)
            ]
            for url in sorted(changed):
                controller.note_changed(url)
    except KeyboardInterrupt:
        pass
    finally:
        controller.cancel_pending()
        controller.stop_auto_sync()
