from __future__ import annotations

import threading
from pathlib import Path

import typer
from rich import print

from ..config import StickySyncConfig
from ..identity import GoogleTokenVerifier
from ..server import run_server


def serve_cmd(
    config: StickySyncConfig,
    *,
    host: str | None,
    port: int | None,
    db_path: str | None,
    stop_event: threading.Event | None = None,
) -> None:
    """Run the note sync API until interrupted."""

    bind_host = host or config.server_host
    bind_port = config.server_port if port is None else port
    resolved_db = Path(db_path or config.db_path).expanduser()
    verifier = GoogleTokenVerifier(config.tokeninfo_url, timeout_s=config.request_timeout_s)
    print(f"[green]Sync API listening on http://{bind_host}:{bind_port}/api[/green]")
    print(f"- Database: {resolved_db}")
    try:
        run_server(
            bind_host,
            bind_port,
            db_path=resolved_db,
            verifier=verifier,
            stop_event=stop_event,
        )
    except OSError as exc:
        print(f"[red]Failed to start server: {exc}[/red]")
        raise typer.Exit(code=1) from exc
    except KeyboardInterrupt:
        print("Stopped")
