from __future__ import annotations

import logging

import typer
from rich import print

from . import __version__
from .commands.client_cmds import (
    auto_sync_cmd,
    build_controller,
    delete_cloud_cmd,
    push_cmd,
    sign_in_cmd,
    sign_out_cmd,
    status_cmd,
    sync_cmd,
    watch_cmd,
)
from .commands.server_cmds import serve_cmd
from .config import load_config

app = typer.Typer(help="stickysync: keep sticky notes in sync across devices")


@app.callback()
def _root(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def serve(
    host: str = typer.Option(None, help="Host to bind the sync API"),
    port: int = typer.Option(None, help="Port to bind the sync API"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Run the sync API server."""

    serve_cmd(load_config(), host=host, port=port, db_path=db_path)


@app.command("sign-in")
def sign_in(
    google_token: str = typer.Option(..., help="Identity-provider access token"),
    email: str = typer.Option(..., help="Account email bound to the token"),
    name: str = typer.Option(None, help="Display name"),
    picture: str = typer.Option(None, help="Profile picture URL"),
) -> None:
    """Sign in and run the first full sync."""

    sign_in_cmd(
        build_controller(load_config()),
        google_token=google_token,
        email=email,
        name=name,
        picture=picture,
    )


@app.command("sign-out")
def sign_out() -> None:
    """Forget the sync session; local notes are kept."""

    sign_out_cmd(build_controller(load_config()))


@app.command()
def sync() -> None:
    """Upload local notes, download the merged corpus and store it locally."""

    sync_cmd(build_controller(load_config()))


@app.command()
def push(url: str = typer.Argument(..., help="Page URL whose notes to push")) -> None:
    """Overwrite the cloud notes of one page with the local ones."""

    push_cmd(build_controller(load_config()), url)


@app.command("delete-cloud")
def delete_cloud(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete every note stored in the cloud for this account."""

    delete_cloud_cmd(build_controller(load_config()), yes=yes)


@app.command()
def status() -> None:
    """Show account, sync status and note counts."""

    status_cmd(build_controller(load_config()))


@app.command("auto-sync")
def auto_sync(
    mode: str = typer.Argument(..., help="on or off"),
) -> None:
    """Turn periodic background sync on or off."""

    normalized = mode.strip().lower()
    if normalized not in {"on", "off"}:
        print("[red]Expected 'on' or 'off'[/red]")
        raise typer.Exit(code=1)
    auto_sync_cmd(build_controller(load_config()), enabled=normalized == "on")


@app.command()
def watch(
    poll_s: float = typer.Option(1.0, help="Seconds between checks of the notes file"),
) -> None:
    """Watch the local notes file and sync changes as they happen."""

    watch_cmd(build_controller(load_config()), poll_s=poll_s)


@app.command("version")
def version() -> None:
    """Print version."""

    print(__version__)


def main() -> None:
    app()
